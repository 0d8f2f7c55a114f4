"""
Vault Errors — the failure kinds surfaced by the credential vault.

Security Note:
    Error messages and ``context`` carry identifiers only (credential id,
    tenant ids, field names, operation names). Never place plaintext secrets,
    key material or envelope text in an error.
"""
from typing import Any


class VaultError(Exception):
    """Base class for credential vault errors."""

    kind: str = "vault_error"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def __repr__(self) -> str:
        return f"<{type(self).__name__} kind={self.kind} {self.context!r}>"

    def to_dict(self) -> dict[str, Any]:
        """Safe-to-log representation of the error."""
        return {"kind": self.kind, "message": self.message, **self.context}


class NotFound(VaultError):
    """Credential absent, soft-deleted, or owned by another tenant.

    The three cases are deliberately indistinguishable.
    """

    kind = "not_found"

    def __init__(self, credential_id: str) -> None:
        super().__init__("Credential not found", credential_id=credential_id)


class DecryptionFailed(VaultError):
    """Envelope could not be authenticated or parsed."""

    kind = "decryption_failed"

    def __init__(self, reason: str, credential_id: str | None = None) -> None:
        context: dict[str, Any] = {"reason": reason}
        if credential_id is not None:
            context["credential_id"] = credential_id
        super().__init__(f"Decryption failed: {reason}", **context)


class Expired(VaultError):
    kind = "expired"

    def __init__(self, credential_id: str, expires_at: Any) -> None:
        super().__init__(
            "Credential has expired",
            credential_id=credential_id,
            expires_at=str(expires_at),
        )


class ValidationFailed(VaultError):
    """Malformed input to create/update."""

    kind = "validation_failed"

    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"Invalid {field}: {message}", field=field)


class PersistenceError(VaultError):
    """Opaque failure raised by (or on behalf of) the storage collaborator."""

    kind = "persistence_error"

    def __init__(self, operation: str, credential_id: str | None = None) -> None:
        context: dict[str, Any] = {"operation": operation}
        if credential_id is not None:
            context["credential_id"] = credential_id
        super().__init__(f"Persistence operation '{operation}' failed", **context)


class KeyUnavailable(VaultError):
    """The master key provider could not supply a key.

    A configuration fault rather than a property of any one credential.
    """

    kind = "key_unavailable"

    def __init__(self, provider: str) -> None:
        super().__init__("Master key is unavailable", provider=provider)
