"""
CredentialService — tenant-scoped lifecycle of encrypted integration secrets.

Provides the public API of the credential vault:
- ``create_credential(...)`` — validate, encrypt and persist a secret map
- ``get_credential(...)`` — decrypt a secret map for its owner
- ``list_credentials(...)`` — non-secret summaries of active credentials
- ``update_credential(...)`` — change label/metadata/expiry, or rotate the secret
- ``delete_credential(...)`` — soft delete (terminal)
- ``validate_credential(...)`` — decryptable and not expired
- ``record_usage(...)`` — log use of a credential by a workflow execution

A credential that is absent, soft-deleted or owned by another tenant is
reported the same way (``NotFound``), so callers cannot probe for ids that
belong to someone else.

Security Note:
    Never log plaintext or envelope values. Only log credential ids, tenant
    ids, providers and operations. Decrypted secret maps exist only in the
    returned DecryptedCredential and are never written back to the store.
"""
import uuid
import asyncio
import logging
import functools
from collections.abc import Mapping
from concurrent.futures import Executor
from datetime import datetime
from typing import Any, Callable

from pydantic import ValidationError

from .audit import AuditSink, LoggingAuditSink
from .clock import Clock, SystemClock
from .config import MasterKeyProvider, VaultConfig
from .crypto import (
    EnvelopeCipher,
    deserialize_secret_map,
    encode_json_object,
    serialize_secret_map,
)
from .exceptions import (
    DecryptionFailed,
    Expired,
    KeyUnavailable,
    NotFound,
    PersistenceError,
    ValidationFailed,
    VaultError,
)
from .models import (
    AuditEventType,
    AuditEvent,
    CredentialRecord,
    CredentialSummary,
    CredentialUpdate,
    DecryptedCredential,
    Provider,
    as_utc,
)
from .store import CredentialStore

logger = logging.getLogger("credential_vault.service")

_DEFAULT_MAX_SECRET_BYTES = 1_048_576
_MAX_LABEL_LENGTH = 255


def _validation_error(err: ValidationError) -> ValidationFailed:
    """Convert a pydantic error using locations and messages only."""
    first = err.errors()[0]
    field = ".".join(str(part) for part in first["loc"]) or "updates"
    return ValidationFailed(field, first["msg"])


class CredentialService:
    """Encrypted credential vault scoped by ``(owner_user_id, owner_org_id)``.

    Args:
        store: Persistence collaborator.
        key_provider: Source of the current master key.
        audit: Audit sink (defaults to logging).
        clock: Time source (defaults to the system clock).
        cipher: Envelope cipher used for new writes.
        max_secret_bytes: Cap on the serialized secret map.
        collaborator_timeout: Seconds allowed for best-effort store/audit calls.
        executor: Where key derivation runs; None means the loop's default
            thread pool.
    """

    def __init__(
        self,
        store: CredentialStore,
        key_provider: MasterKeyProvider,
        *,
        audit: AuditSink | None = None,
        clock: Clock | None = None,
        cipher: EnvelopeCipher | None = None,
        max_secret_bytes: int = _DEFAULT_MAX_SECRET_BYTES,
        collaborator_timeout: float = 1.0,
        executor: Executor | None = None,
    ):
        self._store = store
        self._keys = key_provider
        self._audit = audit or LoggingAuditSink()
        self._clock = clock or SystemClock()
        self._cipher = cipher or EnvelopeCipher()
        self._max_secret_bytes = max_secret_bytes
        self._timeout = collaborator_timeout
        self._executor = executor

    @classmethod
    def from_config(
        cls,
        config: VaultConfig,
        store: CredentialStore,
        audit: AuditSink | None = None,
        clock: Clock | None = None,
        executor: Executor | None = None,
    ) -> "CredentialService":
        """Build a service from a validated VaultConfig."""
        return cls(
            store,
            config.key_provider(),
            audit=audit,
            clock=clock,
            cipher=EnvelopeCipher.from_backend(config.cipher_backend),
            max_secret_bytes=config.max_secret_bytes,
            collaborator_timeout=config.collaborator_timeout,
            executor=executor,
        )

    # ------------------------------------------------------------------
    # Input validation
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_tenant(owner_user_id: str, owner_org_id: str) -> None:
        if not isinstance(owner_user_id, str) or not owner_user_id:
            raise ValidationFailed("owner_user_id", "must be a non-empty string")
        if not isinstance(owner_org_id, str) or not owner_org_id:
            raise ValidationFailed("owner_org_id", "must be a non-empty string")

    @staticmethod
    def _validate_provider(provider: Provider | str) -> Provider:
        try:
            return Provider(provider)
        except ValueError:
            choices = ", ".join(p.value for p in Provider)
            raise ValidationFailed("provider", f"must be one of {choices}") from None

    @staticmethod
    def _validate_label(label: Any) -> str:
        if not isinstance(label, str) or not label.strip():
            raise ValidationFailed("label", "cannot be empty")
        label = label.strip()
        if len(label) > _MAX_LABEL_LENGTH:
            raise ValidationFailed(
                "label", f"cannot exceed {_MAX_LABEL_LENGTH} characters"
            )
        return label

    @staticmethod
    def _validate_metadata(metadata: Any) -> dict[str, Any]:
        if metadata is None:
            return {}
        encode_json_object(metadata, "metadata")
        return dict(metadata)

    @staticmethod
    def _validate_expiry(expires_at: Any) -> datetime | None:
        if expires_at is not None and not isinstance(expires_at, datetime):
            raise ValidationFailed("expires_at", "must be a datetime")
        return as_utc(expires_at)

    def _encode_secret(self, secret_map: Any) -> bytes:
        plaintext = serialize_secret_map(secret_map)
        if len(plaintext) > self._max_secret_bytes:
            raise ValidationFailed(
                "secret_map",
                f"serialized size exceeds {self._max_secret_bytes} bytes",
            )
        return plaintext

    # ------------------------------------------------------------------
    # Crypto helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _associated_data(
        credential_id: str, owner_user_id: str, owner_org_id: str,
    ) -> bytes:
        """Binds an envelope to its row and tenant."""
        return f"{credential_id}:{owner_user_id}:{owner_org_id}".encode("utf-8")

    async def _run(self, func: Callable[..., Any], *args: Any) -> Any:
        """Run CPU-bound crypto off the event loop."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            self._executor, functools.partial(func, *args),
        )

    def _master_key(self) -> bytes:
        try:
            return self._keys.current()
        except Exception as err:
            provider = type(self._keys).__name__
            logger.error(
                "Key provider %s failed: %s", provider, type(err).__name__,
            )
            raise KeyUnavailable(provider) from err

    async def _seal(
        self,
        plaintext: bytes,
        credential_id: str,
        owner_user_id: str,
        owner_org_id: str,
    ) -> str:
        return await self._run(
            self._cipher.encrypt,
            plaintext,
            self._master_key(),
            self._associated_data(credential_id, owner_user_id, owner_org_id),
        )

    async def _open(self, record: CredentialRecord) -> dict[str, Any]:
        """Decrypt a record's envelope. Failures are terminal for the record."""
        try:
            plaintext = await self._run(
                self._cipher.decrypt,
                record.envelope,
                self._master_key(),
                self._associated_data(
                    record.id, record.owner_user_id, record.owner_org_id,
                ),
            )
            return deserialize_secret_map(plaintext)
        except DecryptionFailed as err:
            reason = err.context.get("reason", "unknown")
            logger.error(
                "Failed to decrypt credential id=%s org=%s: %s",
                record.id, record.owner_org_id, reason,
            )
            await self._emit(
                AuditEventType.DECRYPTION_FAILED, record, reason=reason,
            )
            raise DecryptionFailed(reason, credential_id=record.id) from None

    # ------------------------------------------------------------------
    # Collaborator helpers
    # ------------------------------------------------------------------

    async def _persist(
        self, operation: str, awaitable: Any, credential_id: str | None = None,
    ) -> Any:
        """Await a store call, surfacing foreign errors as PersistenceError."""
        try:
            return await awaitable
        except VaultError:
            raise
        except Exception as err:
            logger.error(
                "Store operation %s failed for credential id=%s: %s",
                operation, credential_id, type(err).__name__,
            )
            raise PersistenceError(operation, credential_id) from err

    async def _load(
        self, credential_id: str, owner_user_id: str, owner_org_id: str,
    ) -> CredentialRecord:
        self._validate_tenant(owner_user_id, owner_org_id)
        record = await self._persist(
            "find_one",
            self._store.find_one(credential_id, owner_user_id, owner_org_id),
            credential_id,
        )
        # Stores filter by tenant too; this is the re-check before decrypting.
        if (
            record is None
            or not record.is_active
            or record.id != credential_id
            or not record.owned_by(owner_user_id, owner_org_id)
        ):
            raise NotFound(credential_id)
        return record

    async def _touch(self, record: CredentialRecord) -> CredentialRecord:
        """Best-effort ``last_used_at`` update; never fails the read."""
        try:
            updated = await asyncio.wait_for(
                self._store.update(
                    record.id,
                    record.owner_user_id,
                    record.owner_org_id,
                    {"last_used_at": self._clock.now()},
                ),
                self._timeout,
            )
        except Exception as err:
            logger.warning(
                "Could not record last use of credential id=%s: %s",
                record.id, type(err).__name__,
            )
            return record
        return updated or record

    async def _emit(
        self,
        event_type: AuditEventType,
        record: CredentialRecord,
        **context: Any,
    ) -> None:
        """Hand an event to the audit sink. Failures are logged only."""
        event = AuditEvent(
            type=event_type,
            credential_id=record.id,
            actor_id=record.owner_user_id,
            org_id=record.owner_org_id,
            timestamp=self._clock.now(),
            context=context,
        )
        try:
            await asyncio.wait_for(self._audit.record(event), self._timeout)
        except Exception as err:
            logger.warning(
                "Audit sink failed for %s on credential id=%s: %s",
                event_type.value, record.id, err,
            )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def create_credential(
        self,
        owner_user_id: str,
        owner_org_id: str,
        provider: Provider | str,
        secret_map: Mapping[str, Any],
        label: str,
        metadata: Mapping[str, Any] | None = None,
        expires_at: datetime | None = None,
    ) -> CredentialSummary:
        """Encrypt and persist a new credential.

        Args:
            owner_user_id: Owning user.
            owner_org_id: Owning organization.
            provider: Integration kind.
            secret_map: JSON object holding the secret material.
            label: Display name (not secret).
            metadata: Optional non-secret attributes stored in clear.
            expires_at: Optional expiry, enforced by ``validate_credential``.

        Returns:
            Summary of the stored credential, without secret material.

        Raises:
            ValidationFailed: On malformed input.
            PersistenceError: If the store fails.
        """
        self._validate_tenant(owner_user_id, owner_org_id)
        provider = self._validate_provider(provider)
        label = self._validate_label(label)
        metadata = self._validate_metadata(metadata)
        expires_at = self._validate_expiry(expires_at)
        plaintext = self._encode_secret(secret_map)

        credential_id = uuid.uuid4().hex
        envelope = await self._seal(
            plaintext, credential_id, owner_user_id, owner_org_id,
        )
        now = self._clock.now()
        record = CredentialRecord(
            id=credential_id,
            owner_user_id=owner_user_id,
            owner_org_id=owner_org_id,
            provider=provider,
            label=label,
            envelope=envelope,
            metadata=metadata,
            created_at=now,
            updated_at=now,
            expires_at=expires_at,
        )
        await self._persist("save", self._store.save(record), credential_id)

        logger.info(
            "Credential created: id=%s provider=%s user=%s org=%s",
            credential_id, provider.value, owner_user_id, owner_org_id,
        )
        await self._emit(AuditEventType.CREATED, record, provider=provider.value)
        return record.summary()

    async def get_credential(
        self, credential_id: str, owner_user_id: str, owner_org_id: str,
    ) -> DecryptedCredential:
        """Decrypt and return a credential for its owner.

        Expired credentials still decrypt here; only ``validate_credential``
        enforces expiry.

        Raises:
            NotFound: Absent, soft-deleted, or owned by another tenant.
            DecryptionFailed: Envelope could not be authenticated.
            KeyUnavailable: The key provider failed.
        """
        record = await self._load(credential_id, owner_user_id, owner_org_id)
        secrets = await self._open(record)
        record = await self._touch(record)
        await self._emit(AuditEventType.USED, record, operation="get")
        logger.debug(
            "Credential read: id=%s user=%s org=%s",
            credential_id, owner_user_id, owner_org_id,
        )
        return DecryptedCredential(**record.summary().model_dump(), secrets=secrets)

    async def list_credentials(
        self,
        owner_user_id: str,
        owner_org_id: str,
        provider: Provider | str | None = None,
    ) -> list[CredentialSummary]:
        """List active credentials for a tenant. Nothing is decrypted."""
        self._validate_tenant(owner_user_id, owner_org_id)
        if provider is not None:
            provider = self._validate_provider(provider)
        records = await self._persist(
            "find_many",
            self._store.find_many(owner_user_id, owner_org_id, provider),
        )
        return [
            r.summary() for r in records
            if r.is_active and r.owned_by(owner_user_id, owner_org_id)
        ]

    async def update_credential(
        self,
        credential_id: str,
        owner_user_id: str,
        owner_org_id: str,
        updates: CredentialUpdate | Mapping[str, Any],
    ) -> CredentialSummary:
        """Apply a partial update.

        A new ``secret_map`` is sealed in a brand new envelope (fresh salt and
        IV). Label, metadata and expiry changes leave the envelope untouched.

        Raises:
            ValidationFailed: Empty or malformed update.
            NotFound: Same rule as ``get_credential``.
        """
        if not isinstance(updates, CredentialUpdate):
            try:
                updates = CredentialUpdate.model_validate(dict(updates))
            except ValidationError as err:
                raise _validation_error(err) from None
        fields = updates.model_fields_set
        if not fields:
            raise ValidationFailed("updates", "no fields to update")

        patch: dict[str, Any] = {}
        if "label" in fields:
            patch["label"] = self._validate_label(updates.label)
        if "metadata" in fields:
            patch["metadata"] = self._validate_metadata(updates.metadata)
        if "expires_at" in fields:
            patch["expires_at"] = updates.expires_at
        plaintext = None
        if "secret_map" in fields:
            if updates.secret_map is None:
                raise ValidationFailed("secret_map", "cannot be cleared")
            plaintext = self._encode_secret(updates.secret_map)

        record = await self._load(credential_id, owner_user_id, owner_org_id)
        if plaintext is not None:
            patch["envelope"] = await self._seal(
                plaintext, record.id, record.owner_user_id, record.owner_org_id,
            )
        patch["updated_at"] = self._clock.now()

        updated = await self._persist(
            "update",
            self._store.update(credential_id, owner_user_id, owner_org_id, patch),
            credential_id,
        )
        if updated is None:
            # Deleted between load and write.
            raise NotFound(credential_id)

        logger.info(
            "Credential updated: id=%s fields=%s user=%s org=%s",
            credential_id, updates.changed_fields(), owner_user_id, owner_org_id,
        )
        await self._emit(
            AuditEventType.UPDATED,
            updated,
            fields=updates.changed_fields(),
            secret_rotated=plaintext is not None,
        )
        return updated.summary()

    async def delete_credential(
        self, credential_id: str, owner_user_id: str, owner_org_id: str,
    ) -> None:
        """Soft-delete a credential. The row is kept for audit.

        Raises:
            NotFound: Absent, already deleted, or owned by another tenant.
        """
        record = await self._load(credential_id, owner_user_id, owner_org_id)
        updated = await self._persist(
            "delete",
            self._store.update(
                credential_id,
                owner_user_id,
                owner_org_id,
                {"is_active": False, "updated_at": self._clock.now()},
            ),
            credential_id,
        )
        if updated is None:
            raise NotFound(credential_id)

        logger.info(
            "Credential deleted: id=%s user=%s org=%s",
            credential_id, owner_user_id, owner_org_id,
        )
        await self._emit(AuditEventType.DELETED, record)

    async def validate_credential(
        self, credential_id: str, owner_user_id: str, owner_org_id: str,
    ) -> None:
        """Check that a credential is usable right now.

        Raises:
            NotFound: Same rule as ``get_credential``.
            DecryptionFailed: Envelope could not be authenticated.
            Expired: ``expires_at`` is not in the future.
        """
        record = await self._load(credential_id, owner_user_id, owner_org_id)
        await self._open(record)
        record = await self._touch(record)
        if record.is_expired(self._clock.now()):
            logger.info("Credential expired: id=%s", credential_id)
            await self._emit(AuditEventType.VALIDATED, record, valid=False)
            raise Expired(credential_id, record.expires_at)
        await self._emit(AuditEventType.VALIDATED, record, valid=True)

    async def record_usage(
        self,
        credential_id: str,
        owner_user_id: str,
        owner_org_id: str,
        workflow_id: str | None = None,
        execution_id: str | None = None,
    ) -> None:
        """Log that a workflow execution used a credential.

        Nothing is decrypted, so ``last_used_at`` is left alone.

        Raises:
            NotFound: Same rule as ``get_credential``.
        """
        record = await self._load(credential_id, owner_user_id, owner_org_id)
        await self._emit(
            AuditEventType.USED,
            record,
            operation="usage",
            workflow_id=workflow_id,
            execution_id=execution_id,
        )
        logger.info(
            "Credential usage logged: id=%s workflow=%s execution=%s",
            credential_id, workflow_id, execution_id,
        )
