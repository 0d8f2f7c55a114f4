"""Vault data models."""
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


class Provider(str, Enum):
    """Integration kinds a credential can belong to."""

    GOOGLE_SHEETS = "GOOGLE_SHEETS"
    SLACK = "SLACK"
    AIRTABLE = "AIRTABLE"
    ZAPIER = "ZAPIER"
    MAKERSUITE = "MAKERSUITE"
    CUSTOM = "CUSTOM"


class AuditEventType(str, Enum):
    CREATED = "created"
    USED = "used"
    UPDATED = "updated"
    DELETED = "deleted"
    VALIDATED = "validated"
    DECRYPTION_FAILED = "decryption_failed"


def as_utc(value: datetime | None) -> datetime | None:
    """Naive datetimes are taken to be UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class CredentialSummary(BaseModel):
    """Non-secret view of a credential, safe to return from any read path."""

    id: str
    provider: Provider
    label: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime
    last_used_at: datetime | None = None
    expires_at: datetime | None = None


class DecryptedCredential(CredentialSummary):
    """A credential together with its decrypted secret map.

    Never persisted; ``secrets`` is hidden from ``repr``.
    """

    secrets: dict[str, Any] = Field(default_factory=dict, repr=False)


class CredentialRecord(BaseModel):
    """A stored credential row (metadata plus the encrypted envelope)."""

    id: str
    owner_user_id: str
    owner_org_id: str
    provider: Provider
    label: str
    envelope: str = Field(repr=False)
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime
    last_used_at: datetime | None = None
    expires_at: datetime | None = None
    is_active: bool = True

    model_config = {"frozen": True, "hide_input_in_errors": True}

    @field_validator("created_at", "updated_at", "last_used_at", "expires_at")
    @classmethod
    def normalize_timestamps(cls, v: datetime | None) -> datetime | None:
        return as_utc(v)

    def owned_by(self, owner_user_id: str, owner_org_id: str) -> bool:
        return (
            self.owner_user_id == owner_user_id
            and self.owner_org_id == owner_org_id
        )

    def is_expired(self, now: datetime) -> bool:
        """Read-time expiry predicate; expiry is never a stored state."""
        return self.expires_at is not None and self.expires_at <= now

    def summary(self) -> CredentialSummary:
        return CredentialSummary(
            id=self.id,
            provider=self.provider,
            label=self.label,
            metadata=dict(self.metadata),
            created_at=self.created_at,
            updated_at=self.updated_at,
            last_used_at=self.last_used_at,
            expires_at=self.expires_at,
        )


class CredentialUpdate(BaseModel):
    """Partial update for a credential.

    Only fields explicitly set are applied. Passing ``expires_at=None`` or
    ``metadata=None`` clears them; ``label`` and ``secret_map`` cannot be
    cleared.
    """

    secret_map: dict[str, Any] | None = Field(default=None, repr=False)
    label: str | None = None
    metadata: dict[str, Any] | None = None
    expires_at: datetime | None = None

    model_config = {"extra": "forbid", "hide_input_in_errors": True}

    @field_validator("expires_at")
    @classmethod
    def normalize_expiry(cls, v: datetime | None) -> datetime | None:
        return as_utc(v)

    def changed_fields(self) -> list[str]:
        return sorted(self.model_fields_set)


class AuditEvent(BaseModel):
    """Lifecycle/usage event handed to an AuditSink."""

    type: AuditEventType
    credential_id: str
    actor_id: str
    org_id: str
    timestamp: datetime
    context: dict[str, Any] = Field(default_factory=dict)
