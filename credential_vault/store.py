"""
Credential Stores — persistence collaborators for the credential vault.

Every store filters by the tenant pair ``(owner_user_id, owner_org_id)`` at
this boundary, not only in the service layer. Read and update paths only
ever see active (not soft-deleted) rows; rows are never physically removed
here.

Concurrency:
    ``update`` must be atomic relative to concurrent reads of the same id so a
    reader never observes a half-written envelope. MemoryStore replaces whole
    immutable records under a lock; PostgresStore issues a single
    ``UPDATE ... RETURNING`` statement.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any

import orjson

from .models import CredentialRecord, Provider

logger = logging.getLogger("credential_vault.store")

UPDATABLE_FIELDS = frozenset({
    "label",
    "envelope",
    "metadata",
    "updated_at",
    "last_used_at",
    "expires_at",
    "is_active",
})


def _check_patch(patch: Mapping[str, Any]) -> None:
    unknown = set(patch) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Fields cannot be updated: {sorted(unknown)}")
    if patch.get("is_active") is True:
        raise ValueError("A deleted credential cannot be re-activated")


class CredentialStore(ABC):
    """Opaque credential storage keyed by id and tenant."""

    @abstractmethod
    async def save(self, record: CredentialRecord) -> str:
        """Insert a new record and return its id."""

    @abstractmethod
    async def find_one(
        self, credential_id: str, owner_user_id: str, owner_org_id: str,
    ) -> CredentialRecord | None:
        """Return the active record for this tenant, or None."""

    @abstractmethod
    async def find_many(
        self,
        owner_user_id: str,
        owner_org_id: str,
        provider: Provider | None = None,
    ) -> list[CredentialRecord]:
        """Return all active records for this tenant."""

    @abstractmethod
    async def update(
        self,
        credential_id: str,
        owner_user_id: str,
        owner_org_id: str,
        patch: Mapping[str, Any],
    ) -> CredentialRecord | None:
        """Apply ``patch`` to an active record; None if nothing matched.

        ``last_used_at`` never moves backwards.
        """


class MemoryStore(CredentialStore):
    """In-process store for tests and local development."""

    def __init__(self) -> None:
        self._rows: dict[str, CredentialRecord] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._rows)

    def raw(self, credential_id: str) -> CredentialRecord | None:
        """Return a row regardless of tenant or soft-delete state."""
        return self._rows.get(credential_id)

    def _visible(
        self, credential_id: str, owner_user_id: str, owner_org_id: str,
    ) -> CredentialRecord | None:
        record = self._rows.get(credential_id)
        if record is None or not record.is_active:
            return None
        if not record.owned_by(owner_user_id, owner_org_id):
            return None
        return record

    async def save(self, record: CredentialRecord) -> str:
        async with self._lock:
            if record.id in self._rows:
                raise ValueError(f"Duplicate credential id {record.id}")
            self._rows[record.id] = record
        return record.id

    async def find_one(
        self, credential_id: str, owner_user_id: str, owner_org_id: str,
    ) -> CredentialRecord | None:
        return self._visible(credential_id, owner_user_id, owner_org_id)

    async def find_many(
        self,
        owner_user_id: str,
        owner_org_id: str,
        provider: Provider | None = None,
    ) -> list[CredentialRecord]:
        rows = [
            r for r in self._rows.values()
            if r.is_active
            and r.owned_by(owner_user_id, owner_org_id)
            and (provider is None or r.provider == provider)
        ]
        return sorted(rows, key=lambda r: r.created_at)

    async def update(
        self,
        credential_id: str,
        owner_user_id: str,
        owner_org_id: str,
        patch: Mapping[str, Any],
    ) -> CredentialRecord | None:
        _check_patch(patch)
        async with self._lock:
            record = self._visible(credential_id, owner_user_id, owner_org_id)
            if record is None:
                return None
            changes = dict(patch)
            last_used = changes.get("last_used_at")
            if last_used is not None and record.last_used_at is not None:
                changes["last_used_at"] = max(last_used, record.last_used_at)
            updated = record.model_copy(update=changes)
            self._rows[credential_id] = updated
        return updated


# ---------------------------------------------------------------------------
# PostgreSQL
# ---------------------------------------------------------------------------

_COLUMNS = """
id, owner_user_id, owner_org_id, provider, label, envelope, metadata,
created_at, updated_at, last_used_at, expires_at, is_active
"""

_INSERT_CREDENTIAL = """
INSERT INTO vault.integration_credentials (
    id, owner_user_id, owner_org_id, provider, label, envelope, metadata,
    created_at, updated_at, last_used_at, expires_at, is_active
)
VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, $8, $9, $10, $11, $12)
RETURNING id
"""

_SELECT_ONE = f"""
SELECT {_COLUMNS}
FROM vault.integration_credentials
WHERE id = $1 AND owner_user_id = $2 AND owner_org_id = $3 AND is_active
"""

_SELECT_MANY = f"""
SELECT {_COLUMNS}
FROM vault.integration_credentials
WHERE owner_user_id = $1 AND owner_org_id = $2 AND is_active
  AND ($3::text IS NULL OR provider = $3)
ORDER BY created_at
"""

_UPDATE_TEMPLATE = """
UPDATE vault.integration_credentials
SET {assignments}
WHERE id = $1 AND owner_user_id = $2 AND owner_org_id = $3 AND is_active
RETURNING {columns}
"""


def _row_to_record(row: Mapping[str, Any]) -> CredentialRecord:
    metadata = row["metadata"]
    if isinstance(metadata, (str, bytes)):
        metadata = orjson.loads(metadata)
    return CredentialRecord(
        id=row["id"],
        owner_user_id=row["owner_user_id"],
        owner_org_id=row["owner_org_id"],
        provider=row["provider"],
        label=row["label"],
        envelope=row["envelope"],
        metadata=metadata or {},
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        last_used_at=row["last_used_at"],
        expires_at=row["expires_at"],
        is_active=row["is_active"],
    )


def build_update(patch: Mapping[str, Any]) -> tuple[str, list[Any]]:
    """Render the UPDATE statement and its parameters (after $1..$3)."""
    _check_patch(patch)
    if not patch:
        raise ValueError("Empty patch")
    assignments: list[str] = []
    params: list[Any] = []
    for column in sorted(patch):
        value = patch[column]
        position = len(params) + 4
        if column == "metadata":
            params.append(orjson.dumps(value or {}).decode("utf-8"))
            assignments.append(f"metadata = ${position}::jsonb")
        elif column == "last_used_at":
            params.append(value)
            # GREATEST skips NULLs, so the first touch simply sets the value.
            assignments.append(
                f"last_used_at = GREATEST(last_used_at, ${position})"
            )
        else:
            params.append(value)
            assignments.append(f"{column} = ${position}")
    sql = _UPDATE_TEMPLATE.format(
        assignments=", ".join(assignments), columns=_COLUMNS.strip(),
    )
    return sql, params


class PostgresStore(CredentialStore):
    """Store backed by an asyncpg-compatible connection pool.

    Expects the ``vault.integration_credentials`` table with the columns of
    CredentialRecord; ``metadata`` is ``jsonb`` and ``envelope`` is ``text``.
    """

    def __init__(self, db_pool: Any) -> None:
        self._db = db_pool

    async def save(self, record: CredentialRecord) -> str:
        async with self._db.acquire() as conn:
            row_id = await conn.fetchval(
                _INSERT_CREDENTIAL,
                record.id,
                record.owner_user_id,
                record.owner_org_id,
                record.provider.value,
                record.label,
                record.envelope,
                orjson.dumps(record.metadata).decode("utf-8"),
                record.created_at,
                record.updated_at,
                record.last_used_at,
                record.expires_at,
                record.is_active,
            )
        logger.debug("Inserted credential id=%s", row_id)
        return row_id

    async def find_one(
        self, credential_id: str, owner_user_id: str, owner_org_id: str,
    ) -> CredentialRecord | None:
        async with self._db.acquire() as conn:
            row = await conn.fetchrow(
                _SELECT_ONE, credential_id, owner_user_id, owner_org_id,
            )
        return _row_to_record(row) if row else None

    async def find_many(
        self,
        owner_user_id: str,
        owner_org_id: str,
        provider: Provider | None = None,
    ) -> list[CredentialRecord]:
        async with self._db.acquire() as conn:
            rows = await conn.fetch(
                _SELECT_MANY,
                owner_user_id,
                owner_org_id,
                provider.value if provider else None,
            )
        return [_row_to_record(row) for row in rows]

    async def update(
        self,
        credential_id: str,
        owner_user_id: str,
        owner_org_id: str,
        patch: Mapping[str, Any],
    ) -> CredentialRecord | None:
        sql, params = build_update(patch)
        async with self._db.acquire() as conn:
            row = await conn.fetchrow(
                sql, credential_id, owner_user_id, owner_org_id, *params,
            )
        return _row_to_record(row) if row else None
