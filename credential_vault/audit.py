"""
Audit Sinks — receivers for credential lifecycle and usage events.

Sinks are fire-and-forget from the service's point of view: a failing sink is
logged and never fails the operation that produced the event.

Security Note:
    Events carry ids, operation names and non-secret context only.
"""
import logging
from abc import ABC, abstractmethod
from typing import Any

import orjson

from .models import AuditEvent

logger = logging.getLogger("credential_vault.audit")

_INSERT_AUDIT = """
INSERT INTO vault.credential_audit
    (credential_id, event_type, actor_id, org_id, context, occurred_at)
VALUES ($1, $2, $3, $4, $5::jsonb, $6)
"""


class AuditSink(ABC):
    @abstractmethod
    async def record(self, event: AuditEvent) -> None:
        ...


class LoggingAuditSink(AuditSink):
    """Writes each event as a log line."""

    def __init__(self, level: int = logging.INFO) -> None:
        self._level = level

    async def record(self, event: AuditEvent) -> None:
        logger.log(
            self._level,
            "Credential %s: id=%s actor=%s org=%s context=%s",
            event.type.value,
            event.credential_id,
            event.actor_id,
            event.org_id,
            event.context,
        )


class DatabaseAuditSink(AuditSink):
    """Inserts events into ``vault.credential_audit``.

    Args:
        db_pool: asyncpg-compatible connection pool.
    """

    def __init__(self, db_pool: Any) -> None:
        self._db = db_pool

    async def record(self, event: AuditEvent) -> None:
        async with self._db.acquire() as conn:
            await conn.execute(
                _INSERT_AUDIT,
                event.credential_id,
                event.type.value,
                event.actor_id,
                event.org_id,
                orjson.dumps(event.context).decode("utf-8"),
                event.timestamp,
            )
