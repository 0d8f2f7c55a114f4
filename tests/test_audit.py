"""Tests for audit sinks."""
import logging
from datetime import datetime, timezone

from conftest import FakeConnection, FakePool
from credential_vault.audit import DatabaseAuditSink, LoggingAuditSink
from credential_vault.models import AuditEvent, AuditEventType


def _event():
    return AuditEvent(
        type=AuditEventType.USED,
        credential_id="c1",
        actor_id="u1",
        org_id="o1",
        timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc),
        context={"workflow_id": "wf-1"},
    )


class TestLoggingAuditSink:
    async def test_logs_event(self, caplog):
        with caplog.at_level(logging.INFO, logger="credential_vault.audit"):
            await LoggingAuditSink().record(_event())
        assert "Credential used: id=c1 actor=u1 org=o1" in caplog.text
        assert "wf-1" in caplog.text


class TestDatabaseAuditSink:
    async def test_inserts_row(self):
        conn = FakeConnection()
        await DatabaseAuditSink(FakePool(conn)).record(_event())
        sql, args = conn.calls[0]
        assert "INSERT INTO vault.credential_audit" in sql
        assert args[:4] == ("c1", "used", "u1", "o1")
        assert args[4] == '{"workflow_id":"wf-1"}'
