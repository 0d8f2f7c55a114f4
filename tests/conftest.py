import secrets
from contextlib import asynccontextmanager

import pytest

from credential_vault.audit import AuditSink
from credential_vault.clock import ManualClock
from credential_vault.config import StaticKeyProvider
from credential_vault.service import CredentialService
from credential_vault.store import MemoryStore


class RecordingAuditSink(AuditSink):
    """Keeps every event in memory."""

    def __init__(self):
        self.events = []

    async def record(self, event):
        self.events.append(event)

    def types(self):
        return [e.type.value for e in self.events]


class FakeConnection:
    """Minimal asyncpg-like connection capturing SQL calls."""

    def __init__(self, row=None, rows=None):
        self.calls = []
        self.row = row
        self.rows = rows or []

    async def fetchrow(self, sql, *args):
        self.calls.append((sql, args))
        return self.row

    async def fetch(self, sql, *args):
        self.calls.append((sql, args))
        return self.rows

    async def fetchval(self, sql, *args):
        self.calls.append((sql, args))
        return args[0]

    async def execute(self, sql, *args):
        self.calls.append((sql, args))
        return "OK"


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    @asynccontextmanager
    async def acquire(self):
        yield self.conn


@pytest.fixture
def master_key():
    return secrets.token_bytes(32)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def audit():
    return RecordingAuditSink()


@pytest.fixture
def service(store, master_key, audit, clock):
    return CredentialService(
        store, StaticKeyProvider(master_key), audit=audit, clock=clock,
    )
