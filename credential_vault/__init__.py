"""Credential Vault — Encrypted, tenant-scoped storage for integration secrets.

Security Note (Threat Model):
    Secrets are decrypted in process memory only for the duration of a read.
    A memory dump of the application process taken during a read could expose
    plaintext. This is an accepted limitation; mitigation requires HSM/KMS
    integration which is out of scope.
"""

from .version import __version__
from .clock import Clock, ManualClock, SystemClock
from .config import (
    EnvironmentKeyProvider,
    MasterKeyProvider,
    StaticKeyProvider,
    VaultConfig,
    generate_master_key,
    load_master_key,
)
from .crypto import EnvelopeCipher, derive_key, envelope_version
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
    AuditEvent,
    AuditEventType,
    CredentialRecord,
    CredentialSummary,
    CredentialUpdate,
    DecryptedCredential,
    Provider,
)
from .audit import AuditSink, DatabaseAuditSink, LoggingAuditSink
from .store import CredentialStore, MemoryStore, PostgresStore
from .service import CredentialService

__all__ = [
    "__version__",
    "CredentialService",
    "CredentialStore",
    "MemoryStore",
    "PostgresStore",
    "AuditSink",
    "LoggingAuditSink",
    "DatabaseAuditSink",
    "AuditEvent",
    "AuditEventType",
    "CredentialRecord",
    "CredentialSummary",
    "CredentialUpdate",
    "DecryptedCredential",
    "Provider",
    "EnvelopeCipher",
    "derive_key",
    "envelope_version",
    "Clock",
    "SystemClock",
    "ManualClock",
    "MasterKeyProvider",
    "StaticKeyProvider",
    "EnvironmentKeyProvider",
    "VaultConfig",
    "load_master_key",
    "generate_master_key",
    "VaultError",
    "NotFound",
    "DecryptionFailed",
    "Expired",
    "ValidationFailed",
    "PersistenceError",
    "KeyUnavailable",
]
