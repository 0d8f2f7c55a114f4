"""
Vault Crypto Core — Key derivation, envelope encryption and serialization.

Every secret is sealed into a self-describing envelope:

    version(1B) || salt(64B) || iv(12B) || auth_tag(16B) || ciphertext

base64-encoded for storage in a text column. The leading version byte selects
the AEAD/KDF pair, so records written under an older scheme stay readable
while new writes use the configured one:

    v1: PBKDF2-HMAC-SHA512 (100k) -> AES-256-GCM
    v2: PBKDF2-HMAC-SHA512 (100k) -> ChaCha20-Poly1305

Security Note:
    Never log plaintext or envelope values.
    Salt and IV are drawn from os.urandom on every encryption; a derived key
    is therefore never used with more than one IV.
"""
import os
import base64
import binascii
from dataclasses import dataclass
from collections.abc import Mapping
from typing import Any

import orjson
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.primitives.ciphers.aead import AESGCM, ChaCha20Poly1305

from .exceptions import DecryptionFailed, ValidationFailed

VERSION_SIZE = 1
SALT_SIZE = 64
NONCE_SIZE = 12  # 96-bit nonce
TAG_SIZE = 16
KEY_LENGTH = 32  # AES-256

MIN_ITERATIONS = 100_000
HEADER_SIZE = VERSION_SIZE + SALT_SIZE + NONCE_SIZE + TAG_SIZE


@dataclass(frozen=True)
class CipherScheme:
    """AEAD + KDF pair identified by an envelope version byte."""

    version: int
    backend: str
    aead: type
    iterations: int


SCHEMES: dict[int, CipherScheme] = {
    1: CipherScheme(1, "aesgcm", AESGCM, MIN_ITERATIONS),
    2: CipherScheme(2, "chacha20", ChaCha20Poly1305, MIN_ITERATIONS),
}

CURRENT_VERSION = 1


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------

def derive_key(
    master_secret: bytes,
    salt: bytes,
    iterations: int = MIN_ITERATIONS,
) -> bytes:
    """Derive a 32-byte per-record key using PBKDF2-HMAC-SHA512.

    Args:
        master_secret: Long-lived master key bytes.
        salt: Random per-record salt.
        iterations: PBKDF2 iteration count (minimum 100,000).

    Returns:
        32-byte derived key.

    Raises:
        ValueError: If inputs are empty or iterations is below the minimum.
    """
    if not master_secret:
        raise ValueError("master_secret cannot be empty")
    if not salt:
        raise ValueError("salt cannot be empty")
    if iterations < MIN_ITERATIONS:
        raise ValueError(
            f"iterations must be at least {MIN_ITERATIONS}, got {iterations}"
        )
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA512(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(master_secret)


# ---------------------------------------------------------------------------
# Envelope encoding
# ---------------------------------------------------------------------------

def _decode(envelope: str | bytes) -> bytes:
    """Decode envelope text, rejecting anything but canonical base64."""
    try:
        text = envelope.encode("ascii") if isinstance(envelope, str) else bytes(envelope)
        raw = base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError, TypeError):
        raise DecryptionFailed("malformed envelope encoding") from None
    # b64decode ignores non-zero padding bits; a re-encode catches those edits.
    if base64.b64encode(raw) != text:
        raise DecryptionFailed("malformed envelope encoding")
    return raw


def envelope_version(envelope: str | bytes) -> int:
    """Return the version byte of an envelope without decrypting it."""
    raw = _decode(envelope)
    if len(raw) < HEADER_SIZE:
        raise DecryptionFailed("envelope truncated")
    return raw[0]


class EnvelopeCipher:
    """Authenticated encryption into versioned envelopes.

    Writes always use ``version``; reads accept every registered scheme.
    Instances hold no key material and are safe to share between threads.
    """

    def __init__(self, version: int = CURRENT_VERSION) -> None:
        if version not in SCHEMES:
            raise ValueError(f"Unsupported envelope version: {version}")
        self._scheme = SCHEMES[version]

    @classmethod
    def from_backend(cls, backend: str) -> "EnvelopeCipher":
        """Build a cipher writing with the named backend ("aesgcm"/"chacha20")."""
        for scheme in SCHEMES.values():
            if scheme.backend == backend:
                return cls(scheme.version)
        raise ValueError(f"Unsupported cipher backend: {backend}")

    @property
    def version(self) -> int:
        return self._scheme.version

    @property
    def backend(self) -> str:
        return self._scheme.backend

    def encrypt(
        self,
        plaintext: bytes,
        master_secret: bytes,
        associated_data: bytes | None = None,
    ) -> str:
        """Seal plaintext into a fresh envelope.

        Args:
            plaintext: Data to encrypt.
            master_secret: Master key bytes; the record key is derived from it.
            associated_data: Optional data authenticated but not encrypted.
                The same value must be supplied to ``decrypt``.

        Returns:
            base64 envelope text.
        """
        scheme = self._scheme
        salt = os.urandom(SALT_SIZE)
        nonce = os.urandom(NONCE_SIZE)
        key = derive_key(master_secret, salt, scheme.iterations)
        sealed = scheme.aead(key).encrypt(nonce, plaintext, associated_data)
        ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
        raw = bytes([scheme.version]) + salt + nonce + tag + ciphertext
        return base64.b64encode(raw).decode("ascii")

    def decrypt(
        self,
        envelope: str | bytes,
        master_secret: bytes,
        associated_data: bytes | None = None,
    ) -> bytes:
        """Open an envelope produced by any registered scheme.

        Raises:
            DecryptionFailed: On malformed or truncated input, unknown version,
                or authentication failure (wrong key, wrong associated data,
                any modified byte).
        """
        raw = _decode(envelope)
        if len(raw) < HEADER_SIZE:
            raise DecryptionFailed("envelope truncated")
        scheme = SCHEMES.get(raw[0])
        if scheme is None:
            raise DecryptionFailed("unsupported envelope version")
        offset = VERSION_SIZE
        salt = raw[offset:offset + SALT_SIZE]
        offset += SALT_SIZE
        nonce = raw[offset:offset + NONCE_SIZE]
        offset += NONCE_SIZE
        tag = raw[offset:offset + TAG_SIZE]
        ciphertext = raw[offset + TAG_SIZE:]

        key = derive_key(master_secret, salt, scheme.iterations)
        try:
            return scheme.aead(key).decrypt(nonce, ciphertext + tag, associated_data)
        except InvalidTag:
            raise DecryptionFailed("authentication failed") from None


# ---------------------------------------------------------------------------
# Secret map serialization
# ---------------------------------------------------------------------------

# orjson would otherwise coerce these into strings/dicts that do not load back.
_STRICT_JSON = (
    orjson.OPT_PASSTHROUGH_DATETIME
    | orjson.OPT_PASSTHROUGH_DATACLASS
    | orjson.OPT_PASSTHROUGH_SUBCLASS
)


def encode_json_object(value: Any, field: str) -> bytes:
    """Encode a mapping as JSON, refusing anything that would not load back equal.

    Non-finite floats (written as ``null``), UUIDs, tuples and other values
    orjson converts on the way out are rejected.

    Raises:
        ValidationFailed: Naming ``field`` only, never the offending value.
    """
    if not isinstance(value, Mapping):
        raise ValidationFailed(field, "must be a JSON object")
    value = dict(value)
    try:
        data = orjson.dumps(value, option=_STRICT_JSON)
    except TypeError:
        # orjson's message may quote the offending value; drop it.
        raise ValidationFailed(
            field, "contains values that are not JSON serializable"
        ) from None
    if orjson.loads(data) != value:
        raise ValidationFailed(field, "contains values that do not round-trip as JSON")
    return data


def serialize_secret_map(secret_map: Any) -> bytes:
    """Serialize a secret map to JSON bytes for encryption.

    Raises:
        ValidationFailed: If the value is not a mapping with string keys or
            contains values JSON cannot represent.
    """
    return encode_json_object(secret_map, "secret_map")


def deserialize_secret_map(data: bytes) -> dict[str, Any]:
    """Parse decrypted bytes back into a secret map."""
    try:
        parsed = orjson.loads(data)
    except orjson.JSONDecodeError:
        raise DecryptionFailed("payload is not valid JSON") from None
    if not isinstance(parsed, dict):
        raise DecryptionFailed("payload is not a JSON object")
    return parsed
