"""
Encryption layer -- AES-256-GCM envelopes for local and synced data.

Three key paths, discriminated by the envelope version:

    v1  legacy passphrase   PBKDF2-SHA256 (600k iterations, random salt)
    v2  device key          random 256-bit key, never leaves this device
    v3  identity key        HKDF-SHA256 over the account's user id

The device key protects data at rest. The identity key protects data
leaving the device: any device signed into the same account derives the
same key, so no secret is ever exchanged and nothing is stored remotely.
Legacy envelopes are decrypt-only and exist for one-time migration.

Every encrypt call draws a fresh 96-bit nonce. A wrong key, tampered
ciphertext, or unknown version raises DecryptionError. Callers must not
turn that into "no data".

Storage layout:
    ~/.docsync/keys/
    └── device.key      # 32 raw bytes, mode 0600
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.hashes import SHA256
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from pydantic import BaseModel

from .fileio import atomic_write_bytes

logger = logging.getLogger("docsync.crypto")

ENVELOPE_LEGACY = 1
ENVELOPE_DEVICE = 2
ENVELOPE_IDENTITY = 3

KEY_LENGTH = 32
NONCE_LENGTH = 12
SALT_LENGTH = 16
PBKDF2_ITERATIONS = 600_000

# Baked into protocol version 3. Changing either breaks every existing payload.
IDENTITY_SALT = b"docsync:sync:salt:v3"
IDENTITY_INFO = b"docsync:sync:identity:v3"

DEVICE_KEY_FILE = "device.key"


class DecryptionError(Exception):
    """Raised when an envelope cannot be authenticated or decoded."""


class EncryptedEnvelope(BaseModel):
    """Versioned AES-GCM payload. All binary fields are base64.

    ``salt`` is present only on legacy passphrase envelopes.
    """

    v: int
    iv: str
    data: str
    salt: Optional[str] = None


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------


def _derive_key(material: bytes, salt: Optional[bytes], info: bytes, length: int = KEY_LENGTH) -> bytes:
    """Derive a key using HKDF-SHA256.

    Args:
        material: Input keying material.
        salt: Optional HKDF salt.
        info: Context string.
        length: Desired output length in bytes.

    Returns:
        Derived key bytes.
    """
    hkdf = HKDF(algorithm=SHA256(), length=length, salt=salt, info=info)
    return hkdf.derive(material)


def derive_identity_key(user_id: str) -> bytes:
    """Derive the account-wide sync key from a stable user identifier."""
    if not user_id:
        raise ValueError("A user id is required to derive the sync key")
    return _derive_key(user_id.encode("utf-8"), IDENTITY_SALT, IDENTITY_INFO)


def derive_passphrase_key(passphrase: str, salt: bytes) -> bytes:
    """Derive a legacy key from a human passphrase (PBKDF2-SHA256)."""
    kdf = PBKDF2HMAC(
        algorithm=SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=PBKDF2_ITERATIONS,
    )
    return kdf.derive(passphrase.encode("utf-8"))


# ---------------------------------------------------------------------------
# Envelope primitives
# ---------------------------------------------------------------------------


def _b64(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


def _unb64(value: Optional[str], field: str) -> bytes:
    if value is None:
        raise DecryptionError(f"Envelope is missing '{field}'")
    try:
        return base64.b64decode(value.encode("ascii"), validate=True)
    except (binascii.Error, ValueError, UnicodeEncodeError) as exc:
        raise DecryptionError(f"Envelope field '{field}' is not valid base64") from exc


def _seal(plaintext: bytes, key: bytes, version: int, salt: Optional[bytes] = None) -> EncryptedEnvelope:
    nonce = os.urandom(NONCE_LENGTH)
    ciphertext = AESGCM(key).encrypt(nonce, plaintext, None)
    return EncryptedEnvelope(
        v=version,
        iv=_b64(nonce),
        data=_b64(ciphertext),
        salt=_b64(salt) if salt is not None else None,
    )


def _open(envelope: EncryptedEnvelope, key: bytes) -> bytes:
    nonce = _unb64(envelope.iv, "iv")
    if len(nonce) != NONCE_LENGTH:
        raise DecryptionError("Envelope nonce has the wrong length")
    ciphertext = _unb64(envelope.data, "data")
    try:
        return AESGCM(key).decrypt(nonce, ciphertext, None)
    except InvalidTag as exc:
        raise DecryptionError("Authentication failed: wrong key or tampered data") from exc


def _require_version(envelope: EncryptedEnvelope, expected: int) -> None:
    if envelope.v != expected:
        raise DecryptionError(
            f"Unsupported envelope version {envelope.v} (expected {expected})"
        )


def parse_envelope(raw: bytes | str | dict) -> EncryptedEnvelope:
    """Parse a serialized envelope, raising DecryptionError on garbage."""
    try:
        if isinstance(raw, dict):
            return EncryptedEnvelope.model_validate(raw)
        return EncryptedEnvelope.model_validate_json(raw)
    except ValueError as exc:
        raise DecryptionError(f"Malformed envelope: {exc}") from exc


# ---------------------------------------------------------------------------
# Device key
# ---------------------------------------------------------------------------


class DeviceKey:
    """Opaque handle to this installation's at-rest key.

    There is deliberately no accessor for the key material.
    """

    __slots__ = ("_aead",)

    def __init__(self, material: bytes) -> None:
        if len(material) != KEY_LENGTH:
            raise ValueError("Device key must be 32 bytes")
        self._aead = AESGCM(material)

    def __repr__(self) -> str:
        return "DeviceKey(<hidden>)"

    def _encrypt(self, nonce: bytes, plaintext: bytes) -> bytes:
        return self._aead.encrypt(nonce, plaintext, None)

    def _decrypt(self, nonce: bytes, ciphertext: bytes) -> bytes:
        return self._aead.decrypt(nonce, ciphertext, None)


class DeviceKeyStore:
    """Creates the device key once and keeps it in the local key directory.

    Args:
        home: docsync home directory (~/.docsync).
    """

    def __init__(self, home: Path) -> None:
        self._keys_dir = home / "keys"
        self._key_file = self._keys_dir / DEVICE_KEY_FILE
        self._cached: Optional[DeviceKey] = None
        self._lock = threading.Lock()

    def get(self) -> DeviceKey:
        """Return the device key, generating it on first use."""
        with self._lock:
            if self._cached is not None:
                return self._cached

            if self._key_file.exists():
                material = self._key_file.read_bytes()
            else:
                material = AESGCM.generate_key(bit_length=256)
                self._keys_dir.mkdir(parents=True, exist_ok=True)
                os.chmod(self._keys_dir, 0o700)
                atomic_write_bytes(self._key_file, material, mode=0o600)
                logger.info("Generated new device key")

            self._cached = DeviceKey(material)
            return self._cached

    def exists(self) -> bool:
        return self._key_file.exists()

    def delete(self) -> None:
        """Forget the device key. Data encrypted under it becomes unreadable."""
        with self._lock:
            self._cached = None
            self._key_file.unlink(missing_ok=True)


def encrypt_local(plaintext: bytes, device_key: DeviceKey) -> EncryptedEnvelope:
    """Encrypt data for storage on this device only."""
    nonce = os.urandom(NONCE_LENGTH)
    ciphertext = device_key._encrypt(nonce, plaintext)
    return EncryptedEnvelope(v=ENVELOPE_DEVICE, iv=_b64(nonce), data=_b64(ciphertext))


def decrypt_local(envelope: EncryptedEnvelope, device_key: DeviceKey) -> bytes:
    """Decrypt a device-key envelope."""
    _require_version(envelope, ENVELOPE_DEVICE)
    nonce = _unb64(envelope.iv, "iv")
    ciphertext = _unb64(envelope.data, "data")
    if len(nonce) != NONCE_LENGTH:
        raise DecryptionError("Envelope nonce has the wrong length")
    try:
        return device_key._decrypt(nonce, ciphertext)
    except InvalidTag as exc:
        raise DecryptionError("Authentication failed: wrong device key or tampered data") from exc


# ---------------------------------------------------------------------------
# Identity key (sync) and legacy passphrase
# ---------------------------------------------------------------------------


def encrypt_for_sync(plaintext: bytes, user_id: str) -> EncryptedEnvelope:
    """Encrypt data that leaves the device."""
    return _seal(plaintext, derive_identity_key(user_id), ENVELOPE_IDENTITY)


def decrypt_for_sync(envelope: EncryptedEnvelope, user_id: str) -> bytes:
    """Decrypt an identity-key envelope produced by any device on the account."""
    _require_version(envelope, ENVELOPE_IDENTITY)
    return _open(envelope, derive_identity_key(user_id))


def encrypt_legacy(plaintext: bytes, passphrase: str) -> EncryptedEnvelope:
    """Produce a legacy passphrase envelope (migration tooling and tests only)."""
    salt = os.urandom(SALT_LENGTH)
    return _seal(plaintext, derive_passphrase_key(passphrase, salt), ENVELOPE_LEGACY, salt=salt)


def decrypt_legacy(envelope: EncryptedEnvelope, passphrase: str) -> bytes:
    """Decrypt a legacy passphrase envelope for one-time migration."""
    _require_version(envelope, ENVELOPE_LEGACY)
    salt = _unb64(envelope.salt, "salt")
    return _open(envelope, derive_passphrase_key(passphrase, salt))


def is_legacy(envelope: EncryptedEnvelope) -> bool:
    return envelope.v == ENVELOPE_LEGACY


class SyncCipher:
    """Seals and opens remote payloads with the account's identity key.

    Args:
        user_id: Stable account identifier.
        legacy_passphrase: Optional passphrase that lets ``open`` read
            legacy v1 payloads during migration.
    """

    def __init__(self, user_id: str, legacy_passphrase: Optional[str] = None) -> None:
        self._user_id = user_id
        self._key = derive_identity_key(user_id)
        self._legacy_passphrase = legacy_passphrase

    @property
    def user_id(self) -> str:
        return self._user_id

    def seal(self, plaintext: bytes) -> bytes:
        envelope = _seal(plaintext, self._key, ENVELOPE_IDENTITY)
        return envelope.model_dump_json(exclude_none=True).encode("utf-8")

    def open(self, raw: bytes) -> bytes:
        envelope = parse_envelope(raw)
        if envelope.v == ENVELOPE_LEGACY:
            if not self._legacy_passphrase:
                raise DecryptionError("Legacy payload found but no passphrase is available")
            return decrypt_legacy(envelope, self._legacy_passphrase)
        _require_version(envelope, ENVELOPE_IDENTITY)
        return _open(envelope, self._key)

    def seal_json(self, obj: Any) -> bytes:
        return self.seal(json.dumps(obj, separators=(",", ":")).encode("utf-8"))

    def open_json(self, raw: bytes) -> Any:
        plaintext = self.open(raw)
        try:
            return json.loads(plaintext)
        except ValueError as exc:
            raise DecryptionError("Decrypted payload is not valid JSON") from exc
