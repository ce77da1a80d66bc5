"""
Encrypted user settings.

Settings hold provider credentials, so they are never on disk in the
clear. Locally they are sealed with the device key. For sync they are
re-sealed with the identity key and stored as one blob beside the
documents folder. Older installations uploaded the blob under a
passphrase; such a blob is read once with the passphrase and then
replaced.

Storage layout:
    ~/.docsync/settings.json    # {"envelope": <v2 envelope>, "updatedAt": ms}

Remote blob (settings.enc.json):
    {"envelope": <v3 or legacy v1 envelope>, "updatedAt": ms}
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError

from .crypto import (
    DecryptionError,
    DeviceKeyStore,
    EncryptedEnvelope,
    decrypt_for_sync,
    decrypt_legacy,
    decrypt_local,
    encrypt_for_sync,
    encrypt_local,
    is_legacy,
)
from .fileio import atomic_write_text
from .sync.models import now_ms

logger = logging.getLogger("docsync.settings")

SETTINGS_FILE = "settings.json"
SETTINGS_VERSION = 1


class SettingsError(Exception):
    """Raised when settings cannot be read, decrypted, or imported."""


class UserSettings(BaseModel):
    """User preferences and provider configuration."""

    version: int = SETTINGS_VERSION
    values: dict[str, Any] = Field(default_factory=dict)
    updated_at: int = 0


class StoredSettings(BaseModel):
    """On-disk and on-remote wrapper. ``updatedAt`` stays readable for ordering."""

    envelope: EncryptedEnvelope
    updatedAt: int = 0


@dataclass
class SettingsImport:
    imported: bool = False
    migrated: bool = False


class SettingsStore:
    """Device-key encrypted settings file.

    Args:
        home: docsync home directory.
        device_keys: Source of the device key.
    """

    def __init__(self, home: Path, device_keys: Optional[DeviceKeyStore] = None) -> None:
        self.path = home / SETTINGS_FILE
        self.device_keys = device_keys or DeviceKeyStore(home)
        self._lock = threading.Lock()
        self._cached: Optional[UserSettings] = None

    def _read_stored(self) -> Optional[StoredSettings]:
        if not self.path.exists():
            return None
        try:
            return StoredSettings.model_validate_json(self.path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as exc:
            raise SettingsError(f"Settings file is unreadable: {exc}") from exc

    def load(self) -> UserSettings:
        """Decrypt and return the settings.

        Defaults are returned only when no settings were ever saved.

        Raises:
            SettingsError: If the stored settings cannot be decrypted.
        """
        with self._lock:
            if self._cached is not None:
                return self._cached.model_copy(deep=True)
            stored = self._read_stored()
            if stored is None:
                return UserSettings()
            try:
                plaintext = decrypt_local(stored.envelope, self.device_keys.get())
                settings = UserSettings.model_validate_json(plaintext)
            except (DecryptionError, ValidationError) as exc:
                raise SettingsError(f"Failed to decrypt settings: {exc}") from exc
            self._cached = settings
            return settings.model_copy(deep=True)

    def save(self, settings: UserSettings) -> UserSettings:
        """Encrypt with the device key and write. Bumps ``updated_at``."""
        previous = self._read_stored()
        floor = previous.updatedAt if previous else 0
        settings = settings.model_copy(
            update={"updated_at": max(now_ms(), floor + 1), "version": SETTINGS_VERSION},
        )
        self._write(settings)
        logger.info("Settings saved")
        return settings

    def _write(self, settings: UserSettings) -> None:
        envelope = encrypt_local(settings.model_dump_json().encode("utf-8"), self.device_keys.get())
        stored = StoredSettings(envelope=envelope, updatedAt=settings.updated_at)
        with self._lock:
            atomic_write_text(
                self.path, stored.model_dump_json(exclude_none=True), mode=0o600,
            )
            self._cached = settings

    def clear(self, forget_device_key: bool = False) -> None:
        with self._lock:
            self.path.unlink(missing_ok=True)
            self._cached = None
        if forget_device_key:
            self.device_keys.delete()

    def export_for_sync(self, user_id: str) -> Optional[bytes]:
        """Settings sealed with the identity key, or None if never saved."""
        settings = self.load()
        if settings.updated_at == 0:
            return None
        envelope = encrypt_for_sync(settings.model_dump_json().encode("utf-8"), user_id)
        blob = StoredSettings(envelope=envelope, updatedAt=settings.updated_at)
        return blob.model_dump_json(exclude_none=True).encode("utf-8")

    def import_from_sync(
        self,
        payload: bytes,
        user_id: str,
        passphrase: Optional[str] = None,
    ) -> SettingsImport:
        """Adopt a remote settings blob if it is newer than ours.

        Args:
            payload: Remote blob bytes.
            user_id: Account id for the identity key.
            passphrase: Needed only when the blob is a legacy envelope.

        Raises:
            SettingsError: If the blob is malformed, cannot be decrypted,
                or is legacy and no passphrase was given.
        """
        try:
            blob = StoredSettings.model_validate_json(payload)
        except ValidationError as exc:
            raise SettingsError(f"Remote settings blob is malformed: {exc}") from exc

        legacy = is_legacy(blob.envelope)
        local = self._read_stored()
        if local is not None and local.updatedAt >= blob.updatedAt:
            logger.debug("Local settings are newer, skipping import")
            return SettingsImport(imported=False, migrated=legacy)

        try:
            if legacy:
                if not passphrase:
                    raise SettingsError("Remote settings use a passphrase; none was given")
                plaintext = decrypt_legacy(blob.envelope, passphrase)
            else:
                plaintext = decrypt_for_sync(blob.envelope, user_id)
            settings = UserSettings.model_validate(json.loads(plaintext))
        except (DecryptionError, ValidationError, ValueError) as exc:
            raise SettingsError(f"Failed to decrypt remote settings: {exc}") from exc

        settings.updated_at = blob.updatedAt
        self._write(settings)
        logger.info("Imported settings from sync%s", " (legacy)" if legacy else "")
        return SettingsImport(imported=True, migrated=legacy)


class SettingsSync:
    """Moves the settings blob between the store and the remote.

    Args:
        store: Local settings store.
        remote: Encrypting remote client (used for its raw blob calls).
        user_id: Account id for the identity key.
        passphrase: Legacy passphrase, for one-time migration only.
    """

    def __init__(self, store: SettingsStore, remote, user_id: str, passphrase: Optional[str] = None) -> None:
        self.store = store
        self.remote = remote
        self.user_id = user_id
        self.passphrase = passphrase

    def push(self) -> bool:
        data = self.store.export_for_sync(self.user_id)
        if data is None:
            logger.debug("No saved settings to push")
            return False
        self.remote.upload_settings(data)
        logger.info("Settings pushed")
        return True

    def pull(self) -> SettingsImport:
        raw = self.remote.download_settings()
        if raw is None:
            return SettingsImport()
        outcome = self.store.import_from_sync(raw, self.user_id, self.passphrase)
        if outcome.migrated:
            logger.info("Re-uploading legacy settings under the identity key")
            self.push()
        return outcome
