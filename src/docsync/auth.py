"""
Bearer token providers.

Acquiring and refreshing OAuth tokens happens elsewhere (a browser
sign-in flow, a system keyring, a helper process). docsync only asks
for a currently valid token on demand. ``None`` means "not signed in",
which ends the current sync attempt without retrying.
"""

from __future__ import annotations

import json
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

logger = logging.getLogger("docsync.auth")


class TokenProvider(ABC):
    """Supplies a valid access token, refreshing transparently if it can."""

    @abstractmethod
    def get_token(self) -> Optional[str]:
        """Return a bearer token, or None when no account is signed in."""

    def is_signed_in(self) -> bool:
        return bool(self.get_token())


class StaticTokenProvider(TokenProvider):
    """Fixed token, mostly for tests and one-off scripts."""

    def __init__(self, token: Optional[str]) -> None:
        self._token = token

    def get_token(self) -> Optional[str]:
        return self._token


class EnvTokenProvider(TokenProvider):
    """Reads the token from an environment variable on every call."""

    def __init__(self, env_var: str) -> None:
        self.env_var = env_var

    def get_token(self) -> Optional[str]:
        return os.environ.get(self.env_var) or None


class FileTokenProvider(TokenProvider):
    """Reads the token from a file kept fresh by an external helper.

    The file may hold the bare token or JSON with an ``access_token`` key.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path).expanduser()

    def get_token(self) -> Optional[str]:
        try:
            raw = self.path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.warning("Could not read token file %s: %s", self.path, exc)
            return None

        if raw.startswith("{"):
            try:
                return json.loads(raw).get("access_token") or None
            except json.JSONDecodeError:
                logger.warning("Token file %s is not valid JSON", self.path)
                return None
        return raw or None


def create_token_provider(token_env_var: Optional[str], token_file: Optional[Path]) -> TokenProvider:
    """Pick a provider from configuration, preferring the token file."""
    if token_file:
        return FileTokenProvider(token_file)
    if token_env_var:
        return EnvTokenProvider(token_env_var)
    return StaticTokenProvider(None)
