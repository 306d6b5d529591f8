"""
Credential resolution and storage mode switch.

Both functions are pure: they look only at the Settings they are given.
Callers obtain a fresh Settings per request, so the mode follows the
environment without any reinitialization step.
"""

import logging
from enum import Enum
from typing import Optional

from pydantic import SecretStr

from vault.app.core.config import Settings

logger = logging.getLogger("vault.credentials")


class StorageMode(str, Enum):
    """Storage backend selected for a single operation."""

    REAL = "real"
    MOCK = "mock"


def _present(value: Optional[str | SecretStr]) -> Optional[str]:
    if value is None:
        return None
    raw = value.get_secret_value() if isinstance(value, SecretStr) else value
    raw = raw.strip()
    return raw or None


def resolve_auth_headers(settings: Settings) -> Optional[dict[str, str]]:
    """
    Build auth headers for the pinning service.

    A bearer token takes priority over a key/secret pair. Returns None
    when no complete credential is configured.
    """
    jwt = _present(settings.pinata_jwt)
    if jwt:
        return {
            "Authorization": f"Bearer {jwt}",
            "Content-Type": "application/json",
        }

    api_key = _present(settings.pinata_api_key)
    api_secret = _present(settings.pinata_secret_api_key)

    if api_key and api_secret:
        return {
            "pinata_api_key": api_key,
            "pinata_secret_api_key": api_secret,
            "Content-Type": "application/json",
        }

    if api_key or api_secret:
        logger.warning(
            "incomplete_pinning_credentials",
            extra={
                "has_api_key": bool(api_key),
                "has_api_secret": bool(api_secret),
            },
        )

    return None


def resolve_mode(settings: Settings) -> StorageMode:
    """Real mode iff a usable credential is present right now."""
    if resolve_auth_headers(settings) is None:
        return StorageMode.MOCK
    return StorageMode.REAL
