"""
Centralized configuration management for the Vault microservice.

Pydantic v2 settings management with zero secret leakage. Unlike the
other services, settings are NOT cached: credential presence decides the
storage mode, and a changed environment must take effect on the very next
request without a restart.
"""

from enum import Enum
from typing import Annotated, Optional

from pydantic import Field, SecretStr, AnyHttpUrl
from pydantic_settings import BaseSettings, SettingsConfigDict


# -------------------------------------------------------------------------
# Reusable Type Aliases
# -------------------------------------------------------------------------

SensitiveEnv = Annotated[
    Optional[SecretStr],
    Field(
        default=None,
        description="Sensitive credential, redacted from logs",
    ),
]


class LatestPolicy(str, Enum):
    """
    How the reader picks the current record among several pinned entries
    for one nullifier.
    """

    # Greatest record timestamp wins (falls back to the pin date).
    TIMESTAMP = "timestamp"

    # First row in the order returned by the pin index.
    INDEX_ORDER = "index_order"


# -------------------------------------------------------------------------
# Settings Model
# -------------------------------------------------------------------------

class Settings(BaseSettings):
    """
    Application settings parsed from the environment.

    No credential is required: without one the service runs in mock mode.
    """

    # ---------------------------------------------------------------------
    # Pinning service credentials
    # ---------------------------------------------------------------------

    pinata_jwt: SensitiveEnv
    pinata_api_key: Annotated[
        Optional[str],
        Field(default=None, description="Pinning service API key"),
    ]
    pinata_secret_api_key: SensitiveEnv

    # ---------------------------------------------------------------------
    # Pinning service endpoints
    # ---------------------------------------------------------------------

    pinata_api_url: Annotated[
        AnyHttpUrl,
        Field(
            default="https://api.pinata.cloud",
            description="Pinning service API base URL (pin + list endpoints)",
        ),
    ]

    gateway_url: Annotated[
        AnyHttpUrl,
        Field(
            default="https://gateway.pinata.cloud/ipfs",
            description="Public gateway resolving a content hash to bytes",
        ),
    ]

    # ---------------------------------------------------------------------
    # Record resolution
    # ---------------------------------------------------------------------

    latest_policy: Annotated[
        LatestPolicy,
        Field(
            default=LatestPolicy.TIMESTAMP,
            description="Selection policy for the current record",
        ),
    ]

    pin_list_page_limit: Annotated[
        int,
        Field(
            default=1000,
            ge=1,
            le=1000,
            description="Maximum rows requested from the pin index",
        ),
    ]

    update_mapping_on_store: Annotated[
        bool,
        Field(
            default=False,
            description=(
                "Also record every successful store in the pinned "
                "nullifier mapping document"
            ),
        ),
    ]

    # ---------------------------------------------------------------------
    # Transport
    # ---------------------------------------------------------------------

    http_timeout_seconds: Annotated[
        float,
        Field(
            default=30.0,
            gt=0,
            description="Upper bound for a single upstream request",
        ),
    ]

    model_config = SettingsConfigDict(
        env_prefix="VAULT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
        frozen=True,
    )

    @property
    def api_base_url(self) -> str:
        return str(self.pinata_api_url).rstrip("/")

    @property
    def gateway_base_url(self) -> str:
        return str(self.gateway_url).rstrip("/")


# -------------------------------------------------------------------------
# Settings Dependency Provider
# -------------------------------------------------------------------------

def get_settings() -> Settings:
    """
    Dependency injection provider for application settings.

    Builds a fresh Settings on every call.
    """
    return Settings()
