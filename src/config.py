"""Configuration loading and validation.

This module is responsible for:

- Loading `.env` into the process environment (without overriding existing vars).
- Converting environment variables into strongly-typed Pydantic models.
- Validating required fields and providing actionable error messages.
"""

import os
import re
from pathlib import Path
from typing import TypeVar

import dotenv
from pydantic import BaseModel, Field, field_validator

_T = TypeVar("_T", int, float)

_CONTAINER_NAME = re.compile(r"^[a-z0-9](?!.*--)[a-z0-9-]{1,61}[a-z0-9]$")


def _get_required_env(name: str) -> str:
    """Read a required env var or raise a helpful error."""
    value = os.getenv(name, "").strip()
    if not value:
        raise ValueError(f"{name} is required. Please set it in your .env file.")
    if value.startswith("your_") and value.endswith("_here"):
        raise ValueError(f"{name} is required. Please replace the placeholder value in your .env file.")
    return value


def _get_env_bool(name: str, default: bool) -> bool:
    """Read a boolean env var with a default."""
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    normalized = raw.strip().lower()
    if normalized in {"true", "1", "yes", "y", "on"}:
        return True
    if normalized in {"false", "0", "no", "n", "off"}:
        return False
    raise ValueError(f"{name} must be a boolean (true/false). Got: {raw!r}")


def _get_env_number(name: str, default: _T, cast: type[_T]) -> _T:
    """Read an int/float env var with a default."""
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return cast(raw)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be a {cast.__name__}. Got: {raw!r}") from exc


def _get_env_list(name: str) -> list[str]:
    """Read a required comma-separated env var into a list of non-empty items."""
    raw = _get_required_env(name)
    return [item.strip() for item in raw.split(",") if item.strip()]


class BlobStoreConfig(BaseModel):
    """Configuration for talking to the remote append-blob store."""

    account_url: str = Field(..., description="Storage account endpoint, e.g. https://acct.blob.core.windows.net")
    container: str = Field(..., description="Target container name")
    sas_token: str = Field(..., description="Delegated SAS token (query string)")

    # Optional tuning knobs (see env_example.env)
    request_timeout: float = Field(default=30.0, description="Per-request timeout (seconds)")
    rate_limit: int = Field(default=20, description="Max requests per second")
    max_attempt: int = Field(default=5, description="Max attempts per request")
    base_delay: float = Field(default=0.5, description="Initial retry delay (seconds)")
    backoff_multiplier: float = Field(default=2.0, description="Exponential backoff multiplier")
    max_delay: float = Field(default=30.0, description="Max total delay before failing (seconds)")
    max_block_bytes: int = Field(default=4 * 1024 * 1024, description="Max bytes per append block")

    @field_validator("account_url")
    def validate_account_url(cls, v: str) -> str:
        """Require an http(s) endpoint and drop any trailing slash."""
        if not v.startswith(("https://", "http://")):
            raise ValueError("RELAY_ACCOUNT_URL must start with https:// (or http:// for local emulators).")
        return v.rstrip("/")

    @field_validator("container")
    def validate_container(cls, v: str) -> str:
        """Container names are 3-63 chars of lowercase letters, digits and single dashes."""
        if not _CONTAINER_NAME.match(v):
            raise ValueError(
                f"RELAY_CONTAINER {v!r} is not a valid container name "
                "(3-63 lowercase letters, digits or single dashes)."
            )
        return v

    @field_validator("sas_token")
    def validate_sas_token(cls, v: str) -> str:
        """Strip the leading '?' and check the token looks like a SAS query."""
        token = v.strip().lstrip("?")
        if not token or token == "your_sas_token_here":
            raise ValueError("RELAY_SAS_TOKEN is required. Please set it in your .env file.")
        if "sig=" not in token:
            raise ValueError("RELAY_SAS_TOKEN must be a SAS query string containing a 'sig=' parameter.")
        return token


class RelayConfig(BaseModel):
    """Configuration for the forwarding loop itself."""

    sources: list[str] = Field(..., description="Log source names to forward")
    source_dir: Path = Field(default=Path("logs"), description="Directory holding <source>.jsonl logs")
    state_dir: Path = Field(default=Path("state"), description="Directory holding bookmark files")
    poll_interval: float = Field(default=60.0, description="Seconds between poll cycles")
    credential_lifetime_minutes: int = Field(default=60, description="Requested credential lifetime")
    safety_margin_minutes: int = Field(default=5, description="Renew credentials this long before expiry")
    max_batch_records: int = Field(default=1000, description="Max records per appended chunk")
    max_chunks_per_cycle: int = Field(default=10, description="Max chunks forwarded per source per cycle")
    run_once: bool = Field(default=False, description="Run a single cycle and exit")
    log_level: str = Field(default="INFO", description="Logging level name")

    @field_validator("sources")
    def validate_sources(cls, v: list[str]) -> list[str]:
        """Require at least one source and reject duplicates."""
        if not v:
            raise ValueError("RELAY_SOURCES must name at least one log source.")
        if len(set(v)) != len(v):
            raise ValueError(f"RELAY_SOURCES contains duplicate names: {v!r}")
        return v

    @field_validator("poll_interval", "max_batch_records", "max_chunks_per_cycle")
    def validate_positive(cls, v):
        if v <= 0:
            raise ValueError(f"must be > 0. Got: {v}")
        return v

    @field_validator("log_level")
    def validate_log_level(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"RELAY_LOG_LEVEL must be a logging level name. Got: {v!r}")
        return level


class Config(BaseModel):
    """Top-level application configuration."""

    blobstore: BlobStoreConfig = Field(..., description="Remote store configuration")
    relay: RelayConfig = Field(..., description="Forwarding loop configuration")
    observability_db_path: Path | None = Field(default=None, description="DuckDB file for outcome records")


def load_config() -> Config:
    """Load application configuration from environment variables.

    Notes:
    - Calls `dotenv.load_dotenv()` so local `.env` values are visible to the process.
    - Raises `ValueError` with actionable messages when required configuration is
      missing or still contains placeholder values.
    """
    # Load variables from `.env` into the process environment (without overriding
    # already-set env vars).
    dotenv.load_dotenv()

    blobstore = BlobStoreConfig(
        account_url=_get_required_env("RELAY_ACCOUNT_URL"),
        container=_get_required_env("RELAY_CONTAINER"),
        sas_token=_get_required_env("RELAY_SAS_TOKEN"),
        request_timeout=_get_env_number("RELAY_REQUEST_TIMEOUT", 30.0, float),
        rate_limit=_get_env_number("RELAY_RATE_LIMIT", 20, int),
        max_attempt=_get_env_number("RELAY_MAX_ATTEMPT", 5, int),
        base_delay=_get_env_number("RELAY_BASE_DELAY", 0.5, float),
        backoff_multiplier=_get_env_number("RELAY_BACKOFF_MULTIPLIER", 2.0, float),
        max_delay=_get_env_number("RELAY_MAX_DELAY", 30.0, float),
    )
    relay = RelayConfig(
        sources=_get_env_list("RELAY_SOURCES"),
        source_dir=Path(os.getenv("RELAY_SOURCE_DIR") or "logs"),
        state_dir=Path(os.getenv("RELAY_STATE_DIR") or "state"),
        poll_interval=_get_env_number("RELAY_POLL_INTERVAL", 60.0, float),
        credential_lifetime_minutes=_get_env_number("RELAY_CREDENTIAL_LIFETIME", 60, int),
        safety_margin_minutes=_get_env_number("RELAY_SAFETY_MARGIN", 5, int),
        max_batch_records=_get_env_number("RELAY_MAX_BATCH_RECORDS", 1000, int),
        max_chunks_per_cycle=_get_env_number("RELAY_MAX_CHUNKS_PER_CYCLE", 10, int),
        run_once=_get_env_bool("RELAY_RUN_ONCE", False),
        log_level=os.getenv("RELAY_LOG_LEVEL") or "INFO",
    )

    db_path = os.getenv("OBSERVABILITY_DB_PATH", "").strip()
    return Config(
        blobstore=blobstore,
        relay=relay,
        observability_db_path=Path(db_path) if db_path else None,
    )
