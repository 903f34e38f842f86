"""Application configuration for tapfarm.

Central configuration module powered by Pydantic v2.  Settings are loaded from
environment variables (with ``.env`` file support) and may be overridden by
command-line flags in ``main.py``.

Key exports:
    FarmSettings: Root settings model (instantiate once at startup).
    FailureCooldownPolicy: What a failed attempt does to the cooldown table.
    ConfigurationError: Fatal startup error (missing keys / contexts).
    read_lines / load_keys / load_contexts: Newline-delimited source loaders.
    BASE_DIR / CONFIG_DIR / LOGS_DIR: Canonical project paths.
"""

import logging
from enum import Enum
from pathlib import Path
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# ---------------------------------------------------------------------------
# Base Paths
# ---------------------------------------------------------------------------
BASE_DIR: Path = Path(__file__).parent.parent
"""Project root directory (parent of ``core/``)."""

CONFIG_DIR: Path = BASE_DIR / "config"
"""Directory containing runtime state files (cooldowns, heartbeat)."""

LOGS_DIR: Path = BASE_DIR / "logs"
"""Directory for log output files."""

logger: logging.Logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when startup configuration is missing or unusable.

    Always fatal: ``main.py`` logs it and exits with status 1.
    """


class FailureCooldownPolicy(str, Enum):
    """How a failed attempt affects the key's cooldown entry.

    Members:
        PRESERVE: Leave the cooldown entry untouched.
        RETRY_WINDOW: Push ``eligible_at`` to ``completed_at + retry_delay``.
    """

    PRESERVE = "preserve"
    RETRY_WINDOW = "retry_window"


class FarmSettings(BaseSettings):
    """Root configuration model for tapfarm.

    All fields can be set via environment variables or a ``.env`` file
    (case-insensitive, e.g. ``MAX_CONCURRENT_BROWSERS=2``).

    Section overview:
        * **Core** -- log level, key / context sources.
        * **Scheduling** -- cooldown, stagger, jitter, retry policy.
        * **Concurrency** -- browser cap and per-attempt timeout.
        * **Executor** -- which executor runs a job and its page settings.
        * **Observability** -- status interval, persistence, health port.
    """

    # Core
    log_level: str = "INFO"
    keys_file: str = "tokens.txt"
    contexts_file: str = "user_agents.txt"

    # Scheduling
    cooldown_minutes: float = 14.0
    stagger_seconds: float = 10.0
    # Floor applied to the post-success delay
    minimum_delay_seconds: float = 10.0
    # Random 0..N seconds added after every success
    jitter_max_seconds: float = 60.0
    retry_delay_seconds: float = 300.0
    failure_cooldown: FailureCooldownPolicy = FailureCooldownPolicy.PRESERVE

    # Concurrency. 0 or unset means unbounded (one pipeline per key).
    max_concurrent_browsers: Optional[int] = 3
    job_timeout_seconds: float = 180.0
    # Extra time the dispatcher grants past the executor's own deadline
    timeout_grace_seconds: float = 30.0

    # Executor
    executor: str = "page"
    headless: bool = True
    target_url: str = "https://telegram.geagle.online/"
    ready_selector: str = "._tapArea_njdmz_15"
    token_storage_key: str = "session_token"
    action_repeat: int = 1050
    success_threshold: int = 1000
    navigation_timeout_ms: int = 60000
    block_images: bool = True
    block_media: bool = True

    # Dry-run executor knobs
    simulated_duration_seconds: float = 2.0
    simulated_failure_rate: float = 0.0

    # Observability
    status_interval_seconds: float = 60.0
    persist_cooldowns: bool = True
    cooldown_state_file: str = str(CONFIG_DIR / "cooldowns.json")
    heartbeat_file: str = str(LOGS_DIR / "heartbeat.txt")
    health_port: Optional[int] = Field(default=None)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    @field_validator("max_concurrent_browsers")
    @classmethod
    def _normalise_capacity(cls, value: Optional[int]) -> Optional[int]:
        if value is None or value == 0:
            return None
        if value < 0:
            raise ValueError("max_concurrent_browsers must be >= 0")
        return value

    @field_validator(
        "cooldown_minutes", "stagger_seconds", "minimum_delay_seconds",
        "jitter_max_seconds", "retry_delay_seconds",
    )
    @classmethod
    def _non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("scheduling intervals must be non-negative")
        return value

    @field_validator("job_timeout_seconds", "status_interval_seconds")
    @classmethod
    def _positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("simulated_failure_rate")
    @classmethod
    def _probability(cls, value: float) -> float:
        if not 0.0 <= value <= 1.0:
            raise ValueError("simulated_failure_rate must be within [0, 1]")
        return value

    @property
    def cooldown_seconds(self) -> float:
        """Nominal per-key cooldown in seconds."""
        return self.cooldown_minutes * 60


def read_lines(path: str) -> List[str]:
    """Read a newline-delimited file, dropping blank lines.

    Surrounding whitespace is stripped from every entry.

    Args:
        path: File to read.

    Returns:
        Non-empty lines in file order.  A missing or unreadable file
        yields an empty list (the caller decides whether that is fatal).
    """
    try:
        text = Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        logger.error("Error reading %s: %s", path, e)
        return []
    return [line.strip() for line in text.splitlines() if line.strip()]


def load_keys(path: str) -> List[str]:
    """Load the key (session token) list.

    Raises:
        ConfigurationError: The file is missing, empty, or has duplicates.
    """
    keys = read_lines(path)
    if not keys:
        raise ConfigurationError(f"No keys found in {path}")
    if len(set(keys)) != len(keys):
        raise ConfigurationError(f"Duplicate keys in {path}")
    return keys


def load_contexts(path: str) -> List[str]:
    """Load the execution-context list (one user agent per line).

    Raises:
        ConfigurationError: The file is missing or empty.
    """
    contexts = read_lines(path)
    if not contexts:
        raise ConfigurationError(f"No execution contexts found in {path}")
    return contexts
