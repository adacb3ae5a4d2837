"""
Configuration management for the front desk turn engine.

Loads environment variables and provides a strongly-typed configuration object.
Validates ranges at startup so a bad deploy fails before the first call lands.
"""

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
import structlog

load_dotenv()

logger = structlog.get_logger(__name__)

_PROJECT_ROOT = Path(__file__).resolve().parents[2]


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    public_host: str = "localhost"
    port: int = 7860
    log_level: str = "INFO"

    # Tenant configuration
    config_dir: str = str(_PROJECT_ROOT / "config")
    names_dir: str = ""

    # State persistence
    # - state_store selects the session blob backend ("memory" or "redis")
    state_store: str = "memory"
    redis_url: str = "redis://localhost:6379/0"
    state_ttl_seconds: int = 3600

    # Escalation hand-off (empty = log only)
    escalation_webhook_url: str = ""
    escalation_timeout_seconds: float = 5.0

    # Scenario matching
    default_confidence_threshold: float = 0.45
    keyword_weight: float = 0.6
    fuzzy_weight: float = 0.4
    ambiguity_margin: float = 0.02
    max_alternates: int = 3

    # Slot filling
    default_acceptance_threshold: float = 0.6
    explicit_name_floor: float = 0.4
    auto_confirm_threshold: float = 0.85
    default_max_attempts: int = 3
    default_spelling_fallback_after: int = 2

    def validate(self) -> None:
        """Validate configuration values."""
        problems = []

        if self.state_store not in ("memory", "redis"):
            problems.append(f"STATE_STORE must be 'memory' or 'redis', got '{self.state_store}'")
        if self.state_store == "redis" and not self.redis_url:
            problems.append("REDIS_URL is required when STATE_STORE=redis")
        if self.state_ttl_seconds <= 0:
            problems.append("STATE_TTL_SECONDS must be positive")

        for key, value in (
            ("DEFAULT_CONFIDENCE_THRESHOLD", self.default_confidence_threshold),
            ("DEFAULT_ACCEPTANCE_THRESHOLD", self.default_acceptance_threshold),
            ("EXPLICIT_NAME_FLOOR", self.explicit_name_floor),
            ("AUTO_CONFIRM_THRESHOLD", self.auto_confirm_threshold),
            ("KEYWORD_WEIGHT", self.keyword_weight),
            ("FUZZY_WEIGHT", self.fuzzy_weight),
        ):
            if not 0.0 <= value <= 1.0:
                problems.append(f"{key} must be within [0, 1], got {value}")

        if abs((self.keyword_weight + self.fuzzy_weight) - 1.0) > 1e-6:
            problems.append("KEYWORD_WEIGHT and FUZZY_WEIGHT must sum to 1")
        if self.default_max_attempts < 1:
            problems.append("DEFAULT_MAX_ATTEMPTS must be at least 1")
        if self.default_spelling_fallback_after < 1:
            problems.append("DEFAULT_SPELLING_FALLBACK_AFTER must be at least 1")

        if problems:
            raise ConfigError(
                "Invalid configuration:\n" + "\n".join(f"- {p}" for p in problems)
            )

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            public_host=self.public_host,
            port=self.port,
            log_level=self.log_level,
            config_dir=self.config_dir,
            state_store=self.state_store,
            state_ttl_seconds=self.state_ttl_seconds,
            redis_host=self.redis_url.split("@")[-1] if self.state_store == "redis" else "n/a",
            escalation_webhook_set=bool(self.escalation_webhook_url),
            default_confidence_threshold=self.default_confidence_threshold,
            keyword_weight=self.keyword_weight,
            fuzzy_weight=self.fuzzy_weight,
            default_acceptance_threshold=self.default_acceptance_threshold,
            default_max_attempts=self.default_max_attempts,
            default_spelling_fallback_after=self.default_spelling_fallback_after,
        )


def _get_int(key: str, default: int) -> int:
    """Get an integer from environment variable."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_float(key: str, default: float) -> float:
    """Get a float from environment variable."""
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


@lru_cache(maxsize=1)
def get_config() -> Config:
    """
    Get the application configuration.

    Uses lru_cache to ensure we only load config once.
    """
    config = Config(
        # Server
        public_host=os.getenv("PUBLIC_HOST", "localhost"),
        port=_get_int("PORT", 7860),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),

        # Tenant configuration
        config_dir=os.getenv("CONFIG_DIR", str(_PROJECT_ROOT / "config")),
        names_dir=os.getenv("NAMES_DIR", ""),

        # State persistence
        state_store=os.getenv("STATE_STORE", "memory").strip().lower(),
        redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
        state_ttl_seconds=_get_int("STATE_TTL_SECONDS", 3600),

        # Escalation
        escalation_webhook_url=os.getenv("ESCALATION_WEBHOOK_URL", ""),
        escalation_timeout_seconds=_get_float("ESCALATION_TIMEOUT_SECONDS", 5.0),

        # Scenario matching
        default_confidence_threshold=_get_float("DEFAULT_CONFIDENCE_THRESHOLD", 0.45),
        keyword_weight=_get_float("KEYWORD_WEIGHT", 0.6),
        fuzzy_weight=_get_float("FUZZY_WEIGHT", 0.4),
        ambiguity_margin=_get_float("AMBIGUITY_MARGIN", 0.02),
        max_alternates=_get_int("MAX_ALTERNATES", 3),

        # Slot filling
        default_acceptance_threshold=_get_float("DEFAULT_ACCEPTANCE_THRESHOLD", 0.6),
        explicit_name_floor=_get_float("EXPLICIT_NAME_FLOOR", 0.4),
        auto_confirm_threshold=_get_float("AUTO_CONFIRM_THRESHOLD", 0.85),
        default_max_attempts=_get_int("DEFAULT_MAX_ATTEMPTS", 3),
        default_spelling_fallback_after=_get_int("DEFAULT_SPELLING_FALLBACK_AFTER", 2),
    )

    return config


def init_config() -> Config:
    """
    Initialize and validate configuration.

    Call this at application startup to fail fast if config is invalid.
    """
    config = get_config()
    config.validate()
    config.log_config()
    return config
