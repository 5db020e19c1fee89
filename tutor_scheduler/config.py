"""
Centralized configuration with environment variable overrides.

Catalog wording, retrieval sizes, timeouts, and booking form rules are
configurable here. Matching and conversation code read from ``settings``
instead of hardcoding values.
"""

import logging
import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

from tutor_scheduler.logging_context import install_session_filter

load_dotenv()

logger = logging.getLogger(__name__)


def _safe_int(env_var: str, default: str) -> int:
    """Parse an integer from an env var with a clear error on bad values."""
    raw = os.getenv(env_var, default)
    try:
        return int(raw)
    except (ValueError, TypeError):
        raise ValueError(
            f"Invalid integer for {env_var}: {raw!r}"
        ) from None


def _safe_float(env_var: str, default: str) -> float:
    """Parse a float from an env var with a clear error on bad values."""
    raw = os.getenv(env_var, default)
    try:
        return float(raw)
    except (ValueError, TypeError):
        raise ValueError(
            f"Invalid float for {env_var}: {raw!r}"
        ) from None


def _csv_list(env_var: str, default: str) -> tuple[str, ...]:
    raw = os.getenv(env_var, default)
    return tuple(item.strip() for item in raw.split(",") if item.strip())


@dataclass(frozen=True)
class CatalogConfig:
    """Wording and identity of the tutoring catalog."""

    name: str = os.getenv("CATALOG_NAME", "CS Tutor Squad")
    provider_label: str = os.getenv("PROVIDER_LABEL", "tutor")
    booking_base_url: str = os.getenv(
        "BOOKING_BASE_URL", "https://calendly.com/cs-tutor-squad/30min"
    )


@dataclass(frozen=True)
class ModelConfig:
    """Embedding and reasoning model settings."""

    api_key: str = os.getenv("OPENAI_API_KEY", "")
    embedding_model: str = os.getenv("EMBEDDING_MODEL", "text-embedding-3-small")
    embedding_dimensions: int = _safe_int("EMBEDDING_DIMENSIONS", "1536")
    reasoning_model: str = os.getenv("REASONING_MODEL", "gpt-4o-mini")
    reasoning_temperature: float = _safe_float("REASONING_TEMPERATURE", "0.3")
    reply_temperature: float = _safe_float("REPLY_TEMPERATURE", "0.7")
    embedding_timeout_sec: float = _safe_float("EMBEDDING_TIMEOUT_SEC", "10.0")
    reasoning_timeout_sec: float = _safe_float("REASONING_TIMEOUT_SEC", "20.0")
    reply_timeout_sec: float = _safe_float("REPLY_TIMEOUT_SEC", "30.0")
    request_timeout_sec: float = _safe_float("MODEL_REQUEST_TIMEOUT_SEC", "30.0")
    stream_replies: bool = os.getenv("STREAM_REPLIES", "false").lower() in ("1", "true", "yes")


@dataclass(frozen=True)
class MatchingConfig:
    """Retrieval sizes and keyword fallback weights."""

    single_match_top_k: int = _safe_int("SINGLE_MATCH_TOP_K", "5")
    others_top_k: int = _safe_int("OTHERS_TOP_K", "20")
    max_reasoning_candidates: int = _safe_int("MAX_REASONING_CANDIDATES", "5")
    topic_weight: int = _safe_int("TOPIC_WEIGHT", "10")
    mode_weight: int = _safe_int("MODE_WEIGHT", "5")
    day_weight: int = _safe_int("DAY_WEIGHT", "3")
    time_weight: int = _safe_int("TIME_WEIGHT", "2")


@dataclass(frozen=True)
class SessionConfig:
    """Session persistence settings."""

    store_path: str = os.getenv("SESSION_STORE_PATH", "")
    flush_delay_sec: float = _safe_float("SESSION_FLUSH_DELAY_SEC", "1.0")
    cache_size: int = _safe_int("SESSION_CACHE_SIZE", "1000")


@dataclass(frozen=True)
class BookingConfig:
    """Booking form rules and finalization settings."""

    institution_email_domain: str = os.getenv("INSTITUTION_EMAIL_DOMAIN", "mail.ccsf.edu")
    finalize_timeout_sec: float = _safe_float("FINALIZE_TIMEOUT_SEC", "60.0")
    course_codes: tuple[str, ...] = _csv_list(
        "COURSE_CODES",
        "110A,110B,110C,111B,111C,131B,150A,155P,160A,160B,195,199,"
        "211D,211S,231,256,260A,270,MATH 108,MATH 115,Other",
    )


@dataclass(frozen=True)
class AppConfig:
    """Root configuration aggregating all sub-configs."""

    catalog: CatalogConfig = field(default_factory=CatalogConfig)
    model: ModelConfig = field(default_factory=ModelConfig)
    matching: MatchingConfig = field(default_factory=MatchingConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    booking: BookingConfig = field(default_factory=BookingConfig)
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = _safe_int("API_PORT", "8000")


def _validate_config(config: AppConfig) -> None:
    """Validate configuration values are within acceptable ranges."""
    if not 0.0 <= config.model.reasoning_temperature <= 2.0:
        raise ValueError(
            "REASONING_TEMPERATURE must be between 0.0 and 2.0, "
            f"got {config.model.reasoning_temperature}"
        )
    if not 0.0 <= config.model.reply_temperature <= 2.0:
        raise ValueError(
            f"REPLY_TEMPERATURE must be between 0.0 and 2.0, got {config.model.reply_temperature}"
        )

    for timeout_name, timeout_value in [
        ("EMBEDDING_TIMEOUT_SEC", config.model.embedding_timeout_sec),
        ("REASONING_TIMEOUT_SEC", config.model.reasoning_timeout_sec),
        ("REPLY_TIMEOUT_SEC", config.model.reply_timeout_sec),
        ("MODEL_REQUEST_TIMEOUT_SEC", config.model.request_timeout_sec),
        ("FINALIZE_TIMEOUT_SEC", config.booking.finalize_timeout_sec),
    ]:
        if timeout_value <= 0:
            raise ValueError(f"{timeout_name} must be > 0, got {timeout_value}")

    if config.matching.single_match_top_k < 1:
        raise ValueError(
            f"SINGLE_MATCH_TOP_K must be >= 1, got {config.matching.single_match_top_k}"
        )
    if config.matching.others_top_k < config.matching.single_match_top_k:
        raise ValueError(
            "OTHERS_TOP_K must be >= SINGLE_MATCH_TOP_K, "
            f"got {config.matching.others_top_k}"
        )
    if not 1 <= config.matching.max_reasoning_candidates <= 5:
        raise ValueError(
            "MAX_REASONING_CANDIDATES must be between 1 and 5, "
            f"got {config.matching.max_reasoning_candidates}"
        )
    if config.session.flush_delay_sec < 0:
        raise ValueError(
            f"SESSION_FLUSH_DELAY_SEC must be >= 0, got {config.session.flush_delay_sec}"
        )
    if config.session.cache_size < 1:
        raise ValueError(f"SESSION_CACHE_SIZE must be >= 1, got {config.session.cache_size}")
    if not config.booking.course_codes:
        raise ValueError("COURSE_CODES must list at least one course code")


def load_config() -> AppConfig:
    """Load and validate application configuration."""
    config = AppConfig()
    _validate_config(config)
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(name)s] [%(session_id)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    install_session_filter(logging.getLogger())
    logger.info("Configuration loaded for '%s'", config.catalog.name)
    return config


# Singleton instance
settings = load_config()
