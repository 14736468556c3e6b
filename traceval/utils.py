"""
Utility functions for the trace evaluation service.

This module provides:
- Environment variable loading with typed defaults
- Logging configuration with structured JSON output
- Timing utilities for performance measurement
- ID generation and UTC timestamp helpers
- Input sanitization for safe logging
- Credential encoding for stored provider API keys
"""

import base64
import binascii
import os
import re
import sys
import uuid
from datetime import datetime, timezone
from typing import Dict, Any, Optional

from dotenv import load_dotenv
from loguru import logger


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass


# Optional environment variables with defaults
OPTIONAL_VARS: Dict[str, Any] = {
    "DEFAULT_PROJECT_ID": "default",
    "INGESTION_PUBLIC_KEY": "",
    "INGESTION_SECRET_KEY": "",
    "INGESTION_REJECT_ORPHANS": False,
    "DIFY_WEBHOOK_SECRET": "",
    "PROVIDER_TIMEOUT_SECONDS": 60.0,
    "EVAL_CONCURRENCY": 5,
    "EVAL_TEMPERATURE": 0.1,
    "EVAL_MAX_TOKENS": 512,
    "LOG_LEVEL": "INFO",
    "LOG_JSON": True,
    "SEED_PRESET_EVALUATORS": True,
    "LOCK_CLEANUP_INTERVAL_SECONDS": 3600.0,
    "LOCK_MAX_AGE_SECONDS": 86400.0,
}

INT_VARS = ["EVAL_CONCURRENCY", "EVAL_MAX_TOKENS"]
FLOAT_VARS = ["PROVIDER_TIMEOUT_SECONDS", "EVAL_TEMPERATURE", "LOCK_CLEANUP_INTERVAL_SECONDS", "LOCK_MAX_AGE_SECONDS"]
BOOL_VARS = ["INGESTION_REJECT_ORPHANS", "LOG_JSON", "SEED_PRESET_EVALUATORS"]

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def setup_logging(level: Optional[str] = None, serialize: Optional[bool] = None) -> None:
    """
    Configure structured logging with Loguru.

    Args:
        level: Minimum log level (defaults to LOG_LEVEL from config)
        serialize: Emit JSON records instead of plain text (defaults to LOG_JSON)
    """
    config = get_config()
    if level is None:
        level = config["LOG_LEVEL"]
    if serialize is None:
        serialize = config["LOG_JSON"]

    # Remove default handler
    logger.remove()

    logger.add(
        sys.stdout,
        format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {name}:{function}:{line} | {message}",
        level=level,
        serialize=serialize
    )

    logger.info("Logging configuration complete", level=level, serialize=serialize)


def _coerce(var: str, value: Any, default: Any) -> Any:
    """Convert a raw environment value to the type of its default."""
    if value == default:
        return default
    try:
        if var in INT_VARS:
            return int(value)
        if var in FLOAT_VARS:
            return float(value)
        if var in BOOL_VARS:
            lowered = str(value).strip().lower()
            if lowered in _TRUE_VALUES:
                return True
            if lowered in _FALSE_VALUES:
                return False
            raise ValueError(f"not a boolean: {value}")
    except ValueError:
        logger.warning(f"Invalid value for {var}: {value}, using default: {default}")
        return default
    return value


def load_and_validate_env() -> Dict[str, Any]:
    """
    Load and validate environment variables.

    Per-provider concurrency limits are read from ``EVAL_CONCURRENCY_<PROVIDER>``
    (for example ``EVAL_CONCURRENCY_OPENAI=2``) and collected under the
    ``PROVIDER_CONCURRENCY`` key.

    Returns:
        Dict[str, Any]: Configuration dictionary with validated values

    Raises:
        ConfigurationError: If a numeric limit is out of range
    """
    load_dotenv()

    config: Dict[str, Any] = {}
    for var, default in OPTIONAL_VARS.items():
        config[var] = _coerce(var, os.getenv(var, default), default)

    provider_limits: Dict[str, int] = {}
    prefix = "EVAL_CONCURRENCY_"
    for key, value in os.environ.items():
        if key.startswith(prefix) and len(key) > len(prefix):
            provider = key[len(prefix):].lower()
            try:
                provider_limits[provider] = int(value)
            except ValueError:
                logger.warning(f"Invalid value for {key}: {value}, ignoring")
    config["PROVIDER_CONCURRENCY"] = provider_limits

    if config["EVAL_CONCURRENCY"] < 1 or any(v < 1 for v in provider_limits.values()):
        raise ConfigurationError("Evaluation concurrency limits must be at least 1")
    if config["PROVIDER_TIMEOUT_SECONDS"] <= 0:
        raise ConfigurationError("PROVIDER_TIMEOUT_SECONDS must be positive")
    if config["LOCK_CLEANUP_INTERVAL_SECONDS"] <= 0:
        raise ConfigurationError("LOCK_CLEANUP_INTERVAL_SECONDS must be positive")

    logger.info("Environment configuration loaded and validated")
    return config


def generate_id(prefix: Optional[str] = None) -> str:
    """
    Generate a unique identifier using UUID4.

    Args:
        prefix: Optional prefix joined with a dash

    Returns:
        str: Unique identifier
    """
    value = str(uuid.uuid4())
    return f"{prefix}-{value}" if prefix else value


def sanitize_for_logging(text: str, max_length: int = 200) -> str:
    """
    Sanitize text for safe logging by masking credentials.

    Args:
        text: Input text to sanitize
        max_length: Maximum length of sanitized text

    Returns:
        str: Sanitized text safe for logging
    """
    if not text:
        return ""

    sensitive_patterns = [
        r'sk-[a-zA-Z0-9]+',  # API keys starting with sk-
        r'Bearer\s+[a-zA-Z0-9._-]+',  # Bearer tokens
        r'Basic\s+[a-zA-Z0-9+/=]+',  # Basic credentials
        r'\b[A-Za-z0-9]{32,}\b'  # Long alphanumeric strings (potential tokens)
    ]

    sanitized = text
    for pattern in sensitive_patterns:
        sanitized = re.sub(pattern, '[REDACTED]', sanitized, flags=re.IGNORECASE)

    if len(sanitized) > max_length:
        sanitized = sanitized[:max_length] + "..."

    return sanitized


def encrypt_api_key(api_key: str) -> str:
    """Encode a provider API key for storage."""
    return base64.b64encode(api_key.encode("utf-8")).decode("ascii")


def decrypt_api_key(encrypted: Optional[str]) -> Optional[str]:
    """
    Decode a stored provider API key.

    Returns:
        The plain key, or None when nothing is stored

    Raises:
        ConfigurationError: If the stored value is not valid base64
    """
    if not encrypted:
        return None
    try:
        return base64.b64decode(encrypted, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as e:
        raise ConfigurationError(f"Stored API key could not be decoded: {e}")


class Timer:
    """Context manager for timing operations."""

    def __init__(self, operation_name: str = "operation"):
        self.operation_name = operation_name
        self.start_time = None
        self.end_time = None

    def __enter__(self):
        self.start_time = get_utc_datetime()
        logger.debug(f"Starting {self.operation_name}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.end_time = get_utc_datetime()
        duration_ms = (self.end_time - self.start_time).total_seconds() * 1000

        if exc_type is None:
            logger.info(f"Completed {self.operation_name}", duration_ms=duration_ms)
        else:
            logger.error(f"Failed {self.operation_name}", duration_ms=duration_ms, error=str(exc_val))

    @property
    def duration_ms(self) -> float:
        """Get duration in milliseconds."""
        if self.start_time and self.end_time:
            return (self.end_time - self.start_time).total_seconds() * 1000
        return 0.0


def get_utc_datetime() -> datetime:
    """
    Get current datetime object in UTC timezone.

    Returns:
        datetime: Current UTC datetime object with timezone info
    """
    return datetime.now(timezone.utc)


def get_current_timestamp() -> str:
    """
    Get current timestamp in ISO format with UTC timezone.

    Returns:
        str: Current timestamp in ISO format with timezone
    """
    return get_utc_datetime().isoformat()


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse an ISO-8601 timestamp as sent by tracing SDKs.

    Naive values are treated as UTC. A trailing ``Z`` is accepted, and
    numbers are read as Unix epoch seconds.

    Returns:
        datetime or None if the value is missing or unparseable
    """
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# Global configuration instance
_config: Optional[Dict[str, Any]] = None


def get_config() -> Dict[str, Any]:
    """
    Get the global configuration, loading it if not already loaded.

    Returns:
        Dict[str, Any]: Configuration dictionary
    """
    global _config
    if _config is None:
        _config = load_and_validate_env()
    return _config


def reset_config() -> None:
    """Drop the cached configuration so the next access reloads it."""
    global _config
    _config = None


def initialize_app() -> Dict[str, Any]:
    """
    Initialize the application with logging and configuration.
    Call this at app startup.
    """
    config = get_config()
    setup_logging()

    logger.info(
        "Application initialization complete",
        default_project=config["DEFAULT_PROJECT_ID"],
        evaluation={
            "concurrency": config["EVAL_CONCURRENCY"],
            "provider_concurrency": config["PROVIDER_CONCURRENCY"],
            "timeout_seconds": config["PROVIDER_TIMEOUT_SECONDS"],
        }
    )
    return config
