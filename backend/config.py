"""
Bot Resilience — Central Configuration

Supports optional config.json override for user-customizable settings.
Rate limit classes and retry defaults live here so operators can tune quotas
without touching code.
"""
import json
import logging
from pathlib import Path

logger = logging.getLogger("bot.config")

# ──────────────────────────── Paths ────────────────────────────
PROJECT_ROOT = Path(__file__).parent.parent
BACKEND_DIR = Path(__file__).parent

# ──────────────────────────── User Config Override ────────────────────────────
# Load user-specific settings from config.json if it exists
_user_config = {}
_config_path = PROJECT_ROOT / "config.json"
if _config_path.exists():
    try:
        _user_config = json.loads(_config_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Ignoring unreadable {_config_path.name}: {e}")
    if not isinstance(_user_config, dict):
        _user_config = {}


def _cfg(key: str, default):
    """Get a config value, preferring user override from config.json."""
    return _user_config.get(key, default)


def _section(key: str) -> dict:
    value = _cfg(key, {})
    return value if isinstance(value, dict) else {}


# ──────────────────────────── Logging ────────────────────────────
LOG_LEVEL = _cfg("log_level", "INFO")
LOG_FORMAT = "%(asctime)s | %(name)-28s | %(levelname)-7s | %(message)s"
LOG_DATEFMT = "%H:%M:%S"


def setup_logging(level: str = ""):
    """Apply the backend log format. Host processes call this once at startup."""
    logging.basicConfig(
        level=(level or LOG_LEVEL).upper(),
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
    )


# ──────────────────────────── Rate Limits ────────────────────────────
# Per operation class: max_requests per window_ms, then blocked for block_duration_ms.
# config.json "rate_limits": {"general": {"max_requests": 20}, "karaoke": {...}}
_BUILTIN_RATE_LIMITS = {
    # ping, help
    "general": {"max_requests": 10, "window_ms": 60_000, "block_duration_ms": 300_000},
    # song suggestions
    "suggestion": {"max_requests": 3, "window_ms": 300_000, "block_duration_ms": 900_000},
    # DJ / admin commands
    "dj": {"max_requests": 5, "window_ms": 60_000, "block_duration_ms": 600_000},
    # stream control
    "critical": {"max_requests": 2, "window_ms": 60_000, "block_duration_ms": 1_800_000},
    # HTTP API callers
    "api": {"max_requests": 20, "window_ms": 60_000, "block_duration_ms": 300_000},
}


def _merge_rate_limits(overrides: dict) -> dict:
    merged = {name: dict(values) for name, values in _BUILTIN_RATE_LIMITS.items()}
    for name, values in overrides.items():
        if isinstance(values, dict):
            merged.setdefault(name, {}).update(values)
        else:
            # Let the limiter reject it loudly
            merged[name] = values
    return merged


RATE_LIMITS = _merge_rate_limits(_section("rate_limits"))
RATE_LIMIT_SWEEP_INTERVAL = _cfg("rate_limit_sweep_interval", 300)   # seconds

# ──────────────────────────── Retry ────────────────────────────
_retry_cfg = _section("retry")
RETRY_MAX_ATTEMPTS = _retry_cfg.get("max_attempts", 3)
RETRY_BASE_DELAY = _retry_cfg.get("base_delay", 1.0)         # seconds
RETRY_MAX_DELAY = _retry_cfg.get("max_delay", 30.0)          # seconds
RETRY_BACKOFF_MULTIPLIER = _retry_cfg.get("backoff_multiplier", 2.0)
RETRY_JITTER = _retry_cfg.get("jitter", True)
