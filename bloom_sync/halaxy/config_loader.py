"""Load, validate, and hot-reload the Halaxy sync engine configuration.

The config lives in ``sync_config.yaml`` alongside this module.  At startup
it is loaded once and cached.  Call ``reload_sync_config()`` to re-read from
disk after an operator edit, no restart required.

Usage::

    from bloom_sync.halaxy.config_loader import get_sync_config

    config = get_sync_config()
    config.sync_window.past_days          # 30
    config.pagination.max_pages           # 100
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger("bloom.halaxy.config")

_CONFIG_PATH = Path(__file__).parent / "sync_config.yaml"


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass
class SyncWindowConfig:
    """Appointment window fetched by a full sync, relative to today."""

    past_days: int
    future_days: int


@dataclass
class PaginationConfig:
    max_pages: int


@dataclass
class RateLimitConfig:
    window_seconds: float


@dataclass
class TokenConfig:
    expiry_buffer_seconds: int


@dataclass
class HealthConfig:
    """Thresholds used when deriving sync health from the audit log."""

    stale_after_hours: float
    recent_log_limit: int


@dataclass
class SyncConfig:
    """Complete, validated sync engine configuration.

    Attributes:
        version:                  Config schema version string.
        sync_window:              Appointment window for full syncs.
        pagination:               Bundle pagination limits.
        rate_limit:               Outbound request window.
        token:                    Access token caching settings.
        health:                   Sync health thresholds.
        default_mhcp_sessions:    MHCP plan size when Halaxy does not supply one.
        actor_reference_template: Format string for the appointment ``actor`` filter.
    """

    version: str
    sync_window: SyncWindowConfig
    pagination: PaginationConfig
    rate_limit: RateLimitConfig
    token: TokenConfig
    health: HealthConfig
    default_mhcp_sessions: int
    actor_reference_template: str
    _raw: dict = field(default_factory=dict, repr=False)

    def actor_reference(self, practitioner_id: str) -> str:
        """Return the appointment actor filter value for a practitioner."""
        return self.actor_reference_template.format(practitioner_id=practitioner_id)


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when sync_config.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    if not path.exists():
        raise FileNotFoundError(f"Sync config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def _validate_and_build(raw: dict) -> SyncConfig:
    """Validate the raw YAML dict and construct a SyncConfig.

    Every problem is collected before raising so an operator sees the whole
    list in one pass.

    Raises:
        ConfigValidationError: If any value is missing, mistyped or out of range.
    """
    errors: list[str] = []

    def _positive_int(section: dict, key: str, name: str, default: int) -> int:
        value = section.get(key, default)
        try:
            number = int(value)
        except (TypeError, ValueError):
            errors.append(f"{name}.{key} must be an integer, got {value!r}")
            return default
        if number <= 0:
            errors.append(f"{name}.{key} must be positive, got {number}")
        return number

    def _section(key: str) -> dict[str, Any]:
        value = raw.get(key, {})
        if value is None:
            return {}
        if not isinstance(value, dict):
            errors.append(f"'{key}' must be a mapping")
            return {}
        return value

    version = str(raw.get("version", "1.0"))

    # ── Sync window ──
    sw_raw = _section("sync_window")
    sync_window = SyncWindowConfig(
        past_days=_positive_int(sw_raw, "past_days", "sync_window", 30),
        future_days=_positive_int(sw_raw, "future_days", "sync_window", 90),
    )

    # ── Pagination ──
    pg_raw = _section("pagination")
    pagination = PaginationConfig(
        max_pages=_positive_int(pg_raw, "max_pages", "pagination", 100),
    )

    # ── Rate limit ──
    rl_raw = _section("rate_limit")
    rate_limit = RateLimitConfig(
        window_seconds=float(
            _positive_int(rl_raw, "window_seconds", "rate_limit", 60)
        ),
    )

    # ── Token ──
    tk_raw = _section("token")
    buffer_seconds = tk_raw.get("expiry_buffer_seconds", 60)
    if not isinstance(buffer_seconds, int) or buffer_seconds < 0:
        errors.append(
            f"token.expiry_buffer_seconds must be a non-negative integer, got {buffer_seconds!r}"
        )
        buffer_seconds = 60
    token = TokenConfig(expiry_buffer_seconds=buffer_seconds)

    # ── Health ──
    hl_raw = _section("health")
    stale_after = hl_raw.get("stale_after_hours", 1)
    if not isinstance(stale_after, (int, float)) or stale_after <= 0:
        errors.append(f"health.stale_after_hours must be a positive number, got {stale_after!r}")
        stale_after = 1
    health = HealthConfig(
        stale_after_hours=float(stale_after),
        recent_log_limit=_positive_int(hl_raw, "recent_log_limit", "health", 10),
    )

    # ── MHCP ──
    mh_raw = _section("mhcp")
    default_mhcp = _positive_int(mh_raw, "default_total_sessions", "mhcp", 10)

    # ── Appointments ──
    ap_raw = _section("appointments")
    template = ap_raw.get(
        "actor_reference_template",
        "https://au-api.halaxy.com/main/PractitionerRole/{practitioner_id}",
    )
    if not isinstance(template, str) or "{practitioner_id}" not in template:
        errors.append(
            "appointments.actor_reference_template must be a string containing "
            "'{practitioner_id}'"
        )

    if errors:
        raise ConfigValidationError(
            f"sync_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return SyncConfig(
        version=version,
        sync_window=sync_window,
        pagination=pagination,
        rate_limit=rate_limit,
        token=token,
        health=health,
        default_mhcp_sessions=default_mhcp,
        actor_reference_template=template,
        _raw=raw,
    )


def load_sync_config(path: Path | None = None) -> SyncConfig:
    """Load and validate the sync config from disk.

    Args:
        path: Override path to YAML. Uses the bundled sync_config.yaml by default.

    Returns:
        Validated SyncConfig instance.
    """
    target = path or _CONFIG_PATH
    raw = _load_yaml(target)
    config = _validate_and_build(raw)
    logger.info("Loaded sync config v%s from %s", config.version, target)
    return config


# ---------------------------------------------------------------------------
# Global singleton with hot-reload support
# ---------------------------------------------------------------------------

_config: SyncConfig | None = None
_config_lock = threading.Lock()


def get_sync_config() -> SyncConfig:
    """Return the global SyncConfig singleton, loading it on first call.

    Thread-safe.  Use ``reload_sync_config()`` to refresh after YAML changes.
    """
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:  # double-checked locking
                _config = load_sync_config()
    return _config


def reload_sync_config(path: Path | None = None) -> SyncConfig:
    """Reload the sync config from disk and replace the global singleton.

    If validation fails, the old config is retained and the error is re-raised.

    Args:
        path: Override path to YAML. Defaults to bundled sync_config.yaml.

    Returns:
        The newly loaded SyncConfig.
    """
    global _config
    new_config = load_sync_config(path)
    with _config_lock:
        _config = new_config
    logger.info("Sync config reloaded (v%s)", new_config.version)
    return new_config
