"""Load, validate, and hot-reload the tracking configuration.

The config lives in ``tracking_config.yaml`` alongside this module.  At startup
it is loaded once and cached.  Call ``reload_tracking_config()`` to re-read from
disk after an admin update, with no restart required.

Usage::

    from src.tracking.config_loader import get_tracking_config

    config = get_tracking_config()
    config.halachic.shiva_nekiyim_days        # 7
    config.notifications.batch_size           # 100
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import time, timedelta
from pathlib import Path

import yaml

logger = logging.getLogger("mikvahcal.tracking.config")

# Path to the YAML file sitting next to this module
_CONFIG_PATH = Path(__file__).parent / "tracking_config.yaml"


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass
class HalachicConfig:
    """Halachic constants used by the state machine and the predictor."""

    default_minimum_niddah_days: int = 5
    minimum_niddah_days_min: int = 4
    minimum_niddah_days_max: int = 10
    shiva_nekiyim_days: int = 7
    onah_beinonit_day: int = 30
    chasam_sofer_day: int = 31
    fixed_pattern_repetitions: int = 3


@dataclass
class OnahConfig:
    """Nominal local times separating the day onah from the night onah."""

    sunrise: time = time(6, 0)
    sunset: time = time(18, 0)


@dataclass
class NotificationConfig:
    """Reminder scheduling and dispatch settings."""

    batch_size: int = 100
    vest_lead_hours: int = 24
    delivery_timeout_seconds: float = 10.0
    default_reminder_time: time = time(9, 0)


@dataclass
class RetentionConfig:
    """Retention horizons, in days."""

    cycle_retention_days: int = 730
    soft_delete_grace_days: int = 30
    notification_retention_days: int = 30
    activity_log_retention_days: int = 90

    @property
    def cycle_retention(self) -> timedelta:
        return timedelta(days=self.cycle_retention_days)


@dataclass
class SweepConfig:
    """Timer intervals for the background sweeps, in seconds."""

    dispatch_interval_seconds: int = 900
    retention_interval_seconds: int = 86400


@dataclass
class TrackingConfig:
    """Complete, validated tracking configuration.

    This is the single in-memory representation of tracking_config.yaml.
    The state machine, predictor, scheduler and sweeper all read from it.
    """

    version: str
    halachic: HalachicConfig
    onah: OnahConfig
    notifications: NotificationConfig
    retention: RetentionConfig
    sweeps: SweepConfig
    _raw: dict = field(default_factory=dict, repr=False)

    def clamp_niddah_days(self, value: int | None) -> int:
        """Return a usable minimum niddah day count for a profile value.

        ``None`` falls back to the configured default; out-of-range values are
        clamped into the allowed range.
        """
        h = self.halachic
        if value is None:
            return h.default_minimum_niddah_days
        return max(h.minimum_niddah_days_min, min(h.minimum_niddah_days_max, int(value)))


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when tracking_config.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    if not path.exists():
        raise FileNotFoundError(f"Tracking config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def parse_clock_time(value: object) -> time:
    """Parse an ``HH:MM`` string into a ``datetime.time``.

    Raises:
        ValueError: If the value is not a valid 24-hour clock time.
    """
    if isinstance(value, time):
        return value
    text = str(value).strip()
    hours, sep, minutes = text.partition(":")
    if not sep or not hours.isdigit() or not minutes.isdigit() or len(minutes) != 2:
        raise ValueError(f"expected HH:MM, got {value!r}")
    return time(int(hours), int(minutes))


def _validate_and_build(raw: dict) -> TrackingConfig:
    """Validate the raw YAML dict and construct a TrackingConfig.

    Every problem is collected so one error lists all of them.

    Raises:
        ConfigValidationError: If fields are missing or invalid.
    """
    errors: list[str] = []

    def _int(section: dict, key: str, default: int, name: str, minimum: int = 0) -> int:
        val = section.get(key, default)
        try:
            number = int(val)
        except (TypeError, ValueError):
            errors.append(f"{name}.{key} must be an integer, got {val!r}")
            return default
        if number < minimum:
            errors.append(f"{name}.{key} = {number} must be >= {minimum}")
        return number

    def _clock(section: dict, key: str, default: time, name: str) -> time:
        if key not in section:
            return default
        try:
            return parse_clock_time(section[key])
        except ValueError as exc:
            errors.append(f"{name}.{key}: {exc}")
            return default

    version = str(raw.get("version", "1.0"))

    # ── Halachic ──
    h_raw = raw.get("halachic") or {}
    niddah_range = h_raw.get("minimum_niddah_days_range", [4, 10])
    if not isinstance(niddah_range, list) or len(niddah_range) != 2:
        errors.append("halachic.minimum_niddah_days_range must be a [min, max] pair")
        niddah_range = [4, 10]
    bounds = {"min": niddah_range[0], "max": niddah_range[1]}
    halachic = HalachicConfig(
        default_minimum_niddah_days=_int(h_raw, "default_minimum_niddah_days", 5, "halachic", 1),
        minimum_niddah_days_min=_int(bounds, "min", 4, "halachic.minimum_niddah_days_range", 1),
        minimum_niddah_days_max=_int(bounds, "max", 10, "halachic.minimum_niddah_days_range", 1),
        shiva_nekiyim_days=_int(h_raw, "shiva_nekiyim_days", 7, "halachic", 1),
        onah_beinonit_day=_int(h_raw, "onah_beinonit_day", 30, "halachic", 2),
        chasam_sofer_day=_int(h_raw, "chasam_sofer_day", 31, "halachic", 2),
        fixed_pattern_repetitions=_int(h_raw, "fixed_pattern_repetitions", 3, "halachic", 2),
    )
    if halachic.minimum_niddah_days_min > halachic.minimum_niddah_days_max:
        errors.append("halachic.minimum_niddah_days_range is inverted")
    elif not (
        halachic.minimum_niddah_days_min
        <= halachic.default_minimum_niddah_days
        <= halachic.minimum_niddah_days_max
    ):
        errors.append(
            f"halachic.default_minimum_niddah_days = {halachic.default_minimum_niddah_days} "
            f"is outside minimum_niddah_days_range"
        )

    # ── Onah boundaries ──
    o_raw = raw.get("onah") or {}
    onah = OnahConfig(
        sunrise=_clock(o_raw, "sunrise", time(6, 0), "onah"),
        sunset=_clock(o_raw, "sunset", time(18, 0), "onah"),
    )
    if onah.sunrise >= onah.sunset:
        errors.append("onah.sunrise must be earlier than onah.sunset")

    # ── Notifications ──
    n_raw = raw.get("notifications") or {}
    timeout_raw = n_raw.get("delivery_timeout_seconds", 10)
    try:
        timeout = float(timeout_raw)
    except (TypeError, ValueError):
        errors.append(f"notifications.delivery_timeout_seconds must be a number, got {timeout_raw!r}")
        timeout = 10.0
    if timeout <= 0:
        errors.append("notifications.delivery_timeout_seconds must be positive")
    notifications = NotificationConfig(
        batch_size=_int(n_raw, "batch_size", 100, "notifications", 1),
        vest_lead_hours=_int(n_raw, "vest_lead_hours", 24, "notifications", 0),
        delivery_timeout_seconds=timeout,
        default_reminder_time=_clock(n_raw, "default_reminder_time", time(9, 0), "notifications"),
    )

    # ── Retention ──
    r_raw = raw.get("retention") or {}
    retention = RetentionConfig(
        cycle_retention_days=_int(r_raw, "cycle_retention_days", 730, "retention", 1),
        soft_delete_grace_days=_int(r_raw, "soft_delete_grace_days", 30, "retention", 0),
        notification_retention_days=_int(r_raw, "notification_retention_days", 30, "retention", 1),
        activity_log_retention_days=_int(r_raw, "activity_log_retention_days", 90, "retention", 1),
    )

    # ── Sweeps ──
    s_raw = raw.get("sweeps") or {}
    sweeps = SweepConfig(
        dispatch_interval_seconds=_int(s_raw, "dispatch_interval_seconds", 900, "sweeps", 1),
        retention_interval_seconds=_int(s_raw, "retention_interval_seconds", 86400, "sweeps", 1),
    )

    if errors:
        raise ConfigValidationError(
            f"tracking_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return TrackingConfig(
        version=version,
        halachic=halachic,
        onah=onah,
        notifications=notifications,
        retention=retention,
        sweeps=sweeps,
        _raw=raw,
    )


def load_tracking_config(path: Path | None = None) -> TrackingConfig:
    """Load and validate the tracking config from disk.

    Args:
        path: Override path to YAML. Uses the bundled tracking_config.yaml by default.
    """
    target = path or _CONFIG_PATH
    raw = _load_yaml(target)
    config = _validate_and_build(raw)
    logger.info("Loaded tracking config v%s from %s", config.version, target)
    return config


# ---------------------------------------------------------------------------
# Global singleton with hot-reload support
# ---------------------------------------------------------------------------

_config: TrackingConfig | None = None
_config_lock = threading.Lock()


def get_tracking_config() -> TrackingConfig:
    """Return the global TrackingConfig singleton, loading it on first call.

    Thread-safe.  Use ``reload_tracking_config()`` to refresh after YAML changes.
    """
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:  # double-checked locking
                _config = load_tracking_config()
    return _config


def reload_tracking_config(path: Path | None = None) -> TrackingConfig:
    """Reload the tracking config from disk and replace the global singleton.

    If validation fails, the old config is retained and the error is re-raised.

    Raises:
        ConfigValidationError: If the new config is invalid.
        FileNotFoundError:     If the config file is missing.
    """
    global _config
    new_config = load_tracking_config(path)  # validate before acquiring lock
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info("Reloaded tracking config: %s → %s", old_version, new_config.version)
    return new_config
