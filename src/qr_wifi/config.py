"""Configuration management for QRWiFi."""
from __future__ import annotations

import json
import logging
import math
import os
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from threading import Lock
from typing import Any, Mapping

DEFAULT_MAX_ASSOCIATION_RETRIES = 5
DEFAULT_MAX_SCAN_RETRIES = 3
DEFAULT_SCAN_RETRY_STEP = 0.2
DEFAULT_INITIAL_BACKOFF = 0.5
DEFAULT_JITTER_RATIO = 0.3
DEFAULT_PERMISSION_TIMEOUT = 10.0
DEFAULT_RESUME_DELAY = 0.5

ENV_PREFIX = "QRWIFI_"


def _coerce_int(value: Any, name: str, *, minimum: int = 1) -> int:
    if isinstance(value, bool):
        raise ValueError(f"{name} must be an integer")
    try:
        number = int(float(value))
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if number < minimum:
        raise ValueError(f"{name} must be at least {minimum}")
    return number


def _coerce_float(value: Any, name: str) -> float:
    if isinstance(value, bool):
        raise ValueError(f"{name} must be numeric")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be numeric") from exc
    if not math.isfinite(number) or number < 0:
        raise ValueError(f"{name} must be a non-negative finite value")
    return number


def _coerce_bool(value: Any, name: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    raise ValueError(f"{name} must be a boolean")


@dataclass(frozen=True, slots=True)
class EngineSettings:
    """Tunable limits for the association engine."""

    max_association_retries: int = DEFAULT_MAX_ASSOCIATION_RETRIES
    max_scan_retries: int = DEFAULT_MAX_SCAN_RETRIES
    scan_retry_step: float = DEFAULT_SCAN_RETRY_STEP
    initial_backoff: float = DEFAULT_INITIAL_BACKOFF
    jitter_ratio: float = DEFAULT_JITTER_RATIO
    permission_timeout: float = DEFAULT_PERMISSION_TIMEOUT
    resume_delay: float = DEFAULT_RESUME_DELAY
    open_settings_on_denied: bool = True
    interface: str | None = None
    extra_retryable_codes: tuple[int, ...] = ()
    extra_retryable_domains: tuple[str, ...] = ()
    log_path: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "max_association_retries",
            _coerce_int(self.max_association_retries, "max_association_retries"),
        )
        object.__setattr__(
            self, "max_scan_retries", _coerce_int(self.max_scan_retries, "max_scan_retries")
        )
        object.__setattr__(
            self, "scan_retry_step", _coerce_float(self.scan_retry_step, "scan_retry_step")
        )
        object.__setattr__(
            self, "initial_backoff", _coerce_float(self.initial_backoff, "initial_backoff")
        )
        # Jitter must stay below the doubling step or delays stop increasing.
        jitter = _coerce_float(self.jitter_ratio, "jitter_ratio")
        if jitter >= 1.0:
            raise ValueError("jitter_ratio must be below 1")
        object.__setattr__(self, "jitter_ratio", jitter)
        object.__setattr__(
            self,
            "permission_timeout",
            _coerce_float(self.permission_timeout, "permission_timeout"),
        )
        object.__setattr__(
            self, "resume_delay", _coerce_float(self.resume_delay, "resume_delay")
        )
        object.__setattr__(
            self,
            "open_settings_on_denied",
            _coerce_bool(self.open_settings_on_denied, "open_settings_on_denied"),
        )
        interface = self.interface.strip() if isinstance(self.interface, str) else None
        object.__setattr__(self, "interface", interface or None)
        try:
            codes = tuple(int(code) for code in self.extra_retryable_codes)
        except (TypeError, ValueError) as exc:
            raise ValueError("extra_retryable_codes must contain integers") from exc
        object.__setattr__(self, "extra_retryable_codes", codes)
        domains = tuple(
            str(domain).strip() for domain in self.extra_retryable_domains if str(domain).strip()
        )
        object.__setattr__(self, "extra_retryable_domains", domains)
        log_path = str(self.log_path).strip() if self.log_path is not None else ""
        object.__setattr__(self, "log_path", log_path or None)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["extra_retryable_codes"] = list(self.extra_retryable_codes)
        payload["extra_retryable_domains"] = list(self.extra_retryable_domains)
        return payload


DEFAULT_ENGINE_SETTINGS = EngineSettings()

_SETTING_FIELDS = tuple(DEFAULT_ENGINE_SETTINGS.to_dict())

# Environment variable suffix -> settings field.
_ENVIRONMENT_FIELDS = {
    "MAX_RETRIES": "max_association_retries",
    "MAX_SCAN_RETRIES": "max_scan_retries",
    "INITIAL_BACKOFF": "initial_backoff",
    "PERMISSION_TIMEOUT": "permission_timeout",
    "RESUME_DELAY": "resume_delay",
    "OPEN_SETTINGS": "open_settings_on_denied",
    "INTERFACE": "interface",
    "LOG_PATH": "log_path",
}


def _parse_engine_settings(value: Any, *, default: EngineSettings) -> EngineSettings:
    if value is None:
        return default
    if isinstance(value, EngineSettings):
        return value
    if not isinstance(value, Mapping):
        raise ValueError("Engine settings must be provided as a mapping")
    changes = {key: value[key] for key in _SETTING_FIELDS if key in value}
    for key in ("extra_retryable_codes", "extra_retryable_domains"):
        if key in changes:
            raw = changes[key]
            if isinstance(raw, (str, bytes)) or not hasattr(raw, "__iter__"):
                raise ValueError(f"{key} must be a list")
            changes[key] = tuple(raw)
    return replace(default, **changes)


def apply_environment(
    settings: EngineSettings, environ: Mapping[str, str] | None = None
) -> EngineSettings:
    """Overlay ``QRWIFI_*`` environment variables on ``settings``.

    Invalid values are logged and ignored.
    """

    env = os.environ if environ is None else environ
    logger = logging.getLogger(__name__)
    result = settings
    for suffix, field_name in _ENVIRONMENT_FIELDS.items():
        name = f"{ENV_PREFIX}{suffix}"
        raw = env.get(name)
        if raw is None or not raw.strip():
            continue
        try:
            result = replace(result, **{field_name: raw.strip()})
        except ValueError as exc:
            logger.warning("Invalid %s value %r; ignoring (%s)", name, raw, exc)
    return result


class ConfigManager:
    """Stores engine configuration on disk with thread-safety."""

    def __init__(self, config_path: Path | str) -> None:
        self._path = Path(config_path)
        self._lock = Lock()
        self._ensure_parent()
        self._settings = self._load()

    def _ensure_parent(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)

    def _load(self) -> EngineSettings:
        if not self._path.exists():
            return DEFAULT_ENGINE_SETTINGS
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
            if not isinstance(payload, dict):
                raise ValueError("Configuration file must contain a JSON object")
            return _parse_engine_settings(payload.get("engine"), default=DEFAULT_ENGINE_SETTINGS)
        except (OSError, ValueError, TypeError) as exc:
            logging.getLogger(__name__).warning(
                "Unable to load configuration from %s: %s", self._path, exc
            )
            return DEFAULT_ENGINE_SETTINGS

    def _save(self) -> None:
        payload = {"engine": self._settings.to_dict()}
        self._path.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    @property
    def path(self) -> Path:
        return self._path

    def get_settings(self) -> EngineSettings:
        with self._lock:
            return self._settings

    def update_settings(self, changes: Mapping[str, Any]) -> EngineSettings:
        """Validate and persist a partial update, returning the new settings."""

        with self._lock:
            updated = _parse_engine_settings(changes, default=self._settings)
            self._settings = updated
            self._save()
            return updated


def load_settings(
    config_path: Path | str | None = None,
    *,
    environ: Mapping[str, str] | None = None,
) -> EngineSettings:
    """Return settings from ``config_path`` (if any) with environment overrides."""

    settings = DEFAULT_ENGINE_SETTINGS
    if config_path is not None:
        settings = ConfigManager(config_path).get_settings()
    return apply_environment(settings, environ)


__all__ = [
    "ConfigManager",
    "DEFAULT_ENGINE_SETTINGS",
    "EngineSettings",
    "apply_environment",
    "load_settings",
]
