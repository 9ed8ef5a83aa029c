"""Session configuration management with validation and an alerting guard."""

import json
import os
import threading
from dataclasses import replace
from typing import Optional, Dict, Any, Callable, List, Union

from .models.config import DetectionMode, SessionConfig
from .config.defaults import DEFAULT_CONFIG, SYSTEM_CONSTANTS
from .services.error_handler import InvalidConfiguration
from .logging_config import get_logger
from .utils import is_valid_number, normalize_number

logger = get_logger("session_config")

CONFIG_KEYS = tuple(DEFAULT_CONFIG.keys())


class SessionConfigManager:
    """Holds the session configuration shared by the operator and the orchestrator.

    While locked (the orchestrator is alerting) updates are validated and
    queued instead of applied, so an in-flight alert never sees a
    half-updated target; ``unlock()`` applies them. Readers take a
    ``snapshot()``, which is a private copy.
    """

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path
        self._config = SessionConfig()
        self._lock = threading.RLock()
        self._locked = False
        self._pending: Dict[str, Any] = {}
        self._config_change_callbacks: List[Callable[[SessionConfig], None]] = []

        if self.config_path:
            self.load_config()

    def load_config(self) -> SessionConfig:
        """Load the setup file; invalid or missing files leave the defaults."""
        if not self.config_path or not os.path.exists(self.config_path):
            logger.info("No session config file, using defaults")
            return self.snapshot()

        try:
            with open(self.config_path, 'r') as f:
                config_dict = json.load(f)
            if not isinstance(config_dict, dict):
                raise InvalidConfiguration("config file must hold a JSON object")
            changes = self._coerce_all(config_dict)
        except (json.JSONDecodeError, OSError, InvalidConfiguration) as e:
            logger.error(f"Error loading config {self.config_path}: {e}. Using defaults.")
            return self.snapshot()

        with self._lock:
            self._config = replace(SessionConfig(), **changes)

        logger.info(f"Loaded session config from {self.config_path}")
        return self.snapshot()

    def snapshot(self) -> SessionConfig:
        """Return a consistent private copy of the current configuration."""
        with self._lock:
            return replace(self._config)

    def get_config(self) -> SessionConfig:
        return self.snapshot()

    @property
    def is_locked(self) -> bool:
        return self._locked

    def pending_changes(self) -> Dict[str, Any]:
        with self._lock:
            return dict(self._pending)

    def update_config(self, **kwargs) -> bool:
        """Validate and apply changes.

        Returns True when applied now, False when queued behind the
        alerting lock. Raises InvalidConfiguration without changing
        anything if any value is rejected.
        """
        changes = self._coerce_all(kwargs)
        if not changes:
            return True

        with self._lock:
            if self._locked:
                self._pending.update(changes)
                logger.info(f"Alert in progress, queued config changes: {sorted(changes)}")
                return False

            self._config = replace(self._config, **changes)
            config = replace(self._config)

        logger.info(f"Configuration updated: {self._describe(changes)}")
        self._notify(config)
        return True

    def set_contact(self, number: str) -> bool:
        return self.update_config(contact_number=number)

    def set_sender(self, number: str) -> bool:
        return self.update_config(sender_identity=number)

    def set_mode(self, mode: Union[str, DetectionMode]) -> bool:
        return self.update_config(mode=mode)

    def set_sample_interval(self, interval_ms: int) -> bool:
        return self.update_config(sample_interval_ms=interval_ms)

    def lock(self) -> None:
        """Start queueing changes."""
        with self._lock:
            self._locked = True
        logger.debug("Session config locked")

    def unlock(self) -> bool:
        """Stop queueing and apply queued changes. Returns True if any were applied."""
        with self._lock:
            self._locked = False
            pending, self._pending = self._pending, {}
            if not pending:
                logger.debug("Session config unlocked")
                return False
            self._config = replace(self._config, **pending)
            config = replace(self._config)

        logger.info(f"Applied queued config changes: {self._describe(pending)}")
        self._notify(config)
        return True

    def validate_config(self) -> bool:
        """Validate current configuration."""
        config = self.snapshot()

        if config.contact_number and not is_valid_number(config.contact_number):
            return False
        if config.sender_identity and not is_valid_number(config.sender_identity):
            return False
        if not isinstance(config.mode, DetectionMode):
            return False
        if config.sample_interval_ms < SYSTEM_CONSTANTS["MIN_SAMPLE_INTERVAL_MS"]:
            return False
        if config.settle_delay_ms < 0:
            return False

        return True

    def export_config(self) -> Dict[str, Any]:
        """Export current configuration as a dictionary."""
        config = self.snapshot()
        return {
            'contact_number': config.contact_number,
            'sender_identity': config.sender_identity,
            'mode': config.mode.value,
            'sample_interval_ms': config.sample_interval_ms,
            'settle_delay_ms': config.settle_delay_ms
        }

    def register_change_callback(self, callback: Callable[[SessionConfig], None]) -> None:
        """Register a callback to be called when config changes."""
        if callback not in self._config_change_callbacks:
            self._config_change_callbacks.append(callback)

    def unregister_change_callback(self, callback: Callable[[SessionConfig], None]) -> None:
        if callback in self._config_change_callbacks:
            self._config_change_callbacks.remove(callback)

    def _notify(self, config: SessionConfig) -> None:
        for callback in list(self._config_change_callbacks):
            try:
                callback(config)
            except Exception as e:
                logger.error(f"Error in config change callback: {e}", exc_info=True)

    def _coerce_all(self, values: Dict[str, Any]) -> Dict[str, Any]:
        unknown = set(values) - set(CONFIG_KEYS)
        if unknown:
            raise InvalidConfiguration(f"Unknown configuration keys: {sorted(unknown)}")
        return {key: self._coerce(key, value) for key, value in values.items()}

    @staticmethod
    def _coerce(key: str, value: Any) -> Any:
        if key in ('contact_number', 'sender_identity'):
            number = normalize_number(str(value)) if value is not None else ""
            if number and not is_valid_number(number):
                raise InvalidConfiguration(
                    f"Invalid phone number {value!r}: use E.164 format, e.g. +15551234567"
                )
            return number

        if key == 'mode':
            if isinstance(value, DetectionMode):
                return value
            try:
                return DetectionMode(str(value).lower())
            except ValueError:
                choices = ", ".join(m.value for m in DetectionMode)
                raise InvalidConfiguration(f"Invalid mode {value!r}: expected one of {choices}")

        if key == 'sample_interval_ms':
            interval = SessionConfigManager._as_int(key, value)
            if interval < SYSTEM_CONSTANTS["MIN_SAMPLE_INTERVAL_MS"]:
                raise InvalidConfiguration(
                    f"sample_interval_ms must be at least {SYSTEM_CONSTANTS['MIN_SAMPLE_INTERVAL_MS']}"
                )
            return interval

        if key == 'settle_delay_ms':
            delay = SessionConfigManager._as_int(key, value)
            if delay < 0:
                raise InvalidConfiguration("settle_delay_ms must not be negative")
            return delay

        return value

    @staticmethod
    def _as_int(key: str, value: Any) -> int:
        if isinstance(value, bool):
            raise InvalidConfiguration(f"{key} must be an integer")
        try:
            return int(value)
        except (TypeError, ValueError):
            raise InvalidConfiguration(f"{key} must be an integer, got {value!r}")

    @staticmethod
    def _describe(changes: Dict[str, Any]) -> Dict[str, Any]:
        return {k: (v.value if isinstance(v, DetectionMode) else v) for k, v in changes.items()}
