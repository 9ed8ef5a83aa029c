"""Error taxonomy and error recording for the incident core."""

import logging
import threading
from collections import deque
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Any
from dataclasses import dataclass, field
from enum import Enum


class SafeguardError(Exception):
    """Base class for errors raised inside the incident core."""


class SourceUnavailable(SafeguardError):
    """No sample could be obtained from the feed."""


class AnalysisUnavailable(SafeguardError):
    """The analysis provider could not be reached or is not configured."""


class AnalysisMalformed(SafeguardError):
    """The analysis provider answered with something that is not a verdict."""


class ConfigurationMissing(SafeguardError):
    """Contact or sender is unset, so no alert can be attempted."""


class NotificationChannelFailed(SafeguardError):
    """One alert channel (SMS or call) failed."""

    def __init__(self, channel: str, detail: str):
        self.channel = channel
        self.detail = detail
        super().__init__(f"{channel} failed: {detail}")


class InvalidConfiguration(ValueError):
    """Operator input rejected by session configuration validation."""


class ErrorSeverity(Enum):
    """Error severity levels."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ComponentStatus(Enum):
    """Component status levels."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    FAILED = "failed"
    UNKNOWN = "unknown"


@dataclass
class ErrorRecord:
    """Record of an error occurrence."""
    component_name: str
    error_type: str
    message: str
    severity: ErrorSeverity
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'component': self.component_name,
            'error_type': self.error_type,
            'message': self.message,
            'severity': self.severity.value,
            'timestamp': self.timestamp.isoformat()
        }


class ErrorHandler:
    """Records component errors so the latest outcome stays operator-visible.

    Nothing here retries or recovers: every error is terminal for the step
    that raised it, and the component is marked healthy again on its next
    success.
    """

    def __init__(self, max_error_history: int = 200):
        self.logger = logging.getLogger("safeguard.error_handler")
        self.error_history: deque = deque(maxlen=max_error_history)
        self.component_error_counts: Dict[str, int] = {}
        self.component_status: Dict[str, ComponentStatus] = {}
        self._lock = threading.Lock()

    def register_component(self, component_name: str) -> None:
        """Register a component for error tracking."""
        with self._lock:
            self.component_error_counts.setdefault(component_name, 0)
            self.component_status[component_name] = ComponentStatus.HEALTHY
        self.logger.debug(f"Component registered: {component_name}")

    def handle_error(self, component_name: str, error: Exception,
                     severity: ErrorSeverity = ErrorSeverity.MEDIUM) -> ErrorRecord:
        """Record an error from a component and update its status."""
        record = ErrorRecord(
            component_name=component_name,
            error_type=type(error).__name__,
            message=str(error),
            severity=severity
        )

        with self._lock:
            self.error_history.append(record)
            self.component_error_counts[component_name] = \
                self.component_error_counts.get(component_name, 0) + 1

            if severity == ErrorSeverity.CRITICAL:
                self.component_status[component_name] = ComponentStatus.FAILED
            else:
                self.component_status[component_name] = ComponentStatus.DEGRADED

        log_level = logging.WARNING if severity == ErrorSeverity.LOW else logging.ERROR
        self.logger.log(log_level, f"Error in {component_name}: {record.error_type}: {error} "
                                   f"(Severity: {severity.value})")
        return record

    def mark_healthy(self, component_name: str) -> None:
        """Mark a component healthy after a successful operation."""
        with self._lock:
            self.component_status[component_name] = ComponentStatus.HEALTHY

    def get_last_error(self) -> Optional[ErrorRecord]:
        with self._lock:
            return self.error_history[-1] if self.error_history else None

    def get_component_health(self) -> Dict[str, ComponentStatus]:
        """Get health status of all registered components."""
        with self._lock:
            return dict(self.component_status)

    def get_error_stats(self) -> Dict[str, Any]:
        """Get error statistics."""
        with self._lock:
            return {
                "total_errors": len(self.error_history),
                "component_error_counts": dict(self.component_error_counts),
                "component_status": {
                    name: status.value for name, status in self.component_status.items()
                }
            }

    def get_recent_errors(self, limit: int = 20) -> List[ErrorRecord]:
        with self._lock:
            return list(self.error_history)[-limit:]

    def get_error_summary(self, hours: int = 24) -> Dict[str, Any]:
        """Get summary of errors in the last N hours."""
        cutoff_time = datetime.now() - timedelta(hours=hours)

        with self._lock:
            recent_errors = [e for e in self.error_history if e.timestamp >= cutoff_time]

        component_counts: Dict[str, int] = {}
        severity_counts = {severity.value: 0 for severity in ErrorSeverity}

        for error in recent_errors:
            component_counts[error.component_name] = component_counts.get(error.component_name, 0) + 1
            severity_counts[error.severity.value] += 1

        return {
            "total_errors": len(recent_errors),
            "component_counts": component_counts,
            "severity_counts": severity_counts,
            "time_period_hours": hours
        }

    def clear_error_history(self) -> None:
        """Clear recorded errors and reset every component to healthy."""
        with self._lock:
            self.error_history.clear()
            for component in self.component_error_counts:
                self.component_error_counts[component] = 0
                self.component_status[component] = ComponentStatus.HEALTHY
