"""Configuration data models."""

from dataclasses import dataclass
from enum import Enum


class DetectionMode(Enum):
    """How samples are requested from the feed."""
    MANUAL = "manual"  # Only manual emergency activation
    ON_DEMAND = "on_demand"  # Operator asks for an analysis
    PERIODIC_AUTO = "periodic_auto"  # Interval-driven sampling


@dataclass
class SessionConfig:
    """Session configuration settings."""
    # Alert target (E.164)
    contact_number: str = ""
    sender_identity: str = ""

    # Detection settings
    mode: DetectionMode = DetectionMode.ON_DEMAND
    sample_interval_ms: int = 5000

    # Incident lifecycle
    settle_delay_ms: int = 30000

    def has_alert_target(self) -> bool:
        """Whether both numbers needed for an alert are set."""
        return bool(self.contact_number) and bool(self.sender_identity)
