"""Data models for the accident monitor."""

from .incident import (
    IncidentState,
    ChannelStatus,
    Verdict,
    FrameSample,
    SensorSample,
    Sample,
    ChannelOutcome,
    AlertOutcome,
    AlertAttempt,
    IncidentSnapshot
)
from .config import DetectionMode, SessionConfig

__all__ = [
    'IncidentState', 'ChannelStatus', 'Verdict', 'FrameSample', 'SensorSample', 'Sample',
    'ChannelOutcome', 'AlertOutcome', 'AlertAttempt', 'IncidentSnapshot',
    'DetectionMode', 'SessionConfig'
]
