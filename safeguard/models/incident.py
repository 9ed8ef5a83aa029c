"""Incident data models."""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Optional, Tuple, Dict, Any, Union, List


class IncidentState(Enum):
    """States of the incident state machine."""
    IDLE = "idle"
    SAMPLING = "sampling"
    ANALYZING = "analyzing"
    CONFIRMED = "confirmed"
    ALERTING = "alerting"
    SETTLING = "settling"


class ChannelStatus(Enum):
    """Delivery status of one alert channel."""
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


@dataclass(frozen=True)
class Verdict:
    """Structured answer to "is this an accident"."""
    is_accident: bool
    confidence: float
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'is_accident': self.is_accident,
            'confidence': self.confidence,
            'reason': self.reason
        }


@dataclass
class FrameSample:
    """Encoded still frame taken from a video feed."""
    data: bytes
    width: int
    height: int
    mime_type: str = "image/jpeg"
    captured_at: datetime = field(default_factory=datetime.now)


@dataclass
class SensorSample:
    """Motion reading: accelerometer and gyroscope triples plus optional location.

    ``location`` is (latitude, longitude, accuracy_m) when known.
    """
    accel: Tuple[float, float, float]
    gyro: Tuple[float, float, float]
    location: Optional[Tuple[float, float, float]] = None
    captured_at: datetime = field(default_factory=datetime.now)


Sample = Union[FrameSample, SensorSample]


@dataclass
class ChannelOutcome:
    """Result of one alert channel (SMS or call)."""
    status: ChannelStatus = ChannelStatus.PENDING
    detail: Optional[str] = None
    reference_id: Optional[str] = None

    @classmethod
    def sent(cls, reference_id: Optional[str]) -> "ChannelOutcome":
        return cls(status=ChannelStatus.SENT, reference_id=reference_id)

    @classmethod
    def failed(cls, detail: str) -> "ChannelOutcome":
        return cls(status=ChannelStatus.FAILED, detail=detail)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status.value,
            'detail': self.detail,
            'reference_id': self.reference_id
        }


@dataclass
class AlertOutcome:
    """Per-channel outcomes returned by the notification gateway."""
    sms: ChannelOutcome
    call: ChannelOutcome


@dataclass
class AlertAttempt:
    """The single outbound alert of an incident."""
    incident_id: int
    reason: str
    contact: str
    sender: str
    sms_outcome: ChannelOutcome = field(default_factory=ChannelOutcome)
    call_outcome: ChannelOutcome = field(default_factory=ChannelOutcome)
    created_at: datetime = field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None

    @property
    def is_complete(self) -> bool:
        return self.completed_at is not None

    def copy(self) -> "AlertAttempt":
        """Detached copy, including both channel outcomes."""
        return replace(self, sms_outcome=replace(self.sms_outcome),
                       call_outcome=replace(self.call_outcome))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'incident_id': self.incident_id,
            'reason': self.reason,
            'contact': self.contact,
            'sender': self.sender,
            'sms_outcome': self.sms_outcome.to_dict(),
            'call_outcome': self.call_outcome.to_dict(),
            'created_at': self.created_at.isoformat(),
            'completed_at': self.completed_at.isoformat() if self.completed_at else None
        }


@dataclass
class IncidentSnapshot:
    """Read-only view of the orchestrator for presentation layers."""
    state: IncidentState
    incident_id: int
    mode: str
    verdict: Optional[Verdict] = None
    alert_attempt: Optional[AlertAttempt] = None
    analysis_in_flight: bool = False
    last_error: Optional[str] = None
    recent_states: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        verdict = None
        if self.verdict is not None:
            verdict = self.verdict.to_dict()
            verdict['confidence_percent'] = round(self.verdict.confidence * 100)

        return {
            'state': self.state.value,
            'incident_id': self.incident_id,
            'mode': self.mode,
            'verdict': verdict,
            'alert_attempt': self.alert_attempt.to_dict() if self.alert_attempt else None,
            'analysis_in_flight': self.analysis_in_flight,
            'last_error': self.last_error,
            'recent_states': list(self.recent_states)
        }
