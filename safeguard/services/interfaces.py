"""Service interfaces and abstract base classes."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from ..models.incident import Sample


@dataclass
class AnalysisRequest:
    """Provider-neutral analysis request.

    ``kind`` is "frame" (``payload`` is a base64 data URI) or "sensor"
    (``payload`` is a JSON document of motion triples).
    """
    kind: str
    payload: str
    mime_type: Optional[str] = None


class SampleSourceInterface(ABC):
    """Interface for the frame/sensor feed."""

    @abstractmethod
    def open(self) -> None:
        """Start the feed."""
        pass

    @abstractmethod
    def get_sample(self) -> Sample:
        """Return the current sample or raise SourceUnavailable."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Stop the feed."""
        pass

    @abstractmethod
    def is_available(self) -> bool:
        """Check if the feed is active."""
        pass


class AnalysisProviderInterface(ABC):
    """Interface for the accident classifier."""

    @abstractmethod
    def submit(self, request: AnalysisRequest) -> Union[str, Dict[str, Any]]:
        """Send a request and return the raw response (JSON text or decoded object).

        Raises AnalysisUnavailable when the provider cannot be reached.
        """
        pass


class NotificationProviderInterface(ABC):
    """Interface for SMS and voice delivery."""

    @abstractmethod
    def send_sms(self, to: str, from_: str, body: str) -> str:
        """Send SMS and return the provider message id."""
        pass

    @abstractmethod
    def place_call(self, to: str, from_: str, spoken_message: str) -> str:
        """Place a voice call and return the provider call id."""
        pass
