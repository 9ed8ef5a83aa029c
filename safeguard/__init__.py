"""
SafeGuard Accident Monitor

Watches a camera or motion-sensor feed, asks a multimodal model whether an
accident happened, and alerts an emergency contact by SMS and voice call.
"""

__version__ = "1.0.0"
__author__ = "SafeGuard"

# Import core components
from .session_config import SessionConfigManager
from .incident_orchestrator import IncidentOrchestrator
from .models import (
    DetectionMode,
    SessionConfig,
    IncidentState,
    Verdict,
    FrameSample,
    SensorSample,
    AlertAttempt,
    IncidentSnapshot
)
from .services import (
    SampleSourceInterface,
    AnalysisProviderInterface,
    NotificationProviderInterface
)
from . import utils

__all__ = [
    # Core management
    'SessionConfigManager',
    'IncidentOrchestrator',

    # Data models
    'DetectionMode',
    'SessionConfig',
    'IncidentState',
    'Verdict',
    'FrameSample',
    'SensorSample',
    'AlertAttempt',
    'IncidentSnapshot',

    # Service interfaces
    'SampleSourceInterface',
    'AnalysisProviderInterface',
    'NotificationProviderInterface',

    # Utilities
    'utils'
]
