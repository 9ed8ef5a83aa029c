"""Services for the accident monitor."""

from .interfaces import (
    AnalysisRequest,
    SampleSourceInterface,
    AnalysisProviderInterface,
    NotificationProviderInterface
)
from .error_handler import (
    SafeguardError,
    SourceUnavailable,
    AnalysisUnavailable,
    AnalysisMalformed,
    ConfigurationMissing,
    NotificationChannelFailed,
    InvalidConfiguration,
    ErrorHandler
)
from .timers import TimerService, TimerHandle

__all__ = [
    'AnalysisRequest',
    'SampleSourceInterface',
    'AnalysisProviderInterface',
    'NotificationProviderInterface',
    'SafeguardError',
    'SourceUnavailable',
    'AnalysisUnavailable',
    'AnalysisMalformed',
    'ConfigurationMissing',
    'NotificationChannelFailed',
    'InvalidConfiguration',
    'ErrorHandler',
    'TimerService',
    'TimerHandle'
]
