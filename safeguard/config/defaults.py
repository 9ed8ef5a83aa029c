"""Default configuration values and constants."""

from typing import Dict, Any

# Default session configuration
DEFAULT_CONFIG: Dict[str, Any] = {
    # Alert target
    "contact_number": "",
    "sender_identity": "",

    # Detection settings
    "mode": "on_demand",  # manual, on_demand, periodic_auto
    "sample_interval_ms": 5000,

    # Incident lifecycle
    "settle_delay_ms": 30000
}

# System constants
SYSTEM_CONSTANTS = {
    "E164_PATTERN": r"^\+?[1-9]\d{1,14}$",
    "MIN_SAMPLE_INTERVAL_MS": 500,
    "DEFAULT_SETTLE_DELAY_MS": 30000,
    "HTTP_TIMEOUT_SECONDS": 15,
    "MAX_ERROR_HISTORY": 200,
    "MAX_TRANSITION_HISTORY": 50,
    "EVENT_POLL_SECONDS": 0.5,
    "JPEG_QUALITY": 85,
    "MAX_SENSOR_AGE_SECONDS": 5
}

# File paths and directories
DEFAULT_PATHS = {
    "config_file": "safeguard.json",
    "logs_dir": "logs"
}

# Third-party provider endpoints
PROVIDER_SETTINGS = {
    "gemini_api_base": "https://generativelanguage.googleapis.com/v1beta",
    "gemini_model": "gemini-2.0-flash",
    "twilio_api_base": "https://api.twilio.com/2010-04-01"
}

# Outbound alert wording
MESSAGE_TEMPLATES = {
    "manual_reason": "Manual activation.",
    "detected_reason": "Accident detected by analysis.",
    "sms_body": (
        "URGENT: An accident may have been detected involving your contact. "
        "Reason: {reason}. Please check on them immediately."
    ),
    "call_message": (
        "Hello. This is an automated alert from SafeGuard. An accident may have "
        "been detected. Reason: {reason}. Please check on your contact immediately."
    )
}
