"""Notification gateway: SMS then voice call to the emergency contact."""

import os
from dataclasses import dataclass
from typing import Any, Dict
from xml.sax.saxutils import escape

import requests

from .interfaces import NotificationProviderInterface
from .error_handler import ConfigurationMissing, NotificationChannelFailed
from ..config.defaults import MESSAGE_TEMPLATES, PROVIDER_SETTINGS, SYSTEM_CONSTANTS
from ..models.incident import AlertOutcome, ChannelOutcome
from ..logging_config import get_logger
from ..utils import is_valid_number

logger = get_logger("notification_gateway")


def format_sms_body(reason: str) -> str:
    return MESSAGE_TEMPLATES["sms_body"].format(reason=reason)


def format_call_message(reason: str) -> str:
    return MESSAGE_TEMPLATES["call_message"].format(reason=reason)


class NotificationGateway:
    """``alert(contact, sender, reason)`` over a notification provider.

    The SMS and the call are independent: a failure in one is recorded in
    its own outcome and the other channel is still attempted.
    """

    def __init__(self, provider: NotificationProviderInterface):
        self.provider = provider
        self.stats = {
            "alerts": 0,
            "sms_sent": 0,
            "sms_failed": 0,
            "calls_placed": 0,
            "calls_failed": 0
        }

    def alert(self, contact: str, sender: str, reason: str) -> AlertOutcome:
        if not contact:
            raise ConfigurationMissing("Emergency contact number is not set")
        if not sender:
            raise ConfigurationMissing("Sender number is not set")
        if not is_valid_number(contact):
            raise ConfigurationMissing(f"Emergency contact {contact!r} is not a valid E.164 number")
        if not is_valid_number(sender):
            raise ConfigurationMissing(f"Sender {sender!r} is not a valid E.164 number")

        self.stats["alerts"] += 1
        logger.info(f"Alerting {contact} from {sender}: {reason}")

        sms = self._send_sms(contact, sender, format_sms_body(reason))
        call = self._place_call(contact, sender, format_call_message(reason))

        return AlertOutcome(sms=sms, call=call)

    def _send_sms(self, contact: str, sender: str, body: str) -> ChannelOutcome:
        try:
            sid = self.provider.send_sms(contact, sender, body)
        except NotificationChannelFailed as e:
            self.stats["sms_failed"] += 1
            logger.error(f"SMS to {contact} failed: {e.detail}")
            return ChannelOutcome.failed(e.detail)
        except Exception as e:
            self.stats["sms_failed"] += 1
            logger.error(f"SMS to {contact} failed: {e}")
            return ChannelOutcome.failed(str(e))

        self.stats["sms_sent"] += 1
        logger.info(f"SMS sent to {contact} (sid={sid})")
        return ChannelOutcome.sent(sid)

    def _place_call(self, contact: str, sender: str, message: str) -> ChannelOutcome:
        try:
            sid = self.provider.place_call(contact, sender, message)
        except NotificationChannelFailed as e:
            self.stats["calls_failed"] += 1
            logger.error(f"Call to {contact} failed: {e.detail}")
            return ChannelOutcome.failed(e.detail)
        except Exception as e:
            self.stats["calls_failed"] += 1
            logger.error(f"Call to {contact} failed: {e}")
            return ChannelOutcome.failed(str(e))

        self.stats["calls_placed"] += 1
        logger.info(f"Call initiated to {contact} (sid={sid})")
        return ChannelOutcome.sent(sid)

    def get_notification_stats(self) -> Dict[str, Any]:
        return dict(self.stats, provider=type(self.provider).__name__)


@dataclass
class TwilioConfig:
    """Credentials and endpoint for Twilio."""
    account_sid: str = ""
    auth_token: str = ""
    api_base: str = PROVIDER_SETTINGS["twilio_api_base"]
    timeout_seconds: float = SYSTEM_CONSTANTS["HTTP_TIMEOUT_SECONDS"]

    @classmethod
    def from_env(cls) -> "TwilioConfig":
        return cls(
            account_sid=os.getenv("TWILIO_ACCOUNT_SID", "").strip(),
            auth_token=os.getenv("TWILIO_AUTH_TOKEN", "").strip()
        )


class TwilioNotificationProvider(NotificationProviderInterface):
    """Twilio REST API for messages and calls."""

    def __init__(self, config: TwilioConfig):
        self.config = config

    def send_sms(self, to: str, from_: str, body: str) -> str:
        return self._create("sms", "Messages.json", {"To": to, "From": from_, "Body": body})

    def place_call(self, to: str, from_: str, spoken_message: str) -> str:
        twiml = f"<Response><Say>{escape(spoken_message)}</Say></Response>"
        return self._create("call", "Calls.json", {"To": to, "From": from_, "Twiml": twiml})

    def _create(self, channel: str, resource: str, data: Dict[str, str]) -> str:
        if not self.config.account_sid or not self.config.auth_token:
            raise NotificationChannelFailed(channel, "Twilio credentials are not configured")

        url = f"{self.config.api_base}/Accounts/{self.config.account_sid}/{resource}"

        try:
            response = requests.post(
                url,
                data=data,
                auth=(self.config.account_sid, self.config.auth_token),
                timeout=self.config.timeout_seconds
            )
        except requests.RequestException as e:
            raise NotificationChannelFailed(channel, f"Twilio unreachable: {e}") from e

        if response.status_code not in (200, 201):
            try:
                message = response.json().get("message", response.text)
            except ValueError:
                message = response.text
            raise NotificationChannelFailed(channel, f"Twilio HTTP {response.status_code}: {message}")

        try:
            return response.json()["sid"]
        except (ValueError, KeyError) as e:
            raise NotificationChannelFailed(channel, f"Twilio response without sid: {e}") from e
