"""Unit tests for the notification gateway and the Twilio provider."""

import unittest
from unittest.mock import Mock, patch
import sys
import os

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import requests

from safeguard.models.incident import ChannelStatus
from safeguard.services.error_handler import ConfigurationMissing, NotificationChannelFailed
from safeguard.services.notification_gateway import (
    NotificationGateway, TwilioConfig, TwilioNotificationProvider,
    format_call_message, format_sms_body
)
from fakes import FakeNotificationProvider

CONTACT = "+15551234567"
SENDER = "+15557654321"


class TestMessageTemplates(unittest.TestCase):

    def test_sms_body(self):
        self.assertEqual(
            format_sms_body("debris on road"),
            "URGENT: An accident may have been detected involving your contact. "
            "Reason: debris on road. Please check on them immediately."
        )

    def test_call_message(self):
        self.assertEqual(
            format_call_message("Manual activation."),
            "Hello. This is an automated alert from SafeGuard. An accident may have been "
            "detected. Reason: Manual activation.. Please check on your contact immediately."
        )


class TestNotificationGateway(unittest.TestCase):
    """Test cases for NotificationGateway."""

    def setUp(self):
        self.provider = FakeNotificationProvider()
        self.gateway = NotificationGateway(self.provider)

    def test_alert_sends_sms_and_call(self):
        outcome = self.gateway.alert(CONTACT, SENDER, "debris on road")

        self.assertEqual(outcome.sms.status, ChannelStatus.SENT)
        self.assertEqual(outcome.sms.reference_id, "SM1")
        self.assertEqual(outcome.call.status, ChannelStatus.SENT)
        self.assertEqual(outcome.call.reference_id, "CA1")
        self.assertEqual(self.provider.sms, [(CONTACT, SENDER, format_sms_body("debris on road"))])
        self.assertEqual(self.provider.calls, [(CONTACT, SENDER, format_call_message("debris on road"))])

    def test_sms_failure_still_places_call(self):
        self.provider.fail_sms = True

        outcome = self.gateway.alert(CONTACT, SENDER, "smoke")

        self.assertEqual(outcome.sms.status, ChannelStatus.FAILED)
        self.assertEqual(outcome.sms.detail, "carrier rejected message")
        self.assertEqual(outcome.call.status, ChannelStatus.SENT)
        self.assertEqual(len(self.provider.calls), 1)

    def test_both_channels_fail(self):
        self.provider.fail_sms = True
        self.provider.fail_call = True

        outcome = self.gateway.alert(CONTACT, SENDER, "smoke")

        self.assertEqual(outcome.sms.status, ChannelStatus.FAILED)
        self.assertEqual(outcome.call.status, ChannelStatus.FAILED)
        stats = self.gateway.get_notification_stats()
        self.assertEqual(stats["sms_failed"], 1)
        self.assertEqual(stats["calls_failed"], 1)

    def test_unexpected_provider_error_is_an_outcome(self):
        provider = Mock()
        provider.send_sms.side_effect = RuntimeError("socket closed")
        provider.place_call.return_value = "CA42"

        outcome = NotificationGateway(provider).alert(CONTACT, SENDER, "smoke")

        self.assertEqual(outcome.sms.status, ChannelStatus.FAILED)
        self.assertEqual(outcome.sms.detail, "socket closed")
        self.assertEqual(outcome.call.reference_id, "CA42")

    def test_missing_or_invalid_numbers(self):
        for contact, sender in (("", SENDER), (CONTACT, ""), ("12ab", SENDER), (CONTACT, "+0")):
            with self.subTest(contact=contact, sender=sender):
                with self.assertRaises(ConfigurationMissing):
                    self.gateway.alert(contact, sender, "smoke")

        self.assertEqual(self.provider.sms, [])
        self.assertEqual(self.provider.calls, [])
        self.assertEqual(self.gateway.get_notification_stats()["alerts"], 0)

    def test_stats(self):
        self.gateway.alert(CONTACT, SENDER, "smoke")
        stats = self.gateway.get_notification_stats()

        self.assertEqual(stats["alerts"], 1)
        self.assertEqual(stats["sms_sent"], 1)
        self.assertEqual(stats["calls_placed"], 1)
        self.assertEqual(stats["provider"], "FakeNotificationProvider")


class TestTwilioNotificationProvider(unittest.TestCase):
    """Test cases for the Twilio REST provider."""

    def setUp(self):
        self.config = TwilioConfig(account_sid="AC123", auth_token="secret",
                                   api_base="https://twilio.example.test/2010-04-01")
        self.provider = TwilioNotificationProvider(self.config)

    def created(self, sid):
        response = Mock(status_code=201)
        response.json.return_value = {"sid": sid}
        return response

    @patch('safeguard.services.notification_gateway.requests.post')
    def test_send_sms(self, mock_post):
        mock_post.return_value = self.created("SM100")

        sid = self.provider.send_sms(CONTACT, SENDER, "hello")

        self.assertEqual(sid, "SM100")
        args, kwargs = mock_post.call_args
        self.assertEqual(args[0], "https://twilio.example.test/2010-04-01/Accounts/AC123/Messages.json")
        self.assertEqual(kwargs["data"], {"To": CONTACT, "From": SENDER, "Body": "hello"})
        self.assertEqual(kwargs["auth"], ("AC123", "secret"))

    @patch('safeguard.services.notification_gateway.requests.post')
    def test_place_call_uses_twiml(self, mock_post):
        mock_post.return_value = self.created("CA100")

        sid = self.provider.place_call(CONTACT, SENDER, "Crash <near> exit & ramp")

        self.assertEqual(sid, "CA100")
        args, kwargs = mock_post.call_args
        self.assertTrue(args[0].endswith("/Accounts/AC123/Calls.json"))
        self.assertEqual(kwargs["data"]["Twiml"],
                         "<Response><Say>Crash &lt;near&gt; exit &amp; ramp</Say></Response>")

    @patch('safeguard.services.notification_gateway.requests.post')
    def test_missing_credentials(self, mock_post):
        provider = TwilioNotificationProvider(TwilioConfig())

        with self.assertRaises(NotificationChannelFailed) as ctx:
            provider.send_sms(CONTACT, SENDER, "hello")

        self.assertEqual(ctx.exception.channel, "sms")
        mock_post.assert_not_called()

    @patch('safeguard.services.notification_gateway.requests.post')
    def test_http_error(self, mock_post):
        response = Mock(status_code=400, text="bad request")
        response.json.return_value = {"message": "The 'To' number is not a valid phone number."}
        mock_post.return_value = response

        with self.assertRaises(NotificationChannelFailed) as ctx:
            self.provider.place_call(CONTACT, SENDER, "hello")

        self.assertEqual(ctx.exception.channel, "call")
        self.assertIn("not a valid phone number", ctx.exception.detail)

    @patch('safeguard.services.notification_gateway.requests.post')
    def test_network_error(self, mock_post):
        mock_post.side_effect = requests.ConnectionError("unreachable")

        with self.assertRaises(NotificationChannelFailed):
            self.provider.send_sms(CONTACT, SENDER, "hello")

    @patch('safeguard.services.notification_gateway.requests.post')
    def test_response_without_sid(self, mock_post):
        response = Mock(status_code=201)
        response.json.return_value = {}
        mock_post.return_value = response

        with self.assertRaises(NotificationChannelFailed):
            self.provider.send_sms(CONTACT, SENDER, "hello")

    @patch.dict(os.environ, {"TWILIO_ACCOUNT_SID": "ACenv", "TWILIO_AUTH_TOKEN": "tok"})
    def test_config_from_env(self):
        config = TwilioConfig.from_env()
        self.assertEqual(config.account_sid, "ACenv")
        self.assertEqual(config.auth_token, "tok")


if __name__ == '__main__':
    unittest.main()
