"""Tests for the incident orchestrator state machine."""

import unittest
import time
import sys
import os

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from safeguard.config.defaults import MESSAGE_TEMPLATES
from safeguard.incident_orchestrator import Event, EventType, IncidentOrchestrator
from safeguard.models.config import DetectionMode
from safeguard.models.incident import (
    AlertOutcome, ChannelOutcome, ChannelStatus, IncidentState, Verdict
)
from safeguard.services.analysis_gateway import AnalysisGateway
from safeguard.services.error_handler import AnalysisUnavailable, SourceUnavailable
from safeguard.services.notification_gateway import NotificationGateway
from safeguard.session_config import SessionConfigManager
from fakes import (
    DeferredRunner, FakeAnalysisProvider, FakeNotificationProvider, FakeSampleSource,
    FakeTimerFactory, inline_runner, make_frame
)

CONTACT = "+15551234567"
SENDER = "+15557654321"
ACCIDENT = {"isAccident": True, "confidence": 0.92, "reason": "damaged vehicle, debris on road"}
NO_ACCIDENT = {"isAccident": False, "confidence": 0.05, "reason": "normal traffic"}


class OrchestratorTestCase(unittest.TestCase):
    """Builds an orchestrator on fakes with deterministic timers."""

    def build(self, runner=inline_runner, responses=(NO_ACCIDENT,), **config):
        self.config_manager = SessionConfigManager()
        if config:
            self.config_manager.update_config(**config)

        self.timer_factory = FakeTimerFactory()
        self.source = FakeSampleSource()
        self.analysis = FakeAnalysisProvider(*responses)
        self.notifier = FakeNotificationProvider()
        self.runner = runner

        self.orchestrator = IncidentOrchestrator(
            self.config_manager,
            self.source,
            AnalysisGateway(self.analysis),
            NotificationGateway(self.notifier),
            task_runner=runner,
            timer_factory=self.timer_factory
        )
        self.states = [self.orchestrator.state]
        self.orchestrator.subscribe(lambda snapshot: self.states.append(snapshot.state))
        self.orchestrator.run_pending()
        return self.orchestrator

    def settle(self):
        """Fire the settle delay and process its callback."""
        self.timer_factory.fire_latest(30.0)
        self.orchestrator.run_pending()

    def drive_to(self, state):
        runner = DeferredRunner()
        orchestrator = self.build(runner=runner, contact_number=CONTACT, sender_identity=SENDER)

        if state == IncidentState.SAMPLING:
            orchestrator.analyze_now()
        elif state == IncidentState.ANALYZING:
            orchestrator.analyze_now()
            orchestrator.run_pending()
            runner.run_next()
        elif state == IncidentState.ALERTING:
            orchestrator.trigger_manual_emergency()
        elif state == IncidentState.SETTLING:
            orchestrator.trigger_manual_emergency()
            orchestrator.run_pending()
            runner.run_all()
        orchestrator.run_pending()

        self.assertEqual(orchestrator.state, state)
        return orchestrator

    def assert_cleared_idle(self):
        snapshot = self.orchestrator.get_snapshot()
        self.assertEqual(snapshot.state, IncidentState.IDLE)
        self.assertIsNone(snapshot.verdict)
        self.assertIsNone(snapshot.alert_attempt)
        self.assertIsNone(self.orchestrator.timers.delay_handle)
        self.assertFalse(self.config_manager.is_locked)


class TestScenarios(OrchestratorTestCase):

    def test_manual_trigger_without_contact(self):
        orchestrator = self.build(mode="manual")

        self.assertTrue(orchestrator.trigger_manual_emergency())
        orchestrator.run_pending()

        snapshot = orchestrator.get_snapshot()
        self.assertEqual(snapshot.state, IncidentState.SETTLING)
        self.assertEqual(snapshot.verdict, Verdict(True, 1.0, "Manual activation."))
        self.assertEqual(self.notifier.sms, [])
        self.assertEqual(self.notifier.calls, [])

        attempt = snapshot.alert_attempt
        self.assertEqual(attempt.sms_outcome.status, ChannelStatus.FAILED)
        self.assertEqual(attempt.call_outcome.status, ChannelStatus.FAILED)
        self.assertIn("ConfigurationMissing", attempt.sms_outcome.detail)
        self.assertIn("ConfigurationMissing", snapshot.last_error)

        self.settle()
        self.assert_cleared_idle()

    def test_analyze_now_full_incident(self):
        orchestrator = self.build(responses=(ACCIDENT,), contact_number=CONTACT, sender_identity=SENDER)

        self.assertTrue(orchestrator.analyze_now())
        orchestrator.run_pending()

        self.assertEqual(len(self.notifier.sms), 1)
        self.assertEqual(len(self.notifier.calls), 1)
        to, from_, body = self.notifier.sms[0]
        self.assertEqual((to, from_), (CONTACT, SENDER))
        self.assertIn("damaged vehicle, debris on road", body)
        self.assertIn("damaged vehicle, debris on road", self.notifier.calls[0][2])

        attempt = orchestrator.get_snapshot().alert_attempt
        self.assertEqual(attempt.sms_outcome.status, ChannelStatus.SENT)
        self.assertEqual(attempt.sms_outcome.reference_id, "SM1")
        self.assertEqual(attempt.call_outcome.reference_id, "CA1")
        self.assertTrue(attempt.is_complete)

        self.settle()

        self.assertEqual(self.states, [
            IncidentState.IDLE,
            IncidentState.SAMPLING,
            IncidentState.ANALYZING,
            IncidentState.CONFIRMED,
            IncidentState.ALERTING,
            IncidentState.SETTLING,
            IncidentState.IDLE
        ])
        self.assert_cleared_idle()

    def test_periodic_negative_verdicts_keep_sampling(self):
        orchestrator = self.build(mode="periodic_auto", sample_interval_ms=5000)

        for _ in range(3):
            self.timer_factory.fire_latest(5.0)
            orchestrator.run_pending()

        self.assertEqual(len(self.analysis.requests), 3)
        self.assertTrue(set(self.states) <= {
            IncidentState.IDLE, IncidentState.SAMPLING, IncidentState.ANALYZING
        })
        self.assertEqual(orchestrator.state, IncidentState.IDLE)
        self.assertTrue(orchestrator.timers.interval_handle.active)
        self.assertEqual(len(self.timer_factory.live(5.0)), 1)
        self.assertEqual(orchestrator.analyses_completed, 3)

    def test_tick_while_analysis_in_flight_is_dropped(self):
        runner = DeferredRunner()
        orchestrator = self.build(runner=runner, mode="periodic_auto", sample_interval_ms=5000)

        self.timer_factory.fire_latest(5.0)
        orchestrator.run_pending()
        self.assertEqual(orchestrator.state, IncidentState.SAMPLING)

        runner.run_next()
        orchestrator.run_pending()
        self.assertEqual(orchestrator.state, IncidentState.ANALYZING)
        self.assertTrue(orchestrator.get_snapshot().analysis_in_flight)

        self.timer_factory.fire_latest(5.0)
        orchestrator.analyze_now()
        orchestrator.run_pending()

        self.assertEqual(orchestrator.samples_dropped, 2)
        self.assertEqual(len(runner.tasks), 1)
        self.assertEqual(self.source.requests, 1)

        runner.run_all()
        orchestrator.run_pending()

        self.assertEqual(len(self.analysis.requests), 1)
        self.assertEqual(orchestrator.state, IncidentState.IDLE)
        self.assertFalse(orchestrator.get_snapshot().analysis_in_flight)


class TestIncidentLifecycle(OrchestratorTestCase):

    def test_negative_verdict_returns_to_idle_without_alert(self):
        orchestrator = self.build(contact_number=CONTACT, sender_identity=SENDER)

        orchestrator.analyze_now()
        orchestrator.run_pending()

        snapshot = orchestrator.get_snapshot()
        self.assertEqual(snapshot.state, IncidentState.IDLE)
        self.assertFalse(snapshot.verdict.is_accident)
        self.assertIsNone(snapshot.alert_attempt)
        self.assertNotIn(IncidentState.ALERTING, self.states)
        self.assertEqual(self.notifier.sms, [])

    def test_source_failure_returns_to_idle(self):
        orchestrator = self.build()
        self.source.error = SourceUnavailable("camera unplugged")

        orchestrator.analyze_now()
        orchestrator.run_pending()

        snapshot = orchestrator.get_snapshot()
        self.assertEqual(snapshot.state, IncidentState.IDLE)
        self.assertIn("SourceUnavailable", snapshot.last_error)
        self.assertEqual(self.analysis.requests, [])
        self.assertFalse(snapshot.analysis_in_flight)

    def test_analysis_failure_opens_no_incident(self):
        orchestrator = self.build(responses=(AnalysisUnavailable("provider down"),))

        orchestrator.analyze_now()
        orchestrator.run_pending()

        snapshot = orchestrator.get_snapshot()
        self.assertEqual(snapshot.state, IncidentState.IDLE)
        self.assertEqual(snapshot.incident_id, 0)
        self.assertIn("AnalysisUnavailable", snapshot.last_error)

    def test_malformed_response_opens_no_incident(self):
        orchestrator = self.build(responses=("I think it might be an accident",))

        orchestrator.analyze_now()
        orchestrator.run_pending()

        self.assertEqual(orchestrator.state, IncidentState.IDLE)
        self.assertIn("AnalysisMalformed", orchestrator.get_snapshot().last_error)

    def test_empty_accident_reason_gets_default(self):
        orchestrator = self.build(
            responses=({"isAccident": True, "confidence": 0.7, "reason": "  "},),
            contact_number=CONTACT, sender_identity=SENDER
        )

        orchestrator.analyze_now()
        orchestrator.run_pending()

        attempt = orchestrator.get_snapshot().alert_attempt
        self.assertEqual(attempt.reason, MESSAGE_TEMPLATES["detected_reason"])
        self.assertIn(MESSAGE_TEMPLATES["detected_reason"], self.notifier.sms[0][2])

    def test_sms_failure_does_not_skip_call(self):
        orchestrator = self.build(contact_number=CONTACT, sender_identity=SENDER)
        self.notifier.fail_sms = True

        orchestrator.trigger_manual_emergency()
        orchestrator.run_pending()

        attempt = orchestrator.get_snapshot().alert_attempt
        self.assertEqual(attempt.sms_outcome.status, ChannelStatus.FAILED)
        self.assertEqual(attempt.call_outcome.status, ChannelStatus.SENT)
        self.assertEqual(orchestrator.state, IncidentState.SETTLING)
        self.assertIn("NotificationChannelFailed", orchestrator.get_snapshot().last_error)

    def test_analyze_now_refused_in_manual_mode(self):
        orchestrator = self.build(mode="manual")

        self.assertFalse(orchestrator.analyze_now())
        orchestrator.run_pending()

        self.assertEqual(orchestrator.state, IncidentState.IDLE)
        self.assertEqual(self.source.requests, 0)

    def test_incident_ids_increase(self):
        orchestrator = self.build(contact_number=CONTACT, sender_identity=SENDER)

        orchestrator.trigger_manual_emergency()
        orchestrator.run_pending()
        self.assertEqual(orchestrator.get_snapshot().incident_id, 1)
        self.settle()

        orchestrator.trigger_manual_emergency()
        orchestrator.run_pending()
        self.assertEqual(orchestrator.get_snapshot().alert_attempt.incident_id, 2)

    def test_status_payload(self):
        orchestrator = self.build(responses=(ACCIDENT,), contact_number=CONTACT, sender_identity=SENDER)
        orchestrator.analyze_now()
        orchestrator.run_pending()

        status = orchestrator.get_status()

        self.assertFalse(status["running"])
        self.assertEqual(status["incident"]["state"], "settling")
        self.assertEqual(status["incident"]["verdict"]["confidence_percent"], 92)
        self.assertEqual(status["counters"]["alerts_attempted"], 1)
        self.assertEqual(status["services"]["notification_gateway"]["sms_sent"], 1)
        self.assertEqual(status["config"]["contact_number"], CONTACT)


class TestAlertGuard(OrchestratorTestCase):

    def test_manual_trigger_during_analysis_is_ignored(self):
        runner = DeferredRunner()
        orchestrator = self.build(runner=runner, responses=(ACCIDENT,),
                                  contact_number=CONTACT, sender_identity=SENDER)

        orchestrator.analyze_now()
        orchestrator.run_pending()
        runner.run_next()
        orchestrator.run_pending()
        self.assertEqual(orchestrator.state, IncidentState.ANALYZING)

        orchestrator.trigger_manual_emergency()
        orchestrator.run_pending()
        self.assertEqual(orchestrator.state, IncidentState.ANALYZING)

        runner.run_next()
        orchestrator.run_pending()
        self.assertEqual(orchestrator.state, IncidentState.ALERTING)

        orchestrator.trigger_manual_emergency()
        orchestrator.run_pending()
        runner.run_all()
        orchestrator.run_pending()

        self.assertEqual(len(self.notifier.sms), 1)
        self.assertEqual(len(self.notifier.calls), 1)
        self.assertEqual(orchestrator.alerts_attempted, 1)
        self.assertEqual(orchestrator.get_snapshot().alert_attempt.reason, ACCIDENT["reason"])

    def test_stale_verdict_after_manual_trigger(self):
        runner = DeferredRunner()
        orchestrator = self.build(runner=runner, responses=(ACCIDENT,),
                                  contact_number=CONTACT, sender_identity=SENDER)

        orchestrator.analyze_now()
        orchestrator.run_pending()
        runner.run_next()
        orchestrator.run_pending()
        analysis_task = runner.tasks.pop()

        orchestrator.reset()
        orchestrator.trigger_manual_emergency()
        orchestrator.run_pending()
        self.assertEqual(orchestrator.state, IncidentState.ALERTING)

        analysis_task()
        runner.run_all()
        orchestrator.run_pending()

        self.assertEqual(len(self.notifier.sms), 1)
        self.assertEqual(orchestrator.get_snapshot().alert_attempt.reason, "Manual activation.")
        self.assertEqual(orchestrator.stale_results_discarded, 1)
        self.assertEqual(orchestrator.state, IncidentState.SETTLING)

    def test_alerting_reentry_reuses_attempt(self):
        runner = DeferredRunner()
        orchestrator = self.build(runner=runner, contact_number=CONTACT, sender_identity=SENDER)

        orchestrator.trigger_manual_emergency()
        orchestrator.run_pending()
        attempt = orchestrator._alert_attempt

        orchestrator._enter_alerting("second reason")

        self.assertIs(orchestrator._alert_attempt, attempt)
        self.assertEqual(orchestrator.get_snapshot().alert_attempt.reason, "Manual activation.")
        self.assertEqual(len(runner.tasks), 1)


class TestSnapshot(OrchestratorTestCase):

    def test_held_snapshot_unchanged_by_alert_done(self):
        runner = DeferredRunner()
        orchestrator = self.build(runner=runner, contact_number=CONTACT, sender_identity=SENDER)

        orchestrator.trigger_manual_emergency()
        orchestrator.run_pending()
        held = orchestrator.get_snapshot()
        self.assertEqual(held.state, IncidentState.ALERTING)

        runner.run_all()
        orchestrator.run_pending()

        self.assertEqual(orchestrator.state, IncidentState.SETTLING)
        self.assertEqual(held.state, IncidentState.ALERTING)
        self.assertEqual(held.alert_attempt.sms_outcome.status, ChannelStatus.PENDING)
        self.assertEqual(held.alert_attempt.call_outcome.status, ChannelStatus.PENDING)
        self.assertIsNone(held.alert_attempt.completed_at)
        self.assertEqual(held.to_dict()['alert_attempt']['sms_outcome']['status'], 'pending')

    def test_changing_snapshot_leaves_orchestrator_untouched(self):
        orchestrator = self.build(contact_number=CONTACT, sender_identity=SENDER)

        orchestrator.trigger_manual_emergency()
        orchestrator.run_pending()
        snapshot = orchestrator.get_snapshot()
        snapshot.alert_attempt.sms_outcome = ChannelOutcome.failed("changed by caller")
        snapshot.alert_attempt.call_outcome.status = ChannelStatus.FAILED
        snapshot.alert_attempt.reason = "changed by caller"

        attempt = orchestrator.get_snapshot().alert_attempt
        self.assertEqual(attempt.sms_outcome.status, ChannelStatus.SENT)
        self.assertEqual(attempt.sms_outcome.reference_id, "SM1")
        self.assertEqual(attempt.call_outcome.status, ChannelStatus.SENT)
        self.assertEqual(attempt.reason, "Manual activation.")


class TestReset(OrchestratorTestCase):

    def test_reset_from_every_state(self):
        for state in (IncidentState.IDLE, IncidentState.SAMPLING, IncidentState.ANALYZING,
                      IncidentState.ALERTING, IncidentState.SETTLING):
            with self.subTest(state=state):
                orchestrator = self.drive_to(state)

                self.assertTrue(orchestrator.reset())
                orchestrator.run_pending()

                self.assert_cleared_idle()
                self.assertEqual(self.timer_factory.live(30.0), [])

    def test_late_alert_result_after_reset_is_discarded(self):
        orchestrator = self.drive_to(IncidentState.ALERTING)

        orchestrator.reset()
        orchestrator.run_pending()
        self.runner.run_all()
        orchestrator.run_pending()

        self.assert_cleared_idle()
        self.assertEqual(orchestrator.stale_results_discarded, 1)
        # Reset does not cancel the network call already underway
        self.assertEqual(len(self.notifier.sms), 1)

    def test_late_settle_timer_cannot_end_next_incident(self):
        orchestrator = self.build(contact_number=CONTACT, sender_identity=SENDER)
        orchestrator.trigger_manual_emergency()
        orchestrator.run_pending()

        # Settle timer fires but its callback is still queued when reset runs
        self.timer_factory.fire_latest(30.0)
        orchestrator._dispatch(Event(EventType.RESET))
        orchestrator._dispatch(Event(EventType.MANUAL_TRIGGER))
        orchestrator.run_pending()

        snapshot = orchestrator.get_snapshot()
        self.assertEqual(snapshot.state, IncidentState.SETTLING)
        self.assertEqual(snapshot.alert_attempt.incident_id, 2)

    def test_stale_analysis_after_reset(self):
        runner = DeferredRunner()
        orchestrator = self.build(runner=runner, responses=(ACCIDENT,),
                                  contact_number=CONTACT, sender_identity=SENDER)

        orchestrator.analyze_now()
        orchestrator.run_pending()
        runner.run_next()
        orchestrator.run_pending()

        orchestrator.reset()
        orchestrator.run_pending()
        self.assertTrue(orchestrator.get_snapshot().analysis_in_flight)

        orchestrator.analyze_now()
        orchestrator.run_pending()
        self.assertEqual(orchestrator.samples_dropped, 1)

        runner.run_all()
        orchestrator.run_pending()

        self.assert_cleared_idle()
        self.assertFalse(orchestrator.get_snapshot().analysis_in_flight)
        self.assertEqual(self.notifier.sms, [])

        orchestrator.analyze_now()
        orchestrator.run_pending()
        self.assertEqual(orchestrator.state, IncidentState.SAMPLING)


class TestTransitionTotality(OrchestratorTestCase):

    def event_for(self, event_type):
        payloads = {
            EventType.SAMPLE_READY: make_frame(),
            EventType.SAMPLE_FAILED: SourceUnavailable("gone"),
            EventType.VERDICT: Verdict(False, 0.2, "clear"),
            EventType.ANALYSIS_FAILED: AnalysisUnavailable("down"),
            EventType.ALERT_DONE: AlertOutcome(ChannelOutcome.sent("SM9"), ChannelOutcome.sent("CA9")),
            EventType.CONFIG_CHANGED: self.config_manager.snapshot(),
            EventType.TIMER_CALLBACK: lambda: None
        }
        return Event(event_type, payloads.get(event_type))

    def test_every_event_in_every_state(self):
        for state in (IncidentState.IDLE, IncidentState.SAMPLING, IncidentState.ANALYZING,
                      IncidentState.ALERTING, IncidentState.SETTLING):
            for event_type in EventType:
                with self.subTest(state=state, event=event_type):
                    orchestrator = self.drive_to(state)

                    orchestrator._dispatch(self.event_for(event_type))
                    orchestrator.run_pending()

                    self.assertIsInstance(orchestrator.state, IncidentState)
                    errors = orchestrator.error_handler.get_error_stats()["component_error_counts"]
                    self.assertEqual(errors["incident_orchestrator"], 0)


class TestPeriodicAndConfig(OrchestratorTestCase):

    def test_interval_paused_during_incident(self):
        runner = DeferredRunner()
        orchestrator = self.build(runner=runner, mode="periodic_auto", sample_interval_ms=5000,
                                  contact_number=CONTACT, sender_identity=SENDER)

        orchestrator.trigger_manual_emergency()
        orchestrator.run_pending()
        self.assertTrue(orchestrator.timers.interval_handle.paused)

        self.timer_factory.fire_latest(5.0)
        self.assertEqual(orchestrator.run_pending(), 0)

        runner.run_all()
        orchestrator.run_pending()
        self.settle()

        self.assertFalse(orchestrator.timers.interval_handle.paused)
        self.timer_factory.fire_latest(5.0)
        orchestrator.run_pending()
        self.assertEqual(orchestrator.state, IncidentState.SAMPLING)

    def test_mode_change_starts_and_stops_interval(self):
        orchestrator = self.build()
        self.assertIsNone(orchestrator.timers.interval_handle)

        orchestrator.set_mode(DetectionMode.PERIODIC_AUTO)
        orchestrator.run_pending()
        self.assertEqual(orchestrator.timers.interval_handle.period_ms, 5000)

        orchestrator.set_sample_interval(2000)
        orchestrator.run_pending()
        self.assertEqual(orchestrator.timers.interval_handle.period_ms, 2000)
        self.assertEqual(len(self.timer_factory.live()), 1)

        orchestrator.set_mode("on_demand")
        orchestrator.run_pending()
        self.assertIsNone(orchestrator.timers.interval_handle)
        self.assertEqual(self.timer_factory.live(), [])
        self.assertEqual(orchestrator.get_snapshot().mode, "on_demand")

    def test_reset_rearms_interval(self):
        orchestrator = self.build(mode="periodic_auto", sample_interval_ms=5000)
        old_timer = self.timer_factory.live(5.0)[0]

        orchestrator.reset()
        orchestrator.run_pending()

        self.assertTrue(old_timer.cancelled)
        self.assertEqual(len(self.timer_factory.live(5.0)), 1)

    def test_config_changes_queue_during_alerting(self):
        runner = DeferredRunner()
        orchestrator = self.build(runner=runner, contact_number=CONTACT, sender_identity=SENDER)

        orchestrator.trigger_manual_emergency()
        orchestrator.run_pending()
        self.assertEqual(orchestrator.state, IncidentState.ALERTING)

        self.assertFalse(orchestrator.set_contact("+15550001111"))
        self.assertEqual(self.config_manager.snapshot().contact_number, CONTACT)
        self.assertEqual(orchestrator.get_status()["config_pending"], {"contact_number": "+15550001111"})

        runner.run_all()
        orchestrator.run_pending()

        self.assertEqual(self.notifier.sms[0][0], CONTACT)
        self.assertEqual(orchestrator.state, IncidentState.SETTLING)
        self.assertEqual(self.config_manager.snapshot().contact_number, "+15550001111")


class TestEventLoopThread(OrchestratorTestCase):

    def test_start_and_stop(self):
        orchestrator = self.build(contact_number=CONTACT, sender_identity=SENDER)

        self.assertTrue(orchestrator.start())
        self.assertFalse(orchestrator.start())
        self.assertTrue(self.source.opened)

        orchestrator.trigger_manual_emergency()
        deadline = time.time() + 3.0
        while orchestrator.state != IncidentState.SETTLING and time.time() < deadline:
            time.sleep(0.01)

        orchestrator.stop()

        self.assertEqual(orchestrator.state, IncidentState.SETTLING)
        self.assertFalse(orchestrator.running)
        self.assertFalse(self.source.opened)
        self.assertEqual(self.timer_factory.live(), [])


if __name__ == '__main__':
    unittest.main()
