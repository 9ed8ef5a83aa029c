"""Incident orchestrator: the detection and alert state machine."""

import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from queue import Queue, Empty
from typing import Any, Callable, Dict, List, Optional

from .models.config import DetectionMode, SessionConfig
from .models.incident import (
    AlertAttempt, AlertOutcome, ChannelOutcome, ChannelStatus, IncidentSnapshot,
    IncidentState, Sample, Verdict
)
from .services.analysis_gateway import AnalysisGateway
from .services.notification_gateway import NotificationGateway
from .services.interfaces import SampleSourceInterface
from .services.timers import TimerService
from .services.error_handler import (
    AnalysisMalformed, AnalysisUnavailable, ConfigurationMissing, ErrorHandler,
    ErrorSeverity, NotificationChannelFailed, SourceUnavailable
)
from .session_config import SessionConfigManager
from .config.defaults import MESSAGE_TEMPLATES, SYSTEM_CONSTANTS
from .logging_config import get_logger, log_incident
from .utils import format_confidence

logger = get_logger("incident_orchestrator")

ACTIVE_SAMPLING_STATES = (IncidentState.IDLE, IncidentState.SAMPLING, IncidentState.ANALYZING)


class EventType(Enum):
    """Events serialized through the orchestrator queue."""
    SAMPLE_TICK = "sample_tick"
    ANALYZE_NOW = "analyze_now"
    SAMPLE_READY = "sample_ready"
    SAMPLE_FAILED = "sample_failed"
    VERDICT = "verdict"
    ANALYSIS_FAILED = "analysis_failed"
    MANUAL_TRIGGER = "manual_trigger"
    ALERT_DONE = "alert_done"
    SETTLE_FIRED = "settle_fired"
    RESET = "reset"
    CONFIG_CHANGED = "config_changed"
    TIMER_CALLBACK = "timer_callback"


@dataclass
class Event:
    type: EventType
    payload: Any = None
    generation: Optional[int] = None


def _spawn_thread(task: Callable[[], None]) -> None:
    threading.Thread(target=task, daemon=True).start()


class IncidentOrchestrator:
    """Owns the incident state machine for one monitoring session.

    Every event (timer ticks, operator commands, worker completions) goes
    through one queue and is handled on one thread, either the loop thread
    started by ``start()`` or the caller of ``run_pending()``. Sample
    acquisition, analysis and alerting run through ``task_runner`` and post
    their results back as events stamped with the generation they started
    in; a reset or settle bumps the generation, so late results from a
    cleared incident are discarded.
    """

    def __init__(self,
                 config_manager: SessionConfigManager,
                 sample_source: SampleSourceInterface,
                 analysis_gateway: AnalysisGateway,
                 notification_gateway: NotificationGateway,
                 error_handler: Optional[ErrorHandler] = None,
                 task_runner: Callable[[Callable[[], None]], None] = _spawn_thread,
                 timer_factory: Callable[..., Any] = threading.Timer):
        self.config_manager = config_manager
        self.sample_source = sample_source
        self.analysis_gateway = analysis_gateway
        self.notification_gateway = notification_gateway
        self.error_handler = error_handler or ErrorHandler(SYSTEM_CONSTANTS["MAX_ERROR_HISTORY"])
        self._task_runner = task_runner

        self._events: "Queue[Event]" = Queue()
        self.timers = TimerService(executor=self._post_timer_callback, timer_factory=timer_factory)

        for component in ("sample_source", "analysis_gateway", "notification_gateway",
                          "incident_orchestrator"):
            self.error_handler.register_component(component)

        # State machine
        self._state_lock = threading.RLock()
        self._state = IncidentState.IDLE
        self._generation = 0
        self._incident_count = 0
        self._verdict: Optional[Verdict] = None
        self._alert_attempt: Optional[AlertAttempt] = None
        self._analysis_outstanding = False
        self._mode = self.config_manager.snapshot().mode
        self.transition_history: deque = deque(maxlen=SYSTEM_CONSTANTS["MAX_TRANSITION_HISTORY"])
        self._subscribers: List[Callable[[IncidentSnapshot], None]] = []

        # Counters
        self.samples_requested = 0
        self.samples_dropped = 0
        self.analyses_completed = 0
        self.alerts_attempted = 0
        self.stale_results_discarded = 0

        # Loop thread
        self.running = False
        self.loop_thread: Optional[threading.Thread] = None
        self.start_time: Optional[datetime] = None

        self._handlers: Dict[EventType, Callable[[Event], None]] = {
            EventType.SAMPLE_TICK: self._on_sample_request,
            EventType.ANALYZE_NOW: self._on_sample_request,
            EventType.SAMPLE_READY: self._on_sample_ready,
            EventType.SAMPLE_FAILED: self._on_sample_failed,
            EventType.VERDICT: self._on_verdict,
            EventType.ANALYSIS_FAILED: self._on_analysis_failed,
            EventType.MANUAL_TRIGGER: self._on_manual_trigger,
            EventType.ALERT_DONE: self._on_alert_done,
            EventType.SETTLE_FIRED: self._on_settle_fired,
            EventType.RESET: self._on_reset,
            EventType.CONFIG_CHANGED: self._on_config_changed,
            EventType.TIMER_CALLBACK: self._on_timer_callback
        }

        self.config_manager.register_change_callback(self._on_config_update)
        self._post(Event(EventType.CONFIG_CHANGED, self.config_manager.snapshot()))

        logger.info("Incident orchestrator initialized")

    # Lifecycle

    def start(self) -> bool:
        """Open the feed and start the event loop thread."""
        if self.running:
            logger.warning("Orchestrator is already running")
            return False

        try:
            self.sample_source.open()
        except SourceUnavailable as e:
            self.error_handler.handle_error("sample_source", e, ErrorSeverity.HIGH)
            logger.warning("Starting without an active feed; sampling will be skipped until it opens")

        self.running = True
        self.start_time = datetime.now()
        self.loop_thread = threading.Thread(target=self._event_loop, daemon=True)
        self.loop_thread.start()

        logger.info("Incident orchestrator started")
        return True

    def stop(self) -> None:
        logger.info("Stopping incident orchestrator...")
        self.running = False
        self.timers.cancel_all()

        if self.loop_thread and self.loop_thread.is_alive():
            self.loop_thread.join(timeout=5.0)

        self.sample_source.close()
        logger.info("Incident orchestrator stopped")

    def _event_loop(self) -> None:
        logger.info("Event loop started")
        while self.running:
            try:
                event = self._events.get(timeout=SYSTEM_CONSTANTS["EVENT_POLL_SECONDS"])
            except Empty:
                continue
            self._dispatch(event)
        logger.info("Event loop ended")

    def run_pending(self, max_events: int = 1000) -> int:
        """Handle queued events on the calling thread; returns how many ran."""
        processed = 0
        while processed < max_events:
            try:
                event = self._events.get(block=False)
            except Empty:
                break
            self._dispatch(event)
            processed += 1
        return processed

    def _post(self, event: Event) -> None:
        self._events.put(event)

    def _post_timer_callback(self, callback: Callable[[], None]) -> None:
        self._post(Event(EventType.TIMER_CALLBACK, callback))

    def _dispatch(self, event: Event) -> None:
        with self._state_lock:
            try:
                self._handlers[event.type](event)
            except Exception as e:
                logger.error(f"Error handling {event.type.value}: {e}", exc_info=True)
                self.error_handler.handle_error("incident_orchestrator", e, ErrorSeverity.HIGH)

    # Operator commands

    def trigger_manual_emergency(self) -> bool:
        self._post(Event(EventType.MANUAL_TRIGGER))
        return True

    def analyze_now(self) -> bool:
        if self.config_manager.snapshot().mode == DetectionMode.MANUAL:
            logger.warning("Analyze request refused: detection mode is manual")
            return False
        self._post(Event(EventType.ANALYZE_NOW))
        return True

    def reset(self) -> bool:
        self._post(Event(EventType.RESET))
        return True

    def set_contact(self, number: str) -> bool:
        return self.config_manager.set_contact(number)

    def set_sender(self, number: str) -> bool:
        return self.config_manager.set_sender(number)

    def set_mode(self, mode) -> bool:
        return self.config_manager.set_mode(mode)

    def set_sample_interval(self, interval_ms: int) -> bool:
        return self.config_manager.set_sample_interval(interval_ms)

    # Observable state

    @property
    def state(self) -> IncidentState:
        return self._state

    def get_snapshot(self) -> IncidentSnapshot:
        with self._state_lock:
            last_error = self.error_handler.get_last_error()
            return IncidentSnapshot(
                state=self._state,
                incident_id=self._incident_count,
                mode=self._mode.value,
                verdict=self._verdict,
                alert_attempt=self._alert_attempt.copy() if self._alert_attempt else None,
                analysis_in_flight=self._analysis_outstanding,
                last_error=f"{last_error.error_type}: {last_error.message}" if last_error else None,
                recent_states=[entry["to"] for entry in list(self.transition_history)[-10:]]
            )

    def subscribe(self, callback: Callable[[IncidentSnapshot], None]) -> None:
        """Call ``callback`` with a fresh snapshot after every state change."""
        if callback not in self._subscribers:
            self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[IncidentSnapshot], None]) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def get_status(self) -> Dict[str, Any]:
        """Get current orchestrator status and statistics."""
        uptime = None
        if self.start_time:
            uptime = (datetime.now() - self.start_time).total_seconds()

        return {
            "running": self.running,
            "uptime_seconds": uptime,
            "incident": self.get_snapshot().to_dict(),
            "counters": {
                "samples_requested": self.samples_requested,
                "samples_dropped": self.samples_dropped,
                "analyses_completed": self.analyses_completed,
                "alerts_attempted": self.alerts_attempted,
                "stale_results_discarded": self.stale_results_discarded
            },
            "services": {
                "sample_source": {"available": self.sample_source.is_available()},
                "analysis_gateway": self.analysis_gateway.get_stats(),
                "notification_gateway": self.notification_gateway.get_notification_stats()
            },
            "config": self.config_manager.export_config(),
            "config_pending": {
                k: (v.value if isinstance(v, DetectionMode) else v)
                for k, v in self.config_manager.pending_changes().items()
            },
            "errors": self.error_handler.get_error_stats()
        }

    # State machine

    def _transition(self, new_state: IncidentState) -> None:
        old_state = self._state
        if new_state == old_state:
            return

        self._state = new_state
        self.transition_history.append({
            "from": old_state.value,
            "to": new_state.value,
            "at": datetime.now().isoformat(),
            "generation": self._generation
        })
        logger.info(f"State {old_state.value} -> {new_state.value}")

        if self._subscribers:
            snapshot = self.get_snapshot()
            for callback in list(self._subscribers):
                try:
                    callback(snapshot)
                except Exception as e:
                    logger.error(f"Error in state subscriber: {e}", exc_info=True)

    def _is_stale(self, event: Event) -> bool:
        if event.generation is not None and event.generation != self._generation:
            self.stale_results_discarded += 1
            logger.info(f"Discarding stale {event.type.value} from generation {event.generation} "
                        f"(current {self._generation})")
            return True
        return False

    def _on_sample_request(self, event: Event) -> None:
        self.samples_requested += 1

        if self._state != IncidentState.IDLE:
            self.samples_dropped += 1
            logger.debug(f"Dropping {event.type.value} in state {self._state.value}")
            return

        if self._analysis_outstanding:
            self.samples_dropped += 1
            logger.debug(f"Dropping {event.type.value}: previous analysis still outstanding")
            return

        self._analysis_outstanding = True
        self._transition(IncidentState.SAMPLING)
        generation = self._generation
        self._task_runner(lambda: self._acquire_sample(generation))

    def _acquire_sample(self, generation: int) -> None:
        """Worker: fetch a sample and post the result."""
        try:
            sample = self.sample_source.get_sample()
        except SourceUnavailable as e:
            self._post(Event(EventType.SAMPLE_FAILED, e, generation))
            return
        except Exception as e:
            self._post(Event(EventType.SAMPLE_FAILED, SourceUnavailable(str(e)), generation))
            return
        self._post(Event(EventType.SAMPLE_READY, sample, generation))

    def _on_sample_ready(self, event: Event) -> None:
        if self._is_stale(event):
            self._analysis_outstanding = False
            return
        if self._state != IncidentState.SAMPLING:
            logger.debug(f"Dropping sample in state {self._state.value}")
            return

        self.error_handler.mark_healthy("sample_source")
        self._verdict = None
        self._transition(IncidentState.ANALYZING)
        sample: Sample = event.payload
        generation = self._generation
        self._task_runner(lambda: self._run_analysis(sample, generation))

    def _on_sample_failed(self, event: Event) -> None:
        self._analysis_outstanding = False
        if self._is_stale(event):
            return

        self.error_handler.handle_error("sample_source", event.payload, ErrorSeverity.MEDIUM)
        if self._state == IncidentState.SAMPLING:
            self._transition(IncidentState.IDLE)

    def _run_analysis(self, sample: Sample, generation: int) -> None:
        """Worker: analyze a sample and post the verdict or failure."""
        try:
            verdict = self.analysis_gateway.analyze(sample)
        except (AnalysisUnavailable, AnalysisMalformed) as e:
            self._post(Event(EventType.ANALYSIS_FAILED, e, generation))
            return
        except Exception as e:
            self._post(Event(EventType.ANALYSIS_FAILED, AnalysisUnavailable(str(e)), generation))
            return
        self._post(Event(EventType.VERDICT, verdict, generation))

    def _on_verdict(self, event: Event) -> None:
        self._analysis_outstanding = False
        if self._is_stale(event) or self._state != IncidentState.ANALYZING:
            return

        verdict: Verdict = event.payload
        self.analyses_completed += 1
        self._verdict = verdict
        self.error_handler.mark_healthy("analysis_gateway")

        if verdict.is_accident:
            self._confirm(verdict.reason or MESSAGE_TEMPLATES["detected_reason"], source="analysis")
        else:
            self._transition(IncidentState.IDLE)

    def _on_analysis_failed(self, event: Event) -> None:
        self._analysis_outstanding = False
        if self._is_stale(event):
            return

        self.error_handler.handle_error("analysis_gateway", event.payload, ErrorSeverity.MEDIUM)
        if self._state == IncidentState.ANALYZING:
            self._transition(IncidentState.IDLE)

    def _on_manual_trigger(self, event: Event) -> None:
        if self._state != IncidentState.IDLE:
            logger.info(f"Manual trigger ignored in state {self._state.value}")
            return

        reason = MESSAGE_TEMPLATES["manual_reason"]
        self._verdict = Verdict(is_accident=True, confidence=1.0, reason=reason)
        self._confirm(reason, source="manual")

    def _confirm(self, reason: str, source: str) -> None:
        self._incident_count += 1
        self._transition(IncidentState.CONFIRMED)
        self.timers.pause_interval()
        log_incident("Incident confirmed", {
            "incident": self._incident_count,
            "source": source,
            "confidence": format_confidence(self._verdict.confidence if self._verdict else None),
            "reason": reason
        })
        self._enter_alerting(reason)

    def _enter_alerting(self, reason: str) -> None:
        if self._alert_attempt is not None:
            logger.warning(f"Alert already attempted for incident {self._alert_attempt.incident_id}; "
                           f"reusing its outcome")
            return

        self.config_manager.lock()
        config = self.config_manager.snapshot()
        attempt = AlertAttempt(
            incident_id=self._incident_count,
            reason=reason,
            contact=config.contact_number,
            sender=config.sender_identity
        )
        self._alert_attempt = attempt
        self.alerts_attempted += 1
        self._transition(IncidentState.ALERTING)
        generation = self._generation

        if not config.has_alert_target():
            missing = "contact number" if not config.contact_number else "sender number"
            error = ConfigurationMissing(f"Cannot alert: {missing} is not set")
            self.error_handler.handle_error("notification_gateway", error, ErrorSeverity.HIGH)
            detail = f"ConfigurationMissing: {error}"
            self._post(Event(EventType.ALERT_DONE,
                             AlertOutcome(sms=ChannelOutcome.failed(detail), call=ChannelOutcome.failed(detail)),
                             generation))
            return

        self._task_runner(lambda: self._run_alert(attempt, generation))

    def _run_alert(self, attempt: AlertAttempt, generation: int) -> None:
        """Worker: send the alert and post the per-channel outcome."""
        try:
            outcome = self.notification_gateway.alert(attempt.contact, attempt.sender, attempt.reason)
        except ConfigurationMissing as e:
            self.error_handler.handle_error("notification_gateway", e, ErrorSeverity.HIGH)
            detail = f"ConfigurationMissing: {e}"
            outcome = AlertOutcome(sms=ChannelOutcome.failed(detail), call=ChannelOutcome.failed(detail))
        except Exception as e:
            self.error_handler.handle_error("notification_gateway", e, ErrorSeverity.HIGH)
            outcome = AlertOutcome(sms=ChannelOutcome.failed(str(e)), call=ChannelOutcome.failed(str(e)))
        else:
            for channel, result in (("sms", outcome.sms), ("call", outcome.call)):
                if result.status == ChannelStatus.FAILED:
                    self.error_handler.handle_error(
                        "notification_gateway",
                        NotificationChannelFailed(channel, result.detail or "unknown error"),
                        ErrorSeverity.HIGH
                    )

        self._post(Event(EventType.ALERT_DONE, outcome, generation))

    def _on_alert_done(self, event: Event) -> None:
        if self._is_stale(event) or self._state != IncidentState.ALERTING:
            return

        outcome: AlertOutcome = event.payload
        attempt = self._alert_attempt
        attempt.sms_outcome = outcome.sms
        attempt.call_outcome = outcome.call
        attempt.completed_at = datetime.now()

        if outcome.sms.status == ChannelStatus.SENT and outcome.call.status == ChannelStatus.SENT:
            self.error_handler.mark_healthy("notification_gateway")

        log_incident("Alert attempt finished", {
            "incident": attempt.incident_id,
            "sms": outcome.sms.status.value,
            "call": outcome.call.status.value
        })

        self.config_manager.unlock()
        settle_delay_ms = self.config_manager.snapshot().settle_delay_ms
        self._transition(IncidentState.SETTLING)

        generation = self._generation
        self.timers.start_delay(
            settle_delay_ms,
            lambda: self._dispatch(Event(EventType.SETTLE_FIRED, generation=generation))
        )

    def _on_settle_fired(self, event: Event) -> None:
        if self._is_stale(event) or self._state != IncidentState.SETTLING:
            return
        log_incident("Incident settled", {"incident": self._incident_count})
        self._return_to_idle()

    def _on_reset(self, event: Event) -> None:
        logger.info(f"Reset requested in state {self._state.value}")
        self.timers.cancel(self.timers.delay_handle)

        interval = self.timers.interval_handle
        if interval is not None:
            # Fresh cadence so no tick armed before the reset can fire
            self.timers.start_interval(interval.period_ms, self._on_interval_tick)

        if self._alert_attempt is not None:
            log_incident("Incident reset by operator", {"incident": self._alert_attempt.incident_id})
        self._return_to_idle()

    def _return_to_idle(self) -> None:
        self._generation += 1
        self._verdict = None
        self._alert_attempt = None
        self.timers.cancel(self.timers.delay_handle)
        if self.config_manager.is_locked:
            self.config_manager.unlock()
        self._transition(IncidentState.IDLE)
        self.timers.resume_interval()

    # Configuration and timers

    def _on_config_update(self, config: SessionConfig) -> None:
        """Config change callback; may run on any thread."""
        self._post(Event(EventType.CONFIG_CHANGED, config))

    def _on_config_changed(self, event: Event) -> None:
        config: SessionConfig = event.payload
        self._mode = config.mode

        if config.mode == DetectionMode.PERIODIC_AUTO:
            interval = self.timers.interval_handle
            if interval is None or interval.period_ms != config.sample_interval_ms:
                self.timers.start_interval(config.sample_interval_ms, self._on_interval_tick)
                logger.info(f"Periodic sampling every {config.sample_interval_ms} ms")
            if self._state not in ACTIVE_SAMPLING_STATES:
                self.timers.pause_interval()
        elif self.timers.interval_handle is not None:
            self.timers.cancel(self.timers.interval_handle)
            logger.info(f"Periodic sampling stopped (mode {config.mode.value})")

    def _on_interval_tick(self) -> None:
        self._dispatch(Event(EventType.SAMPLE_TICK))

    def _on_timer_callback(self, event: Event) -> None:
        event.payload()
