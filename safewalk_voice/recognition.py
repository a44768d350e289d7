"""
recognition.py — SafeWalk Voice · Recognition lifecycle controller
==================================================================
Owns start/stop/restart of the speech recognizer and reconciles what we
*want* (intended_listening) with what the engine last *told us*
(engine_running).  The two legitimately drift apart: engines acknowledge
start/stop asynchronously, end sessions on their own after silence, and
drop out on network hiccups.  Every drift is closed by a restart attempt.

Phases
------
    STOPPED ──start()──▶ STARTING ──on_start──▶ ACTIVE
    ACTIVE ──pause_for_processing()──▶ STOPPING_FOR_PROCESSING ──on_end──▶ STOPPED
    any ──network / other error──▶ ERROR_BACKOFF ──delay──▶ STARTING

Restart rules
-------------
• Every restart waits for audio playback to finish, then waits a debounce.
• on_end never replaces a restart that is already scheduled, so an error
  followed by the engine's own end event yields one restart, not two.
• permission-denied / device-unavailable are terminal: intended_listening
  drops to False and the host is told through on_fatal.
• Retries are unbounded; after `degraded_after_failures` consecutive
  failures the controller reports itself as degraded.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from enum import Enum
from typing import Callable, Optional, Sequence

from .config import RecognitionTiming
from .contracts import RecognitionErrorKind, RecognitionResult, SpeechRecognizer
from .errors import RecognitionFatalError, RecognizerAlreadyStarted

log = logging.getLogger("safewalk_voice.recognition")


class RecognitionPhase(str, Enum):
    STOPPED = "Stopped"
    STARTING = "Starting"
    ACTIVE = "Active"
    STOPPING_FOR_PROCESSING = "StoppingForProcessing"
    ERROR_BACKOFF = "ErrorBackoff"


@dataclasses.dataclass
class RecognitionState:
    intended_listening: bool = False
    engine_running: bool = False
    suppressed_for_processing: bool = False
    phase: RecognitionPhase = RecognitionPhase.STOPPED
    consecutive_failures: int = 0
    fatal_error: Optional[RecognitionErrorKind] = None


def _is_already_started(exc: BaseException) -> bool:
    return isinstance(exc, RecognizerAlreadyStarted) or "already started" in str(exc).lower()


class RecognitionController:
    def __init__(
        self,
        recognizer: SpeechRecognizer,
        timing: RecognitionTiming,
        *,
        is_speaking: Callable[[], bool],
        on_transcript: Callable[[str], None],
        on_started: Optional[Callable[[], None]] = None,
        on_fatal: Optional[Callable[[RecognitionErrorKind], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._recognizer = recognizer
        self._timing = timing
        self._is_speaking = is_speaking
        self._on_transcript = on_transcript
        self._on_started = on_started
        self._on_fatal = on_fatal
        self._clock = clock

        self._state = RecognitionState()
        self._phase_since = clock()
        self._restart_task: asyncio.Task | None = None
        self._degraded_reported = False
        self._disposed = False

        recognizer.bind(self)

    # -- introspection ----------------------------------------------------------

    @property
    def state(self) -> RecognitionState:
        """A copy; callers can't mutate the controller's state."""
        return dataclasses.replace(self._state)

    @property
    def phase(self) -> RecognitionPhase:
        return self._state.phase

    @property
    def is_listening(self) -> bool:
        return self._state.intended_listening

    @property
    def is_active(self) -> bool:
        return self._state.engine_running

    @property
    def degraded(self) -> bool:
        return self._state.consecutive_failures >= self._timing.degraded_after_failures

    @property
    def restart_pending(self) -> bool:
        return self._restart_task is not None and not self._restart_task.done()

    def is_healthy(self) -> bool:
        """False when intent and engine disagree and nothing will fix it."""
        s = self._state
        if self._disposed or not s.intended_listening or s.suppressed_for_processing:
            return True
        if self.restart_pending:
            return True
        if s.phase in (RecognitionPhase.STARTING, RecognitionPhase.STOPPING_FOR_PROCESSING):
            return (self._clock() - self._phase_since) < self._timing.start_timeout_sec
        return s.engine_running

    # -- commands from the orchestrator ------------------------------------------

    def start(self) -> None:
        if self._disposed:
            return
        if self._state.intended_listening and (
            self._state.engine_running
            or self._state.phase is RecognitionPhase.STARTING
            or self.restart_pending
        ):
            log.debug("event=start_skipped reason=already_listening phase=%s", self._state.phase.value)
            return
        self._state.intended_listening = True
        self._state.fatal_error = None
        self._attempt_start("listen_requested")

    def stop(self) -> None:
        self._state.intended_listening = False
        self._state.suppressed_for_processing = False
        self._cancel_restart()
        if self._state.engine_running or self._state.phase is not RecognitionPhase.STOPPED:
            self._stop_engine()
        self._set_phase(RecognitionPhase.STOPPED, "listen_stopped", engine_running=False)

    def pause_for_processing(self) -> None:
        self._state.suppressed_for_processing = True
        self._cancel_restart()
        if self._state.engine_running or self._state.phase is RecognitionPhase.STARTING:
            self._set_phase(RecognitionPhase.STOPPING_FOR_PROCESSING, "processing")
            self._stop_engine()

    def resume_after_processing(self) -> None:
        self._state.suppressed_for_processing = False
        if self._disposed or not self._state.intended_listening:
            return
        if self._state.engine_running:
            # Stop not acknowledged yet; on_end will schedule the restart.
            log.debug("event=resume_deferred reason=awaiting_engine_end")
            return
        if self.restart_pending:
            return
        self._schedule_restart(self._timing.restart_debounce_sec, "processing_complete")

    def force_restart(self) -> None:
        """Manual recovery: tear down whatever is running and start fresh."""
        if self._disposed:
            return
        log.info(
            "event=force_restart phase=%s intended=%s engine_running=%s",
            self._state.phase.value, self._state.intended_listening, self._state.engine_running,
        )
        self._cancel_restart()
        if self._state.engine_running or self._state.phase is not RecognitionPhase.STOPPED:
            self._stop_engine()
        self._set_phase(RecognitionPhase.STOPPED, "force_restart", engine_running=False)
        if not self._state.intended_listening:
            log.info("event=force_restart_skipped reason=not_listening")
            return
        self._schedule_restart(self._timing.force_restart_delay_sec, "force_restart")

    def dispose(self) -> None:
        self._disposed = True
        self._state.intended_listening = False
        self._cancel_restart()
        if self._state.engine_running or self._state.phase is not RecognitionPhase.STOPPED:
            self._stop_engine()
        self._set_phase(RecognitionPhase.STOPPED, "disposed", engine_running=False)

    # -- recognizer callbacks -----------------------------------------------------

    def on_start(self) -> None:
        if self._disposed:
            return
        self._state.consecutive_failures = 0
        self._degraded_reported = False
        if self._state.suppressed_for_processing or not self._state.intended_listening:
            # Late start acknowledgement; we no longer want the engine.
            phase = (
                RecognitionPhase.STOPPING_FOR_PROCESSING
                if self._state.suppressed_for_processing
                else RecognitionPhase.STOPPED
            )
            self._set_phase(phase, "late_start", engine_running=True)
            self._stop_engine()
            return
        self._set_phase(RecognitionPhase.ACTIVE, "engine_started", engine_running=True)
        if self._on_started is not None:
            self._on_started()

    def on_result(self, results: Sequence[RecognitionResult], result_index: int) -> None:
        if self._disposed:
            return
        # Earlier indices were already delivered in previous events.
        for result in results[result_index:]:
            if not result.is_final:
                continue
            transcript = result.transcript.strip()
            if transcript:
                log.info("event=final_transcript chars=%d text=%.60r", len(transcript), transcript)
                self._on_transcript(transcript)

    def on_error(self, kind: RecognitionErrorKind | str) -> None:
        if self._disposed:
            return
        if not isinstance(kind, RecognitionErrorKind):
            kind = RecognitionErrorKind.from_raw(kind)
        log.warning(
            "event=recognition_error kind=%s phase=%s intended=%s processing=%s",
            kind.value, self._state.phase.value,
            self._state.intended_listening, self._state.suppressed_for_processing,
        )

        if kind.is_terminal:
            self._state.intended_listening = False
            self._state.fatal_error = kind
            self._cancel_restart()
            self._set_phase(RecognitionPhase.STOPPED, kind.value, engine_running=False)
            log.error("event=recognition_disabled kind=%s", kind.value)
            if self._on_fatal is not None:
                self._on_fatal(kind)
            return

        if kind is RecognitionErrorKind.NO_SPEECH:
            # Normal silence; the engine's own end event drives the restart.
            return

        if kind is RecognitionErrorKind.ABORTED:
            phase = (
                RecognitionPhase.STOPPING_FOR_PROCESSING
                if self._state.phase is RecognitionPhase.STOPPING_FOR_PROCESSING
                else RecognitionPhase.STOPPED
            )
            self._set_phase(phase, kind.value, engine_running=False)
            return

        self._record_failure()
        self._set_phase(RecognitionPhase.ERROR_BACKOFF, kind.value, engine_running=False)
        if self._state.intended_listening and not self._state.suppressed_for_processing:
            delay = (
                self._timing.network_retry_sec
                if kind is RecognitionErrorKind.NETWORK
                else self._timing.error_retry_sec
            )
            self._schedule_restart(delay, f"error_{kind.value}")

    def on_end(self) -> None:
        if self._disposed:
            return
        self._state.engine_running = False
        s = self._state
        log.info(
            "event=recognition_ended intended=%s processing=%s speaking=%s",
            s.intended_listening, s.suppressed_for_processing, self._is_speaking(),
        )
        if not s.intended_listening:
            self._set_phase(RecognitionPhase.STOPPED, "ended")
            return
        if s.suppressed_for_processing:
            self._set_phase(RecognitionPhase.STOPPED, "ended_for_processing")
            return
        if self.restart_pending:
            log.debug("event=restart_already_scheduled phase=%s", s.phase.value)
            return
        self._set_phase(RecognitionPhase.STOPPED, "ended")
        self._schedule_restart(self._timing.restart_debounce_sec, "engine_ended")

    # -- internals ------------------------------------------------------------------

    def _set_phase(
        self,
        phase: RecognitionPhase,
        reason: str,
        *,
        engine_running: Optional[bool] = None,
    ) -> None:
        prev = self._state.phase
        if engine_running is not None:
            self._state.engine_running = engine_running
        if phase is prev:
            return
        self._state.phase = phase
        self._phase_since = self._clock()
        log.info(
            "event=state_change scope=recognition from=%s to=%s reason=%s engine_running=%s",
            prev.value, phase.value, reason, self._state.engine_running,
        )

    def _wants_engine(self) -> bool:
        s = self._state
        return (
            not self._disposed
            and s.intended_listening
            and not s.suppressed_for_processing
            and not s.engine_running
        )

    def _attempt_start(self, reason: str) -> None:
        if not self._wants_engine():
            s = self._state
            log.info(
                "event=restart_skipped reason=%s intended=%s processing=%s engine_running=%s",
                reason, s.intended_listening, s.suppressed_for_processing, s.engine_running,
            )
            return
        self._set_phase(RecognitionPhase.STARTING, reason)
        try:
            self._recognizer.start()
        except RecognitionFatalError as exc:
            log.error("event=recognition_start_refused reason=%s error=%s", reason, exc)
            self.on_error(exc.kind)
        except Exception as exc:
            if _is_already_started(exc):
                log.info("event=recognition_already_running reason=%s", reason)
                self._set_phase(RecognitionPhase.ACTIVE, "already_started", engine_running=True)
                return
            self._record_failure()
            log.warning("event=recognition_start_failed reason=%s error=%s", reason, exc)
            self._set_phase(RecognitionPhase.ERROR_BACKOFF, "start_failed", engine_running=False)
            self._schedule_restart(self._timing.start_retry_sec, "start_retry")

    def _stop_engine(self) -> None:
        try:
            self._recognizer.stop()
        except Exception as exc:
            log.warning("event=recognition_stop_failed error=%s", exc)

    def _record_failure(self) -> None:
        self._state.consecutive_failures += 1
        if self.degraded and not self._degraded_reported:
            self._degraded_reported = True
            log.warning(
                "event=recognition_degraded consecutive_failures=%d",
                self._state.consecutive_failures,
            )

    def _schedule_restart(self, delay: float, reason: str) -> None:
        self._cancel_restart()
        self._restart_task = asyncio.get_running_loop().create_task(
            self._restart_after(delay, reason), name=f"recognition_restart_{reason}",
        )
        log.debug("event=restart_scheduled reason=%s delay_sec=%.2f", reason, delay)

    def _cancel_restart(self) -> None:
        if self._restart_task is not None and not self._restart_task.done():
            self._restart_task.cancel()
            log.debug("event=restart_cancelled")
        self._restart_task = None

    async def _restart_after(self, delay: float, reason: str) -> None:
        poll = self._timing.speech_poll_interval_sec
        while True:
            while self._is_speaking():
                if not self._wants_engine():
                    return
                await asyncio.sleep(poll)
            await asyncio.sleep(delay)
            if not self._is_speaking():
                break
            log.debug("event=restart_waiting reason=speaking")
        # Clear the handle first so a failed start can schedule its own retry.
        self._restart_task = None
        self._attempt_start(reason)
