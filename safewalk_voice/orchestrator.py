"""
orchestrator.py — SafeWalk Voice · Conversation orchestrator
============================================================
Top-level turn-taking state machine.  Owns the voice queue, recognition
controller, safety-check scheduler and command interceptor for one walking
session; nothing here is a module-level singleton.

Turn lifecycle
--------------
    IDLE ──final transcript (len > min)──▶ PROCESSING
        • touch activity clock, cancel safety timer, pause recognition
        • intercept special command, or ask the LLM and queue the reply
    PROCESSING ──exit sequence──▶ IDLE
        • wait until the voice queue is quiet
        • resume recognition (smart restart), re-arm the safety timer

The exit sequence lives in a single `finally` so that every branch
(command handled, LLM reply, LLM returned nothing, LLM raised) leaves
PROCESSING exactly once.

Safety check-ins pause recognition while they play and resume it with the
same smart restart; transcripts that arrive in between are dropped.

Stale results
-------------
dispose() bumps a generation counter.  In-flight LLM calls and command
callbacks are allowed to finish, but anything they produce for an older
generation is dropped instead of voiced.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from enum import Enum
from typing import Any, Callable, Mapping, Optional

from pydantic import BaseModel

from .commands import CommandInterceptor, InterceptResult
from .config import VoiceCompanionConfig
from .context import ConversationContext, build_prompt
from .contracts import CommandCallback, CompletionClient, RecognitionErrorKind, SpeechRecognizer
from .errors import QueueCleared, RecognitionFatalError, SynthesisError
from .recognition import RecognitionController
from .safety_check import ActivityClock, SafetyCheckScheduler
from .synthesis import SpeechSynthesisAdapter
from .voice_queue import VoiceCategory, VoiceJobQueue

log = logging.getLogger("safewalk_voice.orchestrator")


class ConversationPhase(str, Enum):
    IDLE = "Idle"
    PROCESSING = "Processing"


class VoiceStatus(BaseModel):
    """Synchronous diagnostics snapshot."""
    is_listening: bool
    is_recognition_active: bool
    is_processing: bool
    is_handling_safe_spot: bool
    is_speaking: bool
    queue_depth: int
    next_job: Optional[dict[str, Any]] = None
    recognition_phase: str
    degraded: bool
    fatal_error: Optional[str] = None


class ConversationOrchestrator:
    def __init__(
        self,
        config: VoiceCompanionConfig,
        *,
        recognizer: SpeechRecognizer,
        completion: CompletionClient,
        synthesizer: SpeechSynthesisAdapter,
        on_fatal: Optional[Callable[[RecognitionFatalError], None]] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._completion = completion
        self._on_fatal_hook = on_fatal

        self.phase = ConversationPhase.IDLE
        self.context = ConversationContext()
        self.activity = ActivityClock(clock)
        self._generation = 0
        self._disposed = False
        self._turn_id = 0
        self._turn_task: asyncio.Task | None = None

        self.queue = VoiceJobQueue(
            synthesizer,
            inter_job_pause_sec=config.voice_queue.inter_job_pause_sec,
        )
        self.recognition = RecognitionController(
            recognizer,
            config.recognition,
            is_speaking=self.queue.is_speaking,
            on_transcript=self.handle_transcript,
            on_started=self._on_recognition_started,
            on_fatal=self._on_recognition_fatal,
            clock=clock,
        )
        self.safety_check = SafetyCheckScheduler(
            self.queue,
            self.activity,
            interval_sec=config.safety_check.interval_sec,
            is_listening=lambda: self.recognition.is_listening,
            is_processing=lambda: self.is_processing,
            context=lambda: self.context,
            low_score_threshold=config.safety_check.low_score_threshold,
            rng=rng,
            on_check_in_start=self._on_check_in_start,
            on_check_in_end=self._on_check_in_end,
        )
        self.commands = CommandInterceptor(self.queue)

    # -- state --------------------------------------------------------------------

    @property
    def is_processing(self) -> bool:
        return self.phase is ConversationPhase.PROCESSING

    def _is_current(self, generation: int) -> bool:
        return not self._disposed and generation == self._generation

    def _set_phase(self, new_phase: ConversationPhase, reason: str) -> None:
        prev = self.phase
        self.phase = new_phase
        log.info(
            "event=state_change scope=conversation turn_id=%d from=%s to=%s reason=%s",
            self._turn_id, prev.value, new_phase.value, reason,
        )

    # -- host API -----------------------------------------------------------------

    def start_listening(self) -> None:
        if self._disposed:
            return
        self.activity.touch()
        self.recognition.start()

    def stop_listening(self) -> None:
        self.recognition.stop()
        self.safety_check.cancel()

    def force_restart(self) -> None:
        self.recognition.force_restart()

    def health_check(self) -> bool:
        """Force a recognition restart if intent and engine have drifted apart."""
        if self._disposed or self.recognition.is_healthy():
            return True
        log.warning(
            "event=health_check_mismatch phase=%s engine_running=%s",
            self.recognition.phase.value, self.recognition.is_active,
        )
        self.recognition.force_restart()
        return False

    def update_context(self, partial: Mapping[str, Any]) -> None:
        self.context = self.context.merged(partial)
        log.debug("event=context_updated keys=%s", ",".join(sorted(partial)))

    def announce_navigation(self, message: str) -> "asyncio.Future[None]":
        log.info("event=navigation_announcement text=%.60r", message)
        return self.queue.enqueue(message, VoiceCategory.NAVIGATION)

    def register_emergency_callback(self, callback: Optional[CommandCallback]) -> None:
        self.commands.register_emergency_callback(callback)

    def register_safe_spot_callback(self, callback: Optional[CommandCallback]) -> None:
        self.commands.register_safe_spot_callback(callback)

    def status(self) -> VoiceStatus:
        state = self.recognition.state
        peek = self.queue.peek()
        return VoiceStatus(
            is_listening=state.intended_listening,
            is_recognition_active=state.engine_running,
            is_processing=self.is_processing,
            is_handling_safe_spot=self.commands.is_handling_safe_spot,
            is_speaking=self.queue.is_speaking(),
            queue_depth=peek["depth"],
            next_job=peek["next"],
            recognition_phase=state.phase.value,
            degraded=self.recognition.degraded,
            fatal_error=state.fatal_error.value if state.fatal_error else None,
        )

    async def dispose(self) -> None:
        """Tear the session down.  Safe to call more than once."""
        if self._disposed:
            return
        log.info("event=session_dispose turn_in_flight=%s", self.is_processing)
        self._disposed = True
        self._generation += 1
        self.safety_check.dispose()
        self.recognition.dispose()
        self.commands.dispose()
        self.queue.dispose()
        # Let the exit sequence of an in-flight turn observe the teardown.
        await asyncio.sleep(0)

    # -- transcript handling --------------------------------------------------------

    def handle_transcript(self, transcript: str) -> bool:
        """Accept or drop a final transcript.  Returns True when accepted."""
        text = transcript.strip()
        if self._disposed:
            return False
        if self.is_processing:
            log.info("event=transcript_dropped reason=processing text=%.60r", text)
            return False
        if self.safety_check.check_in_pending:
            log.info("event=transcript_dropped reason=check_in text=%.60r", text)
            return False
        if len(text) <= self._config.conversation.min_transcript_chars:
            log.debug("event=transcript_dropped reason=too_short text=%r", text)
            return False

        self._turn_id += 1
        self._set_phase(ConversationPhase.PROCESSING, "transcript_accepted")
        self.activity.touch()
        self.safety_check.cancel()
        self.recognition.pause_for_processing()
        self._turn_task = asyncio.get_running_loop().create_task(
            self._process(text, self._generation), name=f"turn_{self._turn_id}",
        )
        return True

    async def _process(self, transcript: str, generation: int) -> None:
        turn_id = self._turn_id
        started = time.perf_counter()
        branch = "unknown"
        try:
            if self.commands.try_intercept(transcript) is InterceptResult.HANDLED:
                branch = "command"
                return

            reply = await self._complete(transcript)
            if not self._is_current(generation):
                branch = "stale"
                log.info("event=reply_discarded reason=session_disposed turn_id=%d", turn_id)
                return
            if not reply:
                branch = "no_reply"
                log.info("event=llm_no_reply turn_id=%d", turn_id)
                return

            branch = "reply"
            try:
                await self.queue.enqueue(reply, VoiceCategory.CONVERSATION)
            except QueueCleared:
                log.info("event=reply_cleared turn_id=%d", turn_id)
            except SynthesisError as exc:
                log.warning("event=reply_playback_failed turn_id=%d error=%s", turn_id, exc)
        except Exception as exc:
            branch = "error"
            log.error("event=turn_error turn_id=%d error=%s", turn_id, exc, exc_info=True)
        finally:
            try:
                if self._is_current(generation):
                    await self.queue.wait_until_quiet(
                        self._config.recognition.speech_poll_interval_sec,
                        lambda: self._is_current(generation),
                    )
            finally:
                self._finish_turn(generation, branch, started)

    async def _complete(self, transcript: str) -> Optional[str]:
        prompt = build_prompt(self.context, transcript, self._config.conversation.system_prompt_intro)
        try:
            reply = await self._completion.complete(prompt)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.error("event=llm_error error=%s", exc)
            return None
        return reply.strip() if reply else None

    def _finish_turn(self, generation: int, branch: str, started: float) -> None:
        self._set_phase(ConversationPhase.IDLE, f"turn_complete_{branch}")
        self._turn_task = None
        log.info(
            "event=turn_complete turn_id=%d branch=%s duration_ms=%.1f",
            self._turn_id, branch, (time.perf_counter() - started) * 1000,
        )
        if not self._is_current(generation):
            return
        self.recognition.resume_after_processing()
        self.safety_check.arm()

    # -- recognition hooks -----------------------------------------------------------

    def _on_recognition_started(self) -> None:
        if not self.safety_check.armed and not self.safety_check.check_in_pending and not self.is_processing:
            self.safety_check.arm()

    def _on_check_in_start(self) -> None:
        # The mic would otherwise hear the check-in and answer it.
        self.recognition.pause_for_processing()

    def _on_check_in_end(self) -> None:
        if self._disposed:
            return
        self.recognition.resume_after_processing()

    def _on_recognition_fatal(self, kind: RecognitionErrorKind) -> None:
        self.safety_check.cancel()
        if self._on_fatal_hook is not None:
            self._on_fatal_hook(RecognitionFatalError(kind))
