"""
safety_check.py — SafeWalk Voice · Periodic safety check-ins
============================================================
After a quiet period with no user activity the companion asks whether the
user is okay.  The timer is a single asyncio task; arm() always replaces it,
so user speech (which re-arms from zero) keeps a check-in from landing in
the middle of a conversation.

While a check-in plays the owner is told through on_check_in_start /
on_check_in_end, so it can stop listening to its own voice.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Callable, Optional

from .context import ConversationContext
from .errors import QueueCleared, SynthesisError
from .voice_queue import VoiceCategory, VoiceJobQueue

log = logging.getLogger("safewalk_voice.safety_check")

GENERIC_CHECK_INS: tuple[str, ...] = (
    "Hey, are you safe?",
    "Just checking in - how are you doing?",
    "Everything okay? I haven't heard from you in a while.",
    "Quick safety check - are you alright?",
    "Hey there, just making sure you're doing well.",
)
LOW_SAFETY_SCORE_CHECK_IN = "Hey, are you safe? You're in an area with lower safety scores."
DANGER_ZONE_CHECK_IN = (
    "Hey, are you safe? I noticed there are some areas requiring extra attention on your route."
)


def select_check_in_message(
    context: ConversationContext,
    rng: random.Random,
    low_score_threshold: int = 60,
) -> str:
    """Context-specific warning when the route looks risky, else a random phrase."""
    if context.safety_score is not None and context.safety_score < low_score_threshold:
        return LOW_SAFETY_SCORE_CHECK_IN
    if context.route_details is not None and context.route_details.danger_zones > 0:
        return DANGER_ZONE_CHECK_IN
    return rng.choice(GENERIC_CHECK_INS)


class ActivityClock:
    """Timestamp of the last thing the user (or a check-in) did."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self.last_activity = clock()

    def touch(self) -> None:
        self.last_activity = self._clock()

    def elapsed(self) -> float:
        return self._clock() - self.last_activity


class SafetyCheckScheduler:
    def __init__(
        self,
        queue: VoiceJobQueue,
        activity: ActivityClock,
        *,
        interval_sec: float,
        is_listening: Callable[[], bool],
        is_processing: Callable[[], bool],
        context: Callable[[], ConversationContext],
        low_score_threshold: int = 60,
        rng: Optional[random.Random] = None,
        on_check_in_start: Optional[Callable[[], None]] = None,
        on_check_in_end: Optional[Callable[[], None]] = None,
    ) -> None:
        self._queue = queue
        self._activity = activity
        self._interval = interval_sec
        self._is_listening = is_listening
        self._is_processing = is_processing
        self._context = context
        self._low_score_threshold = low_score_threshold
        self._rng = rng or random.Random()
        self._on_check_in_start = on_check_in_start
        self._on_check_in_end = on_check_in_end
        self._timer: asyncio.Task | None = None
        self._check_in: asyncio.Task | None = None
        self._disposed = False

    @property
    def armed(self) -> bool:
        return self._timer is not None and not self._timer.done()

    @property
    def check_in_pending(self) -> bool:
        return self._check_in is not None and not self._check_in.done()

    def arm(self) -> None:
        """(Re)start the quiet-period timer from zero."""
        self.cancel()
        if self._disposed or not self._is_listening():
            log.debug("event=safety_check_not_armed disposed=%s", self._disposed)
            return
        self._timer = asyncio.get_running_loop().create_task(
            self._fire_after(self._interval), name="safety_check_timer",
        )
        log.debug("event=safety_check_armed interval_sec=%.1f", self._interval)

    def cancel(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None

    def dispose(self) -> None:
        self._disposed = True
        self.cancel()

    async def _fire_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._timer = None
        self._fire()

    def _fire(self) -> None:
        if self._disposed or not self._is_listening():
            log.info("event=safety_check_cancelled reason=not_listening")
            return

        if self._is_processing() or self._queue.is_speaking():
            log.info(
                "event=safety_check_deferred processing=%s speaking=%s",
                self._is_processing(), self._queue.is_speaking(),
            )
            self.arm()
            return

        elapsed = self._activity.elapsed()
        if elapsed < self._interval:
            log.info("event=safety_check_rescheduled since_activity_sec=%.1f", elapsed)
            self.arm()
            return

        message = select_check_in_message(self._context(), self._rng, self._low_score_threshold)
        log.info("event=safety_check_triggered since_activity_sec=%.1f text=%r", elapsed, message)
        if self._on_check_in_start is not None:
            self._on_check_in_start()
        future = self._queue.enqueue(message, VoiceCategory.SAFETY_CHECK)
        self._activity.touch()
        self._check_in = asyncio.get_running_loop().create_task(
            self._rearm_when_done(future), name="safety_check_followup",
        )

    async def _rearm_when_done(self, future: "asyncio.Future[None]") -> None:
        try:
            await future
        except QueueCleared:
            log.info("event=safety_check_cleared")
        except SynthesisError as exc:
            log.warning("event=safety_check_failed error=%s", exc)
        if self._on_check_in_end is not None:
            self._on_check_in_end()
        if not self._disposed:
            self.arm()
