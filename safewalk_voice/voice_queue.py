"""
voice_queue.py — SafeWalk Voice · Priority voice-job queue
==========================================================
The one and only path to the speaker.  Conversational replies, navigation
announcements and safety check-ins all become VoiceJobs here; a single drain
loop plays them one at a time in (priority, enqueue order).

Priority never preempts: a safety check enqueued while a conversation reply
is playing waits for that reply to finish, then jumps ahead of everything
still waiting.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from .errors import PlaybackStopped, QueueCleared, SynthesisError
from .synthesis import SpeechSynthesisAdapter

log = logging.getLogger("safewalk_voice.queue")

_SUMMARY_CHARS = 50


class VoiceCategory(str, Enum):
    CONVERSATION = "conversation"
    NAVIGATION = "navigation"
    SAFETY_CHECK = "safety-check"

    @property
    def priority(self) -> int:
        """Lower is more urgent."""
        return _PRIORITIES[self]


_PRIORITIES = {
    VoiceCategory.SAFETY_CHECK: 1,
    VoiceCategory.NAVIGATION: 2,
    VoiceCategory.CONVERSATION: 3,
}


@dataclass(frozen=True)
class VoiceJob:
    id: str
    text: str
    category: VoiceCategory
    priority: int
    enqueued_at: float
    seq: int
    completion: "asyncio.Future[None]" = field(repr=False, compare=False)

    def summary(self) -> dict[str, Any]:
        text = self.text[:_SUMMARY_CHARS] + ("..." if len(self.text) > _SUMMARY_CHARS else "")
        return {"category": self.category.value, "text": text, "priority": self.priority}


class VoiceJobQueue:
    """Serialises all speech output.

    enqueue() never blocks; it returns a future that resolves once the job has
    been heard, or rejects with SynthesisError / QueueCleared.
    """

    def __init__(
        self,
        synthesizer: SpeechSynthesisAdapter,
        *,
        inter_job_pause_sec: float = 0.1,
    ) -> None:
        self._synth = synthesizer
        self._pause = inter_job_pause_sec
        self._heap: list[tuple[int, int, VoiceJob]] = []
        self._seq = itertools.count()
        self._draining = False
        self._drain_task: asyncio.Task | None = None
        self._current: VoiceJob | None = None
        self._disposed = False

    # -- public API -----------------------------------------------------------

    def enqueue(
        self,
        text: str,
        category: VoiceCategory = VoiceCategory.CONVERSATION,
    ) -> "asyncio.Future[None]":
        loop = asyncio.get_running_loop()
        future: asyncio.Future[None] = loop.create_future()
        future.add_done_callback(self._observe_outcome)

        if self._disposed:
            log.warning("event=voice_job_rejected reason=disposed category=%s", category.value)
            future.set_exception(QueueCleared("Voice queue disposed"))
            return future

        job = VoiceJob(
            id=f"voice-job-{uuid.uuid4().hex[:12]}",
            text=text,
            category=category,
            priority=category.priority,
            enqueued_at=time.monotonic(),
            seq=next(self._seq),
            completion=future,
        )
        heapq.heappush(self._heap, (job.priority, job.seq, job))
        log.info(
            "event=voice_job_queued job_id=%s category=%s depth=%d text=%.50s",
            job.id, category.value, len(self._heap), text,
        )

        if not self._draining:
            self._draining = True
            self._drain_task = loop.create_task(self._drain(), name="voice_queue_drain")
        return future

    def flush(self) -> int:
        """Reject every pending job and the playing one with QueueCleared.

        Returns the number of futures rejected.
        """
        rejected = 0
        pending = [job for _, _, job in self._heap]
        self._heap.clear()
        if self._current is not None:
            pending.insert(0, self._current)
        log.info("event=voice_queue_flush jobs=%d playing=%s", len(pending), self._current is not None)

        for job in pending:
            if not job.completion.done():
                job.completion.set_exception(QueueCleared())
                rejected += 1
        self._synth.stop()
        return rejected

    def is_busy(self) -> bool:
        return self._draining or bool(self._heap)

    def is_speaking(self) -> bool:
        return self.is_busy() or self._synth.is_speaking()

    def peek(self) -> dict[str, Any]:
        nxt = self._heap[0][2] if self._heap else None
        return {"depth": len(self._heap), "next": nxt.summary() if nxt else None}

    def status(self) -> dict[str, Any]:
        snapshot = self.peek()
        return {
            "is_processing": self._draining,
            "queue_length": snapshot["depth"],
            "next_job": snapshot["next"],
            "current_job": self._current.summary() if self._current else None,
        }

    async def wait_until_quiet(
        self,
        poll_interval: float,
        is_alive: Optional[Callable[[], bool]] = None,
    ) -> bool:
        """Poll until nothing is queued or audible.

        Returns False early (without waiting) once `is_alive` turns false.
        """
        while self.is_speaking():
            if is_alive is not None and not is_alive():
                return False
            await asyncio.sleep(poll_interval)
        return is_alive is None or is_alive()

    def dispose(self) -> None:
        self._disposed = True
        self.flush()

    # -- drain loop -------------------------------------------------------------

    async def _drain(self) -> None:
        try:
            while self._heap:
                _, _, job = heapq.heappop(self._heap)
                if job.completion.done():
                    continue
                self._current = job
                log.info(
                    "event=voice_job_start job_id=%s category=%s waited_ms=%.1f",
                    job.id, job.category.value, (time.monotonic() - job.enqueued_at) * 1000,
                )
                try:
                    await self._execute(job)
                except (SynthesisError, QueueCleared) as exc:
                    if not job.completion.done():
                        job.completion.set_exception(exc)
                else:
                    if not job.completion.done():
                        job.completion.set_result(None)
                        log.info("event=voice_job_complete job_id=%s", job.id)
                finally:
                    self._current = None

                # Small gap between jobs so the audio device never overlaps
                await asyncio.sleep(self._pause)
        finally:
            self._draining = False
            self._drain_task = None
            log.debug("event=voice_queue_idle")

    async def _execute(self, job: VoiceJob) -> None:
        try:
            await self._synth.speak(job.text)
        except PlaybackStopped:
            raise
        except SynthesisError as exc:
            if job.category is not VoiceCategory.NAVIGATION or not self._synth.has_offline:
                log.error("event=voice_job_failed job_id=%s category=%s error=%s", job.id, job.category.value, exc)
                raise
            if job.completion.done():
                raise
            log.warning("event=voice_job_fallback job_id=%s engine=offline error=%s", job.id, exc)
            await self._synth.speak_offline(job.text)

    @staticmethod
    def _observe_outcome(future: "asyncio.Future[None]") -> None:
        # Marks the exception as retrieved so fire-and-forget callers don't
        # trigger "exception was never retrieved" warnings.
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None and not isinstance(exc, QueueCleared):
            log.debug("event=voice_job_outcome error=%s", exc)
