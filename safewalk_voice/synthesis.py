"""
synthesis.py — SafeWalk Voice · Speech synthesis adapter
========================================================
Turns one piece of text into audible speech: primary backend (ElevenLabs)
→ audio output, with an optional offline engine that the voice queue may
use as a last resort.

Single-stream rule
------------------
Every speak() / speak_offline() call stops whatever is playing *before* it
requests new audio, synchronously with respect to the caller.  is_speaking()
covers the whole window from "request sent" to "last sample played", so a
caller can never race the gap between the HTTP response and playback start.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Optional

from .contracts import AudioOutput, OfflineSpeaker, SpeechBackend
from .errors import PlaybackStopped, SynthesisError

log = logging.getLogger("safewalk_voice.synthesis")


class SpeechSynthesisAdapter:
    def __init__(
        self,
        backend: SpeechBackend,
        output: AudioOutput,
        *,
        voice_id: str,
        offline: Optional[OfflineSpeaker] = None,
    ) -> None:
        self._backend = backend
        self._output = output
        self._voice_id = voice_id
        self._offline = offline
        self._task: asyncio.Task | None = None
        self._in_flight = False
        self._utterance_id = 0

    @property
    def has_offline(self) -> bool:
        return self._offline is not None

    def is_speaking(self) -> bool:
        offline_busy = self._offline is not None and self._offline.is_speaking
        return self._in_flight or self._output.is_playing or offline_busy

    def stop(self) -> None:
        """Silence everything now.  Idempotent."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
            log.info("event=playback_interrupted utterance_id=%d", self._utterance_id)
        self._task = None
        self._in_flight = False
        self._output.stop()
        if self._offline is not None:
            self._offline.stop()

    async def speak(self, text: str) -> None:
        """Synthesize and play `text` on the primary backend."""
        await self._run(self._render(text), engine="primary", text=text)

    async def speak_offline(self, text: str) -> None:
        """Speak `text` on the local engine.  Raises SynthesisError if there is none."""
        if self._offline is None:
            raise SynthesisError("offline speech synthesis is not available")
        await self._run(self._offline.speak(text), engine="offline", text=text)

    async def _run(self, work: Awaitable[None], *, engine: str, text: str) -> None:
        self.stop()
        self._utterance_id += 1
        utterance_id = self._utterance_id
        self._in_flight = True
        task = asyncio.ensure_future(work)
        self._task = task
        started = time.perf_counter()
        log.debug("event=tts_start utterance_id=%d engine=%s text=%.60s", utterance_id, engine, text)

        try:
            # asyncio.wait never raises the task's own CancelledError, so a
            # stop() from elsewhere surfaces as PlaybackStopped, not as a
            # cancellation of the caller.
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            self._output.stop()
            raise
        finally:
            if self._task is task:
                self._task = None
                self._in_flight = False

        if task.cancelled():
            raise PlaybackStopped(f"utterance {utterance_id} stopped")

        exc = task.exception()
        if exc is not None:
            log.warning(
                "event=tts_failed utterance_id=%d engine=%s error=%s",
                utterance_id, engine, exc,
            )
            if isinstance(exc, SynthesisError):
                raise exc
            raise SynthesisError(f"{engine} synthesis failed: {exc}") from exc

        log.info(
            "event=tts_complete utterance_id=%d engine=%s duration_ms=%.1f",
            utterance_id, engine, (time.perf_counter() - started) * 1000,
        )

    async def _render(self, text: str) -> None:
        audio = await self._backend.synthesize(text, self._voice_id)
        if not audio:
            raise SynthesisError("backend returned no audio")
        await self._output.play(audio)
