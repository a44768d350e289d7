"""
playback.py — SafeWalk Voice · Local audio output
=================================================
StreamingPlayback  — sounddevice OutputStream fed from memory; play() awaits
                     the last sample.
OfflineSpeech      — pyttsx3 engine on a dedicated worker thread; used only
                     when the network TTS path has failed.

Both are driven from the asyncio thread.  The sounddevice callback and the
pyttsx3 loop run on their own threads and report back through
loop.call_soon_threadsafe.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

import numpy as np
import pyttsx3
import sounddevice as sd

from .config import OfflineSpeechConfig
from .errors import SynthesisError

log = logging.getLogger("safewalk_voice.playback")


def pcm16_to_float32(audio: bytes) -> np.ndarray:
    """Little-endian PCM16 mono → float32 in [-1, 1]."""
    if len(audio) % 2:
        audio = audio[:-1]
    return np.frombuffer(audio, dtype="<i2").astype(np.float32) / 32768.0


class StreamingPlayback:
    """One-shot in-memory audio output via sd.OutputStream.

    play() decodes PCM16, opens a stream, and resolves when the stream's
    finished_callback fires: either the buffer ran dry or stop() was called.
    """

    CHANNELS = 1

    def __init__(self, samplerate: int = 24000, blocksize: int = 1024):
        self.samplerate = samplerate
        self.blocksize = blocksize
        self._buf: list[np.ndarray] = []
        self._lock = threading.Lock()
        self._stream: sd.OutputStream | None = None
        self._active = False
        self._done: asyncio.Future | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def is_playing(self) -> bool:
        return self._active

    async def play(self, audio: bytes) -> None:
        samples = pcm16_to_float32(audio)
        if samples.size == 0:
            return
        self.stop()
        self._loop = asyncio.get_running_loop()
        done = self._loop.create_future()
        self._done = done
        with self._lock:
            self._buf = [samples]
        self._active = True
        started = time.perf_counter()
        try:
            stream = await self._loop.run_in_executor(None, self._open, done)
        except sd.PortAudioError as exc:
            self._active = False
            raise SynthesisError(f"audio output unavailable: {exc}") from exc
        if self._done is not done:
            # stopped while the stream was opening
            self._close(stream)
            return
        self._stream = stream
        try:
            await done
        finally:
            if self._done is done:
                self.stop()
        log.debug(
            "event=playback_complete samples=%d duration_ms=%.1f",
            samples.size, (time.perf_counter() - started) * 1000,
        )

    def stop(self):
        self._active = False
        with self._lock:
            self._buf.clear()
        stream, self._stream = self._stream, None
        self._close(stream)
        self._resolve(self._done)
        self._done = None

    @staticmethod
    def _close(stream: sd.OutputStream | None):
        if stream is None:
            return
        try:
            stream.stop()
            stream.close()
        except sd.PortAudioError as exc:
            log.warning("event=playback_close_error error=%s", exc)

    # -- called via run_in_executor --

    def _open(self, done: asyncio.Future) -> sd.OutputStream:
        stream = sd.OutputStream(
            samplerate=self.samplerate,
            channels=self.CHANNELS,
            dtype="float32",
            callback=self._callback,
            blocksize=self.blocksize,
            finished_callback=lambda: self._on_finished(done),
        )
        stream.start()
        return stream

    # -- sounddevice audio-thread callbacks --

    def _callback(self, outdata: np.ndarray, frames: int, _time, status):
        if status:
            log.warning("event=playback_status status=%s", status)
        needed = frames
        pos = 0
        with self._lock:
            while needed > 0 and self._buf:
                chunk = self._buf[0]
                take = min(needed, len(chunk))
                outdata[pos:pos + take, 0] = chunk[:take]
                pos += take
                needed -= take
                if take < len(chunk):
                    self._buf[0] = chunk[take:]
                else:
                    self._buf.pop(0)
            drained = not self._buf
        if needed > 0:
            outdata[pos:, 0] = 0.0
        if drained:
            raise sd.CallbackStop

    def _on_finished(self, done: asyncio.Future):
        if self._done is done:
            self._active = False
        loop = self._loop
        if loop is not None and not loop.is_closed():
            loop.call_soon_threadsafe(self._resolve, done)

    @staticmethod
    def _resolve(done: Optional[asyncio.Future]):
        if done is not None and not done.done():
            done.set_result(None)


class OfflineSpeech:
    """pyttsx3 wrapper.  The engine lives on one worker thread for its whole life."""

    def __init__(self, config: OfflineSpeechConfig):
        self._config = config
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="offline_tts")
        self._engine: pyttsx3.Engine | None = None
        self._speaking = False

    @property
    def is_speaking(self) -> bool:
        return self._speaking

    def _ensure_engine(self) -> pyttsx3.Engine:
        if self._engine is None:
            engine = pyttsx3.init()
            engine.setProperty("rate", self._config.rate)
            engine.setProperty("volume", self._config.volume)
            voice = self._pick_voice(engine)
            if voice is not None:
                engine.setProperty("voice", voice.id)
            log.info("event=offline_tts_ready voice=%s", voice.name if voice else "default")
            self._engine = engine
        return self._engine

    def _pick_voice(self, engine: pyttsx3.Engine):
        wanted = [w.lower() for w in self._config.preferred_voices]
        for voice in engine.getProperty("voices") or []:
            name = (voice.name or "").lower()
            if any(w in name for w in wanted):
                return voice
        return None

    def _say(self, text: str):
        engine = self._ensure_engine()
        engine.say(text)
        engine.runAndWait()

    async def speak(self, text: str) -> None:
        self._speaking = True
        started = time.perf_counter()
        try:
            await asyncio.get_running_loop().run_in_executor(self._executor, self._say, text)
        except RuntimeError as exc:
            raise SynthesisError(f"offline speech failed: {exc}") from exc
        finally:
            self._speaking = False
        log.info("event=offline_tts_complete duration_ms=%.1f", (time.perf_counter() - started) * 1000)

    def stop(self):
        if self._speaking and self._engine is not None:
            self._engine.stop()
        self._speaking = False

    def close(self):
        self._executor.shutdown(wait=False, cancel_futures=True)
