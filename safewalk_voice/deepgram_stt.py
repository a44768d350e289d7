"""
deepgram_stt.py — SafeWalk Voice · Deepgram live recognizer
===========================================================
Microphone (sounddevice InputStream, int16 mono) → Deepgram v1 live
websocket → RecognitionResult events for the RecognitionController.

One start() opens one session: mic + socket.  The session reports
on_start once both are up and on_end exactly once when it is over,
whichever way it ended.  Failures are reported through on_error first,
mapped onto RecognitionErrorKind:

    HTTP 401 / 403 on the upgrade   → permission-denied  (terminal)
    PortAudio cannot open the mic   → device-unavailable (terminal)
    socket errors / abnormal close  → network
    task cancelled without stop()   → aborted
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Optional
from urllib.parse import urlencode

import numpy as np
import sounddevice as sd
import websockets
from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK, InvalidStatus

from .config import DeepgramConfig
from .contracts import RecognitionErrorKind, RecognitionResult, RecognizerListener
from .errors import RecognitionFatalError, RecognizerAlreadyStarted

log = logging.getLogger("safewalk_voice.deepgram")

DEEPGRAM_LISTEN_URL = "wss://api.deepgram.com/v1/listen"
CONNECT_TIMEOUT_SEC = 10.0

_STOP = None


def build_listen_url(config: DeepgramConfig) -> str:
    params = {
        "model": config.model,
        "language": config.language,
        "encoding": "linear16",
        "sample_rate": config.sample_rate,
        "channels": 1,
        "interim_results": str(config.interim_results).lower(),
        "endpointing": config.endpointing,
        "smart_format": "true",
    }
    return f"{DEEPGRAM_LISTEN_URL}?{urlencode(params)}"


def parse_results(message: dict) -> Optional[RecognitionResult]:
    """Deepgram "Results" message → RecognitionResult, or None for anything else."""
    if message.get("type") != "Results":
        return None
    alternatives = message.get("channel", {}).get("alternatives") or []
    if not alternatives:
        return None
    transcript = (alternatives[0].get("transcript") or "").strip()
    if not transcript:
        return None
    return RecognitionResult(transcript=transcript, is_final=bool(message.get("is_final")))


def classify_failure(exc: BaseException) -> RecognitionErrorKind:
    if isinstance(exc, InvalidStatus):
        if exc.response.status_code in (401, 403):
            return RecognitionErrorKind.PERMISSION_DENIED
        return RecognitionErrorKind.NETWORK
    if isinstance(exc, sd.PortAudioError):
        return RecognitionErrorKind.DEVICE_UNAVAILABLE
    if isinstance(exc, (OSError, ConnectionClosedError, asyncio.TimeoutError)):
        return RecognitionErrorKind.NETWORK
    return RecognitionErrorKind.OTHER


class DeepgramRecognizer:
    def __init__(self, config: DeepgramConfig, api_key: Optional[str] = None):
        self._config = config
        self._api_key = api_key or os.environ["DEEPGRAM_API_KEY"]
        self._listener: RecognizerListener | None = None
        self._task: asyncio.Task | None = None
        self._audio: asyncio.Queue | None = None
        self._stopping = False
        self._session_id = 0

    def bind(self, listener: RecognizerListener) -> None:
        self._listener = listener

    def start(self) -> None:
        if self._listener is None:
            raise RuntimeError("DeepgramRecognizer.start() before bind()")
        if self._task is not None and not self._task.done():
            raise RecognizerAlreadyStarted()
        try:
            sd.check_input_settings(samplerate=self._config.sample_rate, channels=1, dtype="int16")
        except (sd.PortAudioError, ValueError) as exc:
            log.error("event=mic_unavailable error=%s", exc)
            raise RecognitionFatalError(RecognitionErrorKind.DEVICE_UNAVAILABLE) from exc
        self._session_id += 1
        self._stopping = False
        self._audio = asyncio.Queue()
        self._task = asyncio.get_running_loop().create_task(
            self._run(self._session_id, self._audio), name=f"deepgram_session_{self._session_id}",
        )

    def stop(self) -> None:
        if self._task is None or self._task.done() or self._stopping:
            return
        log.info("event=stt_stop_requested session=%d", self._session_id)
        self._stopping = True
        if self._audio is not None:
            self._audio.put_nowait(_STOP)

    # -- session --------------------------------------------------------------

    def _open_mic(self, loop: asyncio.AbstractEventLoop, audio: asyncio.Queue) -> sd.InputStream:
        def audio_callback(indata, frames, time_info, status):
            if status:
                log.warning("event=mic_status status=%s", status)
            loop.call_soon_threadsafe(audio.put_nowait, indata.copy())

        stream = sd.InputStream(
            samplerate=self._config.sample_rate,
            channels=1,
            dtype="int16",
            blocksize=self._config.blocksize,
            callback=audio_callback,
        )
        stream.start()
        return stream

    async def _run(self, session_id: int, audio: asyncio.Queue) -> None:
        listener = self._listener
        mic: sd.InputStream | None = None
        try:
            mic = self._open_mic(asyncio.get_running_loop(), audio)
            log.info("event=mic_started session=%d", session_id)
            async with websockets.connect(
                build_listen_url(self._config),
                additional_headers={"Authorization": f"Token {self._api_key}"},
                open_timeout=CONNECT_TIMEOUT_SEC,
            ) as ws:
                if self._stopping:
                    log.info("event=stt_stopped_before_start session=%d", session_id)
                    return
                log.info("event=stt_connected session=%d", session_id)
                listener.on_start()
                await self._stream(ws, audio, listener)
            log.info("event=stt_closed session=%d stopping=%s", session_id, self._stopping)
        except asyncio.CancelledError:
            if not self._stopping:
                log.warning("event=stt_aborted session=%d", session_id)
                listener.on_error(RecognitionErrorKind.ABORTED)
            raise
        except Exception as exc:
            kind = classify_failure(exc)
            log.warning("event=stt_error session=%d kind=%s error=%s", session_id, kind.value, exc)
            listener.on_error(kind)
        finally:
            if mic is not None:
                try:
                    mic.stop()
                    mic.close()
                except sd.PortAudioError as exc:
                    log.warning("event=mic_close_error error=%s", exc)
            listener.on_end()

    async def _stream(self, ws, audio: asyncio.Queue, listener: RecognizerListener) -> None:
        async def sender():
            try:
                while True:
                    chunk: Optional[np.ndarray] = await audio.get()
                    if chunk is _STOP:
                        await ws.send(json.dumps({"type": "CloseStream"}))
                        return
                    await ws.send(chunk.tobytes())
            except ConnectionClosedOK:
                # server ended the session; the receiver reports it
                return

        async def receiver():
            async for raw in ws:
                if isinstance(raw, bytes):
                    continue
                result = parse_results(json.loads(raw))
                if result is None:
                    continue
                if result.is_final:
                    log.debug("event=stt_final text=%.60r", result.transcript)
                listener.on_result([result], 0)

        sender_task = asyncio.create_task(sender())
        try:
            # Deepgram flushes and closes the socket after CloseStream, which
            # ends the receiver.
            await receiver()
        finally:
            sender_task.cancel()
            try:
                await sender_task
            except asyncio.CancelledError:
                pass
