"""
bot.py — SafeWalk Voice · Companion runner
==========================================
One process per walking session.  Wires the concrete services into a
ConversationOrchestrator, starts listening and serves the control plane.

Usage
-----
    safewalk-voice [--config voice.json] [--host 127.0.0.1] [--port 8765]

Pipeline
--------
sounddevice mic
    → DeepgramRecognizer (nova-3, live websocket)
    → RecognitionController → ConversationOrchestrator
    → GroqCompletionClient (llama-3.3-70b-versatile)
    → VoiceJobQueue → ElevenLabsBackend (pcm_24000) → StreamingPlayback
                    ↘ OfflineSpeech (pyttsx3) for navigation when the network is down

Environment
-----------
GROQ_API_KEY, ELEVENLABS_API_KEY, DEEPGRAM_API_KEY   required
EMERGENCY_WEBHOOK_URL, SAFE_SPOT_WEBHOOK_URL         optional; POSTed on voice commands
HEALTH_CHECK_INTERVAL_SEC                            optional (default 5)
VOICE_DEBUG                                          DEBUG logging when set
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import time
from typing import Optional

import httpx
import uvicorn
from dotenv import load_dotenv

from .config import VoiceCompanionConfig
from .contracts import RecognitionErrorKind
from .deepgram_stt import DeepgramRecognizer
from .elevenlabs import ElevenLabsBackend
from .errors import RecognitionFatalError
from .llm import GroqCompletionClient
from .orchestrator import ConversationOrchestrator
from .playback import OfflineSpeech, StreamingPlayback
from .server import create_app
from .synthesis import SpeechSynthesisAdapter

log = logging.getLogger("safewalk_voice.bot")

HEALTH_CHECK_INTERVAL_SEC = 5.0
WEBHOOK_TIMEOUT_SEC = 10.0


def _configure_logging() -> None:
    logging.basicConfig(
        level=logging.DEBUG if os.getenv("VOICE_DEBUG") else logging.INFO,
        format="%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s – %(message)s",
        datefmt="%H:%M:%S",
    )


# ---------------------------------------------------------------------------
# Host callbacks
# ---------------------------------------------------------------------------

class WebhookNotifier:
    """Delivers voice-command requests to the host app.

    Without a URL the request is only logged, which still counts as handled.
    A non-2xx answer raises, so the interceptor speaks its failure message.
    """

    def __init__(self, orchestrator: ConversationOrchestrator, client: httpx.AsyncClient):
        self._orchestrator = orchestrator
        self._client = client
        self.emergency_url = os.getenv("EMERGENCY_WEBHOOK_URL")
        self.safe_spot_url = os.getenv("SAFE_SPOT_WEBHOOK_URL")

    async def _post(self, url: Optional[str], event: str, payload: dict) -> None:
        if not url:
            log.warning("event=%s_webhook_not_configured payload_keys=%s", event, ",".join(payload))
            return
        started = time.perf_counter()
        r = await self._client.post(url, json=payload, timeout=WEBHOOK_TIMEOUT_SEC)
        r.raise_for_status()
        log.info(
            "event=%s_webhook_delivered status=%d duration_ms=%.1f",
            event, r.status_code, (time.perf_counter() - started) * 1000,
        )

    async def send_emergency_alert(self) -> None:
        ctx = self._orchestrator.context
        log.warning(
            "event=emergency_alert_requested location=%s contacts=%d",
            ctx.current_location, len(ctx.trusted_contacts),
        )
        await self._post(self.emergency_url, "emergency", {
            "type": "emergency_alert",
            "current_location": ctx.current_location,
            "destination": ctx.destination,
            "trusted_contacts": [c.model_dump(mode="json") for c in ctx.trusted_contacts],
            "ts": time.time(),
        })

    async def request_safe_spot(self) -> None:
        ctx = self._orchestrator.context
        log.info("event=safe_spot_requested location=%s", ctx.current_location)
        await self._post(self.safe_spot_url, "safe_spot", {
            "type": "safe_spot_request",
            "current_location": ctx.current_location,
            "destination": ctx.destination,
            "ts": time.time(),
        })


def _on_fatal(exc: RecognitionFatalError) -> None:
    if exc.kind is RecognitionErrorKind.PERMISSION_DENIED:
        log.error("event=recognition_fatal kind=%s hint=check DEEPGRAM_API_KEY", exc.kind.value)
    else:
        log.error("event=recognition_fatal kind=%s hint=check the microphone", exc.kind.value)


# ---------------------------------------------------------------------------
# Background monitors
# ---------------------------------------------------------------------------

async def _health_check_loop(orchestrator: ConversationOrchestrator, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        healthy = orchestrator.health_check()
        log.debug("event=health_check healthy=%s phase=%s", healthy, orchestrator.recognition.phase.value)


async def _stall_monitor() -> None:
    """Log a warning whenever the event loop blocks for > 150ms."""
    TICK_MS = 100.0
    WARN_MS = 150.0
    prev = time.perf_counter() * 1000.0
    while True:
        await asyncio.sleep(TICK_MS / 1000.0)
        now = time.perf_counter() * 1000.0
        drift = now - prev - TICK_MS
        if drift > WARN_MS:
            log.warning("event=event_loop_stall stall_ms=%.1f", drift)
        prev = now


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

async def main(config: VoiceCompanionConfig, host: str, port: int) -> None:
    log.info("event=companion_start host=%s port=%d", host, port)

    ecfg = config.elevenlabs
    playback = StreamingPlayback(samplerate=ecfg.sample_rate_hz)
    offline = OfflineSpeech(config.offline_speech) if config.offline_speech.enabled else None
    backend = ElevenLabsBackend(ecfg)
    synthesizer = SpeechSynthesisAdapter(backend, playback, voice_id=ecfg.voice_id, offline=offline)
    completion = GroqCompletionClient(config.groq)
    recognizer = DeepgramRecognizer(config.deepgram)
    log.info(
        "event=services_config llm=%s tts_voice=%s stt=%s offline_tts=%s",
        config.groq.model, ecfg.voice_id, config.deepgram.model, offline is not None,
    )

    orchestrator = ConversationOrchestrator(
        config,
        recognizer=recognizer,
        completion=completion,
        synthesizer=synthesizer,
        on_fatal=_on_fatal,
    )

    webhook_client = httpx.AsyncClient()
    notifier = WebhookNotifier(orchestrator, webhook_client)
    orchestrator.register_emergency_callback(notifier.send_emergency_alert)
    orchestrator.register_safe_spot_callback(notifier.request_safe_spot)

    interval = float(os.getenv("HEALTH_CHECK_INTERVAL_SEC", HEALTH_CHECK_INTERVAL_SEC))
    background = [
        asyncio.create_task(_health_check_loop(orchestrator, interval), name="health_check"),
        asyncio.create_task(_stall_monitor(), name="stall_monitor"),
    ]

    app = create_app(orchestrator)
    server = uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_level="info"))

    orchestrator.start_listening()
    try:
        await server.serve()
    finally:
        for task in background:
            task.cancel()
        for task in background:
            try:
                await task
            except asyncio.CancelledError:
                pass
        await orchestrator.dispose()
        await webhook_client.aclose()
        await backend.aclose()
        await completion.aclose()
        if offline is not None:
            offline.close()
        log.info("event=companion_shutdown")


def run() -> None:
    load_dotenv()
    _configure_logging()

    parser = argparse.ArgumentParser(prog="safewalk-voice", description="SafeWalk voice companion")
    parser.add_argument("--config", default=os.getenv("SAFEWALK_VOICE_CONFIG"), help="JSON config file")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8765)
    args = parser.parse_args()

    config = VoiceCompanionConfig.load(args.config)
    try:
        asyncio.run(main(config, args.host, args.port))
    except KeyboardInterrupt:
        log.info("event=shutdown reason=keyboard_interrupt")


if __name__ == "__main__":
    run()
