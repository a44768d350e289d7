"""
elevenlabs.py — SafeWalk Voice · ElevenLabs speech backend
==========================================================
Primary text-to-speech backend.  Posts text to the ElevenLabs REST API and
hands back raw PCM16 for the audio output; any HTTP or transport failure
surfaces as SynthesisError.
"""

import logging
import os
import time
from typing import Optional

import httpx

from .config import ElevenLabsConfig
from .errors import SynthesisError

log = logging.getLogger("safewalk_voice.elevenlabs")

ELEVENLABS_API = "https://api.elevenlabs.io/v1"


class ElevenLabsBackend:
    """Text → raw PCM16 bytes via the ElevenLabs REST API."""

    def __init__(
        self,
        config: ElevenLabsConfig,
        api_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._config = config
        self._api_key = api_key or os.environ["ELEVENLABS_API_KEY"]
        self._client = client or httpx.AsyncClient(base_url=ELEVENLABS_API, timeout=config.timeout_sec)

    def _payload(self, text: str) -> dict:
        c = self._config
        return {
            "text": text,
            "model_id": c.model,
            "voice_settings": {
                "stability": c.stability,
                "similarity_boost": c.similarity_boost,
                "style": c.style,
                "use_speaker_boost": c.use_speaker_boost,
            },
        }

    async def synthesize(self, text: str, voice_id: str) -> bytes:
        started = time.perf_counter()
        try:
            r = await self._client.post(
                f"/text-to-speech/{voice_id}",
                params={"output_format": self._config.output_format},
                headers={
                    "xi-api-key": self._api_key,
                    "Content-Type": "application/json",
                    "Accept": "audio/pcm",
                },
                json=self._payload(text),
            )
        except httpx.HTTPError as exc:
            raise SynthesisError(f"ElevenLabs request failed: {exc}") from exc

        if r.status_code in (401, 403):
            raise SynthesisError(f"ElevenLabs rejected the API key (status {r.status_code})")
        if r.status_code == 429:
            raise SynthesisError("ElevenLabs rate limited the request")
        if not r.is_success:
            raise SynthesisError(f"ElevenLabs API error {r.status_code}: {r.text[:200]}")

        log.info(
            "event=tts_audio_received bytes=%d duration_ms=%.1f",
            len(r.content), (time.perf_counter() - started) * 1000,
        )
        return r.content

    async def aclose(self) -> None:
        await self._client.aclose()
