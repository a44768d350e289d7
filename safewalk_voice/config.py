"""
config.py — SafeWalk Voice · Runtime Configuration
==================================================
Pydantic models for every tunable parameter of the voice core and its
backends.  Deserialised from JSON.  Used by:
  • bot.py          — loads the file named by --config, builds every service
  • orchestrator.py — timing knobs for recognition, queue and safety checks
Secrets (API keys) never live here; they come from the environment.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

log = logging.getLogger("safewalk_voice.config")

# ---------------------------------------------------------------------------
# Default prompt intro (kept here so config.py is the single source of truth)
# ---------------------------------------------------------------------------

DEFAULT_PROMPT_INTRO = (
    "You are a helpful AI companion for the Midnight Mile personal safety app. "
    "You help users navigate safely at night and provide reassurance during their walks."
)


# ---------------------------------------------------------------------------
# Backend config sections
# ---------------------------------------------------------------------------

class GroqConfig(BaseModel):
    """Groq LLM parameters (passed to GroqCompletionClient)."""
    model: str = Field(default="llama-3.3-70b-versatile", description="Groq model ID")
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0, description="Randomness (0.0–2.0)")
    max_tokens: Optional[int] = Field(default=200, ge=1, description="Max response tokens")
    timeout_sec: float = Field(default=10.0, gt=0.0, le=60.0, description="Whole-request timeout")


class ElevenLabsConfig(BaseModel):
    """ElevenLabs TTS parameters (passed to ElevenLabsBackend)."""
    voice_id: str = Field(default="x3gYeuNB0kLLYxOZsaSh", description="ElevenLabs voice ID")
    model: str = Field(default="eleven_monolingual_v1", description="TTS model")
    stability: float = Field(default=0.5, ge=0.0, le=1.0, description="Voice stability")
    similarity_boost: float = Field(default=0.75, ge=0.0, le=1.0, description="Clarity + similarity")
    style: float = Field(default=0.5, ge=0.0, le=1.0, description="Style exaggeration")
    use_speaker_boost: bool = Field(default=True, description="Speaker clarity boost")
    output_format: str = Field(default="pcm_24000", description="Raw PCM16 at 24 kHz")
    timeout_sec: float = Field(default=15.0, gt=0.0, le=120.0, description="HTTP timeout")

    @property
    def sample_rate_hz(self) -> int:
        """Sample rate encoded in output_format (pcm_<rate>)."""
        _, _, rate = self.output_format.partition("_")
        return int(rate) if rate.isdigit() else 24000


class DeepgramConfig(BaseModel):
    """Deepgram live STT parameters (query string of the websocket URL)."""
    model: str = Field(default="nova-3", description="Deepgram model")
    language: str = Field(default="en-US", description="Recognition language")
    interim_results: bool = Field(default=True, description="Stream partial results")
    endpointing: int = Field(default=300, ge=0, le=5000, description="Silence endpointing (ms)")
    sample_rate: int = Field(default=16000, ge=8000, le=48000, description="Microphone sample rate")
    blocksize: int = Field(default=1280, ge=160, description="Microphone frames per chunk")


class OfflineSpeechConfig(BaseModel):
    """Local pyttsx3 engine used as a last resort for navigation jobs."""
    enabled: bool = Field(default=True, description="Allow offline fallback")
    rate: int = Field(default=180, ge=50, le=400, description="Words per minute")
    volume: float = Field(default=0.8, ge=0.0, le=1.0, description="Output volume")
    preferred_voices: list[str] = Field(
        default_factory=lambda: ["Female", "Samantha", "Victoria", "Zira"],
        description="Substrings matched against installed voice names",
    )


# ---------------------------------------------------------------------------
# Core timing sections
# ---------------------------------------------------------------------------

class RecognitionTiming(BaseModel):
    """Restart / backoff policy of the RecognitionController."""
    restart_debounce_sec: float = Field(default=0.5, ge=0.0, le=10.0, description="Delay before a normal restart")
    network_retry_sec: float = Field(default=2.0, ge=0.0, le=60.0, description="Delay after a network error")
    error_retry_sec: float = Field(default=1.0, ge=0.0, le=60.0, description="Delay after any other error")
    start_retry_sec: float = Field(default=2.0, ge=0.0, le=60.0, description="Delay after start() itself fails")
    force_restart_delay_sec: float = Field(default=1.0, ge=0.0, le=10.0, description="Delay used by force_restart")
    speech_poll_interval_sec: float = Field(default=0.1, gt=0.0, le=5.0, description="Wait-for-speech poll period")
    start_timeout_sec: float = Field(default=5.0, gt=0.0, le=60.0, description="STARTING longer than this is unhealthy")
    degraded_after_failures: int = Field(default=5, ge=1, le=1000, description="Consecutive failures before 'degraded'")


class VoiceQueueConfig(BaseModel):
    inter_job_pause_sec: float = Field(default=0.1, ge=0.0, le=5.0, description="Gap between two jobs")


class SafetyCheckConfig(BaseModel):
    interval_sec: float = Field(default=10.0, gt=0.0, le=3600.0, description="Quiet period before a check-in")
    low_score_threshold: int = Field(default=60, ge=0, le=100, description="Safety score that triggers the warning phrasing")


class ConversationConfig(BaseModel):
    min_transcript_chars: int = Field(default=2, ge=0, le=100, description="Transcripts this short or shorter are noise")
    system_prompt_intro: str = Field(default=DEFAULT_PROMPT_INTRO, description="First paragraph of the LLM prompt")


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------

class VoiceCompanionConfig(BaseModel):
    """Complete runtime configuration for the voice companion."""
    groq: GroqConfig = Field(default_factory=GroqConfig)
    elevenlabs: ElevenLabsConfig = Field(default_factory=ElevenLabsConfig)
    deepgram: DeepgramConfig = Field(default_factory=DeepgramConfig)
    offline_speech: OfflineSpeechConfig = Field(default_factory=OfflineSpeechConfig)
    recognition: RecognitionTiming = Field(default_factory=RecognitionTiming)
    voice_queue: VoiceQueueConfig = Field(default_factory=VoiceQueueConfig)
    safety_check: SafetyCheckConfig = Field(default_factory=SafetyCheckConfig)
    conversation: ConversationConfig = Field(default_factory=ConversationConfig)

    # -- Persistence -----------------------------------------------------------

    @classmethod
    def load(cls, path: str | Path | None) -> "VoiceCompanionConfig":
        """Load config from a JSON file.  Returns defaults if file doesn't exist."""
        if path is None:
            log.info("event=config_load_defaults path=None")
            return cls()
        p = Path(path)
        if not p.exists():
            log.info("event=config_load_defaults path=%s", p)
            return cls()
        try:
            data = json.loads(p.read_text(encoding="utf-8"))
            config = cls.model_validate(data)
            log.info("event=config_loaded path=%s", p)
            return config
        except Exception as exc:
            log.warning("event=config_load_error path=%s error=%s — using defaults", p, exc)
            return cls()
