"""Interfaces the core expects from its I/O collaborators."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, Protocol, Sequence


# --------- Types ---------
class RecognitionErrorKind(str, Enum):
    PERMISSION_DENIED = "permission-denied"
    DEVICE_UNAVAILABLE = "device-unavailable"
    NETWORK = "network"
    NO_SPEECH = "no-speech"
    ABORTED = "aborted"
    OTHER = "other"

    @classmethod
    def from_raw(cls, raw: str) -> "RecognitionErrorKind":
        """Map a backend error code onto a kind.

        Accepts both our own names and the Web Speech API spellings
        ("not-allowed", "service-not-allowed", "audio-capture").
        """
        value = (raw or "").strip().lower()
        if value in _RAW_ALIASES:
            return _RAW_ALIASES[value]
        try:
            return cls(value)
        except ValueError:
            return cls.OTHER

    @property
    def is_terminal(self) -> bool:
        return self in (RecognitionErrorKind.PERMISSION_DENIED, RecognitionErrorKind.DEVICE_UNAVAILABLE)


_RAW_ALIASES = {
    "not-allowed": RecognitionErrorKind.PERMISSION_DENIED,
    "service-not-allowed": RecognitionErrorKind.PERMISSION_DENIED,
    "audio-capture": RecognitionErrorKind.DEVICE_UNAVAILABLE,
}


@dataclass(frozen=True)
class RecognitionResult:
    transcript: str
    """
    Best alternative for this result.
    """
    is_final: bool
    """
    Whether the recognizer considers this result stable.
    """


# --------- Protocols ---------
class RecognizerListener(Protocol):
    def on_start(self) -> None: ...
    def on_result(self, results: Sequence[RecognitionResult], result_index: int) -> None: ...
    def on_error(self, kind: RecognitionErrorKind) -> None: ...
    def on_end(self) -> None: ...


class SpeechRecognizer(Protocol):
    """
    Continuous recognizer with interim results.

    start() returns immediately; the engine confirms with on_start. Calling
    start() while running raises RecognizerAlreadyStarted (or any error whose
    message says "already started").
    """
    def bind(self, listener: RecognizerListener) -> None: ...
    def start(self) -> None: ...
    def stop(self) -> None: ...


class CompletionClient(Protocol):
    async def complete(self, prompt: str) -> Optional[str]:
        """Single-turn completion. Returns None on any failure."""
        ...


class SpeechBackend(Protocol):
    async def synthesize(self, text: str, voice_id: str) -> bytes:
        """Return playable audio for text. Raises on failure."""
        ...


class AudioOutput(Protocol):
    @property
    def is_playing(self) -> bool: ...

    async def play(self, audio: bytes) -> None:
        """Resolve when playback ends naturally or is stopped; raise on device error."""
        ...

    def stop(self) -> None: ...


class OfflineSpeaker(Protocol):
    @property
    def is_speaking(self) -> bool: ...
    async def speak(self, text: str) -> None: ...
    def stop(self) -> None: ...


CommandCallback = Callable[[], Awaitable[None]]
