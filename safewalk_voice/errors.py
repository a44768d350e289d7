"""
errors.py — SafeWalk Voice · Exception hierarchy
================================================
Every failure the core raises or hands to a caller's future derives from
VoiceCompanionError, so hosts can tell "cancelled by policy" (QueueCleared)
apart from "failed to play" (SynthesisError).
"""

from __future__ import annotations


class VoiceCompanionError(Exception):
    """Base class for all voice-core errors."""


class QueueCleared(VoiceCompanionError):
    """The voice queue was flushed before (or while) the job played."""

    def __init__(self, message: str = "Voice queue cleared") -> None:
        super().__init__(message)


class SynthesisError(VoiceCompanionError):
    """TTS backend or audio playback failed."""


class PlaybackStopped(SynthesisError):
    """Playback was stopped deliberately before it finished."""


class RecognizerAlreadyStarted(VoiceCompanionError):
    """Raised by a recognizer whose start() is called while it is running."""

    def __init__(self, message: str = "recognition has already started") -> None:
        super().__init__(message)


class RecognitionFatalError(VoiceCompanionError):
    """Listening is disabled until the user fixes a permission/device problem."""

    def __init__(self, kind: str) -> None:
        super().__init__(f"speech recognition unavailable: {getattr(kind, 'value', kind)}")
        self.kind = kind
