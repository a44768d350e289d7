"""Fakes for every I/O collaborator plus fast timing config.

All timers in these tests are real asyncio timers; the config shrinks them to
milliseconds so a full turn completes well under a second.
"""

from __future__ import annotations

import asyncio
import random
from typing import Callable, Optional

import pytest

from safewalk_voice.config import (
    RecognitionTiming,
    SafetyCheckConfig,
    VoiceCompanionConfig,
    VoiceQueueConfig,
)
from safewalk_voice.contracts import RecognitionErrorKind, RecognitionResult
from safewalk_voice.errors import RecognizerAlreadyStarted, SynthesisError
from safewalk_voice.orchestrator import ConversationOrchestrator
from safewalk_voice.synthesis import SpeechSynthesisAdapter


async def wait_for(predicate: Callable[[], bool], timeout: float = 1.0, interval: float = 0.005) -> None:
    """Poll `predicate` until true; fail the test after `timeout` seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met within %.2fs" % timeout)
        await asyncio.sleep(interval)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeRecognizer:
    """Acknowledges start/stop on the next loop iteration, like a real engine."""

    def __init__(self, auto_start: bool = True, auto_end: bool = True):
        self.listener = None
        self.auto_start = auto_start
        self.auto_end = auto_end
        self.running = False
        self.starts = 0
        self.stops = 0
        self.start_error: Optional[Exception] = None

    def bind(self, listener) -> None:
        self.listener = listener

    def start(self) -> None:
        self.starts += 1
        if self.start_error is not None:
            raise self.start_error
        if self.running:
            raise RecognizerAlreadyStarted()
        if self.auto_start:
            asyncio.get_running_loop().call_soon(self.emit_start)

    def stop(self) -> None:
        self.stops += 1
        if self.running and self.auto_end:
            asyncio.get_running_loop().call_soon(self.emit_end)

    # -- test drivers --

    def emit_start(self) -> None:
        self.running = True
        self.listener.on_start()

    def emit_end(self) -> None:
        if not self.running:
            return
        self.running = False
        self.listener.on_end()

    def emit_final(self, text: str) -> None:
        self.listener.on_result([RecognitionResult(text, True)], 0)

    def emit_error(self, kind: RecognitionErrorKind) -> None:
        self.listener.on_error(kind)


class FakeBackend:
    def __init__(self):
        self.calls: list[str] = []
        self.fail_on: set[str] = set()
        self.fail_all = False
        self.delay = 0.0

    async def synthesize(self, text: str, voice_id: str) -> bytes:
        self.calls.append(text)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_all or text in self.fail_on:
            raise SynthesisError(f"backend refused {text!r}")
        return b"\x00\x01" * 64


class FakeOutput:
    """Plays for `duration` seconds; records the peak number of overlapping plays."""

    def __init__(self, duration: float = 0.02):
        self.duration = duration
        self.played: list[bytes] = []
        self.active = 0
        self.max_active = 0
        self.stops = 0

    @property
    def is_playing(self) -> bool:
        return self.active > 0

    async def play(self, audio: bytes) -> None:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.duration)
            self.played.append(audio)
        finally:
            self.active -= 1

    def stop(self) -> None:
        self.stops += 1


class FakeOffline:
    def __init__(self, duration: float = 0.01):
        self.duration = duration
        self.spoken: list[str] = []
        self._speaking = False

    @property
    def is_speaking(self) -> bool:
        return self._speaking

    async def speak(self, text: str) -> None:
        self._speaking = True
        try:
            await asyncio.sleep(self.duration)
            self.spoken.append(text)
        finally:
            self._speaking = False

    def stop(self) -> None:
        self._speaking = False


class FakeCompletion:
    def __init__(self, reply: Optional[str] = "Keep going, you're almost there.", delay: float = 0.0):
        self.reply = reply
        self.delay = delay
        self.error: Optional[Exception] = None
        self.prompts: list[str] = []

    async def complete(self, prompt: str) -> Optional[str]:
        self.prompts.append(prompt)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.reply


class SpokenLog:
    """Wraps an adapter's speak calls to record what reached the speaker, in order."""

    def __init__(self, synth: SpeechSynthesisAdapter):
        self.texts: list[str] = []
        original = synth.speak

        async def speak(text: str) -> None:
            self.texts.append(text)
            await original(text)

        synth.speak = speak


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def fast_config() -> VoiceCompanionConfig:
    return VoiceCompanionConfig(
        recognition=RecognitionTiming(
            restart_debounce_sec=0.02,
            network_retry_sec=0.06,
            error_retry_sec=0.03,
            start_retry_sec=0.04,
            force_restart_delay_sec=0.02,
            speech_poll_interval_sec=0.005,
            start_timeout_sec=0.2,
            degraded_after_failures=3,
        ),
        voice_queue=VoiceQueueConfig(inter_job_pause_sec=0.005),
        safety_check=SafetyCheckConfig(interval_sec=5.0),
    )


@pytest.fixture
def recognizer() -> FakeRecognizer:
    return FakeRecognizer()


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def output() -> FakeOutput:
    return FakeOutput()


@pytest.fixture
def offline() -> FakeOffline:
    return FakeOffline()


@pytest.fixture
def completion() -> FakeCompletion:
    return FakeCompletion()


@pytest.fixture
def synth(backend, output, offline) -> SpeechSynthesisAdapter:
    return SpeechSynthesisAdapter(backend, output, voice_id="test-voice", offline=offline)


@pytest.fixture
async def make_orchestrator(fast_config, recognizer, completion, synth):
    created: list[ConversationOrchestrator] = []

    def factory(config: Optional[VoiceCompanionConfig] = None, **kwargs) -> ConversationOrchestrator:
        orch = ConversationOrchestrator(
            config or fast_config,
            recognizer=recognizer,
            completion=completion,
            synthesizer=synth,
            rng=kwargs.pop("rng", random.Random(7)),
            **kwargs,
        )
        created.append(orch)
        return orch

    yield factory
    for orch in created:
        await orch.dispose()


@pytest.fixture
def orchestrator(make_orchestrator) -> ConversationOrchestrator:
    return make_orchestrator()
