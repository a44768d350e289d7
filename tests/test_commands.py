import asyncio

import pytest

from safewalk_voice.commands import (
    EMERGENCY_ACK,
    EMERGENCY_FAILED,
    EMERGENCY_IN_PROGRESS,
    EMERGENCY_UNAVAILABLE,
    SAFE_SPOT_FAILED,
    SAFE_SPOT_FOUND,
    SAFE_SPOT_LOOKING,
    SAFE_SPOT_UNAVAILABLE,
    SAFE_SPOT_WAIT,
    CommandInterceptor,
    InterceptResult,
    normalise,
)
from safewalk_voice.voice_queue import VoiceCategory, VoiceJobQueue

from .conftest import wait_for


class RecordingQueue(VoiceJobQueue):
    def __init__(self, synth):
        super().__init__(synth, inter_job_pause_sec=0.0)
        self.jobs: list[tuple[str, VoiceCategory]] = []

    def enqueue(self, text, category=VoiceCategory.CONVERSATION):
        self.jobs.append((text, category))
        return super().enqueue(text, category)

    @property
    def texts(self):
        return [t for t, _ in self.jobs]


@pytest.fixture
async def queue(synth):
    q = RecordingQueue(synth)
    yield q
    q.dispose()


@pytest.fixture
def interceptor(queue):
    return CommandInterceptor(queue)


@pytest.mark.parametrize("text", [
    "This is an emergency",
    "send an emergency alert",
    "SOS",
    "send an alert to my contacts",
    "please alert my contact now",
    "I'm in danger",
    "I think I'm being followed",
    "call for help",
])
def test_emergency_phrases(text):
    assert CommandInterceptor.classify(text) == "emergency"


@pytest.mark.parametrize("text", [
    "find me the nearest safe spot",
    "take me somewhere safe",
    "where's the nearest police station",
    "where's the nearest safe place",
    "Safe spot, find one",
])
def test_safe_spot_phrases(text):
    assert CommandInterceptor.classify(text) == "safe_spot"


@pytest.mark.parametrize("text", [
    "how far is it to the station",
    "tell me a joke",
    "the spotlight is nice",
    "I feel safer now",
    "where is the nearest emergency room",
    "what's the emergency number here",
    "I feel safe in this place",
    "is this a safe place to walk",
    "I'm not in danger",
])
def test_ordinary_speech_is_not_a_command(text):
    assert CommandInterceptor.classify(text) is None


def test_emergency_wins_over_safe_spot():
    assert CommandInterceptor.classify("this is an emergency, get me to the nearest safe spot") == "emergency"


def test_normalise_keeps_apostrophes():
    assert normalise("I’m in DANGER!!") == "i'm in danger"


async def test_not_handled_leaves_queue_alone(interceptor, queue):
    assert interceptor.try_intercept("what's the weather") is InterceptResult.NOT_HANDLED
    assert queue.jobs == []


async def test_emergency_without_callback_explains(interceptor, queue):
    assert interceptor.try_intercept("this is an emergency") is InterceptResult.HANDLED
    assert queue.jobs == [(EMERGENCY_UNAVAILABLE, VoiceCategory.SAFETY_CHECK)]


async def test_emergency_acknowledges_and_fires_callback(interceptor, queue):
    calls = 0

    async def alert():
        nonlocal calls
        calls += 1

    interceptor.register_emergency_callback(alert)
    assert interceptor.try_intercept("send an alert to my contacts") is InterceptResult.HANDLED
    assert queue.jobs == [(EMERGENCY_ACK, VoiceCategory.SAFETY_CHECK)]
    await wait_for(lambda: calls == 1)
    await wait_for(lambda: not interceptor.is_sending_emergency_alert)


async def test_emergency_callback_failure_is_spoken(interceptor, queue):
    async def alert():
        raise RuntimeError("sms gateway down")

    interceptor.register_emergency_callback(alert)
    interceptor.try_intercept("this is an emergency")
    await wait_for(lambda: EMERGENCY_FAILED in queue.texts)
    assert not interceptor.is_sending_emergency_alert


async def test_emergency_does_not_wait_for_callback(interceptor):
    release = asyncio.Event()

    async def alert():
        await release.wait()

    interceptor.register_emergency_callback(alert)
    assert interceptor.try_intercept("this is an emergency") is InterceptResult.HANDLED
    assert interceptor.is_sending_emergency_alert
    release.set()
    await wait_for(lambda: not interceptor.is_sending_emergency_alert)


async def test_emergency_alerts_are_deduplicated(interceptor, queue):
    release = asyncio.Event()
    calls = 0

    async def alert():
        nonlocal calls
        calls += 1
        await release.wait()

    interceptor.register_emergency_callback(alert)
    interceptor.try_intercept("this is an emergency")
    await asyncio.sleep(0)
    assert interceptor.try_intercept("I'm in danger, send an alert") is InterceptResult.HANDLED
    assert queue.jobs == [
        (EMERGENCY_ACK, VoiceCategory.SAFETY_CHECK),
        (EMERGENCY_IN_PROGRESS, VoiceCategory.SAFETY_CHECK),
    ]

    release.set()
    await wait_for(lambda: not interceptor.is_sending_emergency_alert)
    assert calls == 1

    # a new request after the first one settled goes out again
    interceptor.try_intercept("this is an emergency")
    await wait_for(lambda: calls == 2)


async def test_safe_spot_without_callback(interceptor, queue):
    interceptor.try_intercept("nearest safe spot")
    assert queue.jobs == [(SAFE_SPOT_UNAVAILABLE, VoiceCategory.NAVIGATION)]
    assert not interceptor.is_handling_safe_spot


async def test_safe_spot_success(interceptor, queue):
    interceptor.register_safe_spot_callback(lambda: asyncio.sleep(0.01))
    interceptor.try_intercept("find me the nearest safe spot")
    assert interceptor.is_handling_safe_spot
    assert queue.texts == [SAFE_SPOT_LOOKING]
    await wait_for(lambda: SAFE_SPOT_FOUND in queue.texts)
    assert not interceptor.is_handling_safe_spot
    assert all(c is VoiceCategory.NAVIGATION for _, c in queue.jobs)


async def test_safe_spot_failure_resets_flag(interceptor, queue):
    async def find():
        raise ValueError("no route")

    interceptor.register_safe_spot_callback(find)
    interceptor.try_intercept("take me somewhere safe")
    await wait_for(lambda: SAFE_SPOT_FAILED in queue.texts)
    assert not interceptor.is_handling_safe_spot


async def test_safe_spot_requests_are_deduplicated(interceptor, queue):
    release = asyncio.Event()
    calls = 0

    async def find():
        nonlocal calls
        calls += 1
        await release.wait()

    interceptor.register_safe_spot_callback(find)
    interceptor.try_intercept("nearest safe spot please")
    await asyncio.sleep(0)
    interceptor.try_intercept("find a safe spot, hurry")
    assert queue.texts == [SAFE_SPOT_LOOKING, SAFE_SPOT_WAIT]

    release.set()
    await wait_for(lambda: SAFE_SPOT_FOUND in queue.texts)
    assert calls == 1


async def test_no_follow_up_after_dispose(interceptor, queue):
    release = asyncio.Event()

    async def find():
        await release.wait()

    interceptor.register_safe_spot_callback(find)
    interceptor.try_intercept("find a safe spot")
    interceptor.dispose()
    release.set()
    await wait_for(lambda: not interceptor.is_handling_safe_spot)
    await asyncio.sleep(0.01)
    assert queue.texts == [SAFE_SPOT_LOOKING]
