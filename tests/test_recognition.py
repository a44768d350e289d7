import asyncio

import pytest

from safewalk_voice.contracts import RecognitionErrorKind, RecognitionResult
from safewalk_voice.errors import RecognitionFatalError
from safewalk_voice.recognition import RecognitionController, RecognitionPhase

from .conftest import FakeRecognizer, wait_for


class Harness:
    def __init__(self, timing, recognizer=None):
        self.recognizer = recognizer or FakeRecognizer()
        self.speaking = False
        self.transcripts: list[str] = []
        self.started = 0
        self.fatal: list[RecognitionErrorKind] = []
        self.controller = RecognitionController(
            self.recognizer,
            timing,
            is_speaking=lambda: self.speaking,
            on_transcript=self.transcripts.append,
            on_started=self._on_started,
            on_fatal=self.fatal.append,
        )

    def _on_started(self):
        self.started += 1


@pytest.fixture
def h(fast_config):
    harness = Harness(fast_config.recognition)
    yield harness
    harness.controller.dispose()


async def test_start_reaches_active(h):
    h.controller.start()
    assert h.controller.phase is RecognitionPhase.STARTING
    await wait_for(lambda: h.controller.phase is RecognitionPhase.ACTIVE)
    assert h.controller.is_listening and h.controller.is_active
    assert h.started == 1


async def test_already_started_is_treated_as_active(h):
    h.recognizer.running = True
    h.controller.start()
    assert h.controller.phase is RecognitionPhase.ACTIVE
    assert h.controller.state.consecutive_failures == 0
    assert not h.controller.restart_pending


async def test_already_started_message_shape_is_recognised(h):
    h.recognizer.start_error = RuntimeError("InvalidStateError: recognition has already started")
    h.controller.start()
    assert h.controller.phase is RecognitionPhase.ACTIVE
    assert not h.controller.restart_pending


async def test_other_start_failure_backs_off_and_retries(h):
    h.recognizer.start_error = RuntimeError("engine busy")
    h.controller.start()
    assert h.controller.phase is RecognitionPhase.ERROR_BACKOFF
    assert h.controller.restart_pending
    h.recognizer.start_error = None
    await wait_for(lambda: h.controller.phase is RecognitionPhase.ACTIVE)
    assert h.recognizer.starts == 2


async def test_fatal_start_refusal_disables_listening(h):
    h.recognizer.start_error = RecognitionFatalError(RecognitionErrorKind.DEVICE_UNAVAILABLE)
    h.controller.start()
    assert h.fatal == [RecognitionErrorKind.DEVICE_UNAVAILABLE]
    assert not h.controller.is_listening
    assert not h.controller.restart_pending


async def test_only_final_results_from_index_are_forwarded(h):
    h.controller.start()
    await wait_for(lambda: h.controller.is_active)
    h.controller.on_result(
        [
            RecognitionResult("already seen", True),
            RecognitionResult("partial words", False),
            RecognitionResult("  where am I  ", True),
            RecognitionResult("   ", True),
        ],
        1,
    )
    assert h.transcripts == ["where am I"]


async def test_engine_end_restarts_after_debounce(h):
    h.controller.start()
    await wait_for(lambda: h.controller.is_active)
    h.recognizer.emit_end()
    assert h.controller.phase is RecognitionPhase.STOPPED
    assert h.controller.restart_pending
    await wait_for(lambda: h.controller.is_active)
    assert h.recognizer.starts == 2


async def test_restart_waits_for_speech_to_finish(h):
    h.controller.start()
    await wait_for(lambda: h.controller.is_active)
    h.speaking = True
    h.recognizer.emit_end()
    await asyncio.sleep(0.1)
    assert h.recognizer.starts == 1
    h.speaking = False
    await wait_for(lambda: h.controller.is_active)
    assert h.recognizer.starts == 2


async def test_network_error_then_end_restarts_once(h):
    h.controller.start()
    await wait_for(lambda: h.controller.is_active)
    h.recognizer.emit_error(RecognitionErrorKind.NETWORK)
    assert h.controller.phase is RecognitionPhase.ERROR_BACKOFF
    h.recognizer.emit_end()
    await wait_for(lambda: h.controller.is_active)
    await asyncio.sleep(0.1)
    assert h.recognizer.starts == 2


async def test_no_speech_takes_no_action(h):
    h.controller.start()
    await wait_for(lambda: h.controller.is_active)
    h.recognizer.emit_error(RecognitionErrorKind.NO_SPEECH)
    assert h.controller.phase is RecognitionPhase.ACTIVE
    assert not h.controller.restart_pending
    h.recognizer.emit_end()
    await wait_for(lambda: h.controller.is_active)
    assert h.recognizer.starts == 2


async def test_aborted_marks_not_running(h):
    h.controller.start()
    await wait_for(lambda: h.controller.is_active)
    h.controller.on_error(RecognitionErrorKind.ABORTED)
    assert not h.controller.is_active
    assert h.controller.state.consecutive_failures == 0


@pytest.mark.parametrize("raw", ["not-allowed", "permission-denied", "audio-capture"])
async def test_terminal_errors_disable_listening(h, raw):
    h.controller.start()
    await wait_for(lambda: h.controller.is_active)
    h.controller.on_error(raw)
    assert not h.controller.is_listening
    assert h.controller.state.fatal_error is not None
    assert h.fatal and h.fatal[0].is_terminal
    h.recognizer.emit_end()
    await asyncio.sleep(0.05)
    assert h.recognizer.starts == 1


async def test_degraded_after_consecutive_failures(h):
    h.recognizer.start_error = RuntimeError("engine busy")
    h.controller.start()
    await wait_for(lambda: h.controller.degraded, timeout=2.0)
    assert h.controller.state.consecutive_failures >= 3
    h.recognizer.start_error = None
    await wait_for(lambda: h.controller.is_active, timeout=2.0)
    assert not h.controller.degraded


async def test_pause_and_resume_for_processing(h):
    h.controller.start()
    await wait_for(lambda: h.controller.is_active)
    h.controller.pause_for_processing()
    assert h.controller.phase is RecognitionPhase.STOPPING_FOR_PROCESSING
    await wait_for(lambda: not h.controller.is_active)
    assert h.controller.phase is RecognitionPhase.STOPPED
    assert not h.controller.restart_pending

    h.controller.resume_after_processing()
    await wait_for(lambda: h.controller.is_active)
    assert h.recognizer.starts == 2


async def test_resume_before_engine_end_restarts_once(h):
    h.recognizer.auto_end = False
    h.controller.start()
    await wait_for(lambda: h.controller.is_active)
    h.controller.pause_for_processing()
    h.controller.resume_after_processing()
    assert not h.controller.restart_pending
    h.recognizer.emit_end()
    await wait_for(lambda: h.controller.is_active)
    await asyncio.sleep(0.05)
    assert h.recognizer.starts == 2


async def test_late_start_while_processing_is_stopped(h):
    h.recognizer.auto_start = False
    h.controller.start()
    h.controller.pause_for_processing()
    h.recognizer.emit_start()
    assert h.recognizer.stops >= 2
    await wait_for(lambda: not h.controller.is_active)


async def test_stop_cancels_pending_restart(h):
    h.controller.start()
    await wait_for(lambda: h.controller.is_active)
    h.recognizer.emit_end()
    assert h.controller.restart_pending
    h.controller.stop()
    assert not h.controller.restart_pending
    await asyncio.sleep(0.05)
    assert h.recognizer.starts == 1


async def test_force_restart_from_any_state(h):
    h.controller.start()
    await wait_for(lambda: h.controller.is_active)
    h.controller.force_restart()
    assert h.controller.phase is RecognitionPhase.STOPPED
    assert h.controller.restart_pending
    await wait_for(lambda: h.recognizer.starts == 2 and h.controller.is_active)


async def test_unhealthy_when_engine_silently_died(h):
    h.controller.start()
    await wait_for(lambda: h.controller.is_active)
    assert h.controller.is_healthy()
    # engine died without telling us
    h.controller._state.engine_running = False
    assert not h.controller.is_healthy()


async def test_unhealthy_when_stuck_starting(fast_config):
    harness = Harness(fast_config.recognition, FakeRecognizer(auto_start=False))
    harness.controller.start()
    assert harness.controller.is_healthy()
    await asyncio.sleep(fast_config.recognition.start_timeout_sec + 0.05)
    assert not harness.controller.is_healthy()
    harness.controller.dispose()
