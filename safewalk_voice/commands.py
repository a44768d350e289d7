"""
commands.py — SafeWalk Voice · Special voice commands
=====================================================
Some utterances must never wait for an LLM round-trip: "emergency, alert my
contacts" and "find me the nearest safe spot".  try_intercept() classifies a
final transcript against keyword rules and, on a match, handles it entirely:
canned acknowledgement on the voice queue plus the host's callback.

Matching
--------
A rule is a list of keyword groups.  A group matches when *every* keyword
(or multi-word phrase) in it occurs in the normalised transcript, in any
order.  Emergency rules are checked first; it is the higher-stakes intent.
Each intent runs at most one host callback at a time; a repeat while one is
in flight only gets a short "already on it" reply.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .contracts import CommandCallback
from .voice_queue import VoiceCategory, VoiceJobQueue

log = logging.getLogger("safewalk_voice.commands")

_NON_WORD_RE = re.compile(r"[^a-z0-9' ]+")

EMERGENCY_ACK = "Sending an emergency alert to your trusted contacts now. Stay somewhere safe and visible."
EMERGENCY_UNAVAILABLE = (
    "I can't send an emergency alert from here. If you're in danger, call emergency services right away."
)
EMERGENCY_IN_PROGRESS = "I'm already sending your emergency alert. Stay somewhere safe and visible."
EMERGENCY_FAILED = "I couldn't send the emergency alert. Please call emergency services directly."
SAFE_SPOT_LOOKING = "Looking for the nearest safe spot..."
SAFE_SPOT_WAIT = "I'm still looking for the nearest safe spot, please wait a moment."
SAFE_SPOT_FOUND = "Route updated. I'm taking you to the nearest safe spot."
SAFE_SPOT_FAILED = "Sorry, I couldn't find a safe spot right now. Stay in a well-lit area and keep moving."
SAFE_SPOT_UNAVAILABLE = "I can't search for safe spots right now. Stay in a well-lit area."


class InterceptResult(Enum):
    HANDLED = "handled"
    NOT_HANDLED = "not_handled"


@dataclass(frozen=True)
class IntentRule:
    name: str
    groups: tuple[frozenset[str], ...]

    def matches(self, normalised: str) -> bool:
        padded = f" {normalised} "
        return any(all(f" {kw} " in padded for kw in group) for group in self.groups)


def _rule(name: str, *groups: tuple[str, ...]) -> IntentRule:
    return IntentRule(name, tuple(frozenset(g) for g in groups))


EMERGENCY_RULE = _rule(
    "emergency",
    ("this is an emergency",),
    ("it's an emergency",),
    ("emergency alert",),
    ("sos",),
    ("send", "alert"),
    ("alert", "contacts"),
    ("alert", "my", "contact"),
    ("call for help",),
    ("i'm in danger",),
    ("i am in danger",),
    ("being followed",),
)

# Every group needs a locating or imperative word, so "is this a safe place"
# stays ordinary conversation.
SAFE_SPOT_RULE = _rule(
    "safe_spot",
    ("find", "safe spot"),
    ("find", "safe spots"),
    ("find", "safe place"),
    ("find", "somewhere safe"),
    ("take me", "safe"),
    ("get me", "safe"),
    ("nearest", "safe"),
    ("nearest", "police"),
    ("nearest", "hospital"),
)


def normalise(transcript: str) -> str:
    text = transcript.lower().replace("’", "'")
    return " ".join(_NON_WORD_RE.sub(" ", text).split())


class CommandInterceptor:
    def __init__(self, queue: VoiceJobQueue) -> None:
        self._queue = queue
        self._emergency_cb: Optional[CommandCallback] = None
        self._safe_spot_cb: Optional[CommandCallback] = None
        self.is_handling_safe_spot = False
        self.is_sending_emergency_alert = False
        self._tasks: set[asyncio.Task] = set()
        self._disposed = False

    # -- registration ---------------------------------------------------------

    def register_emergency_callback(self, callback: Optional[CommandCallback]) -> None:
        self._emergency_cb = callback

    def register_safe_spot_callback(self, callback: Optional[CommandCallback]) -> None:
        self._safe_spot_cb = callback

    # -- classification -------------------------------------------------------

    @staticmethod
    def classify(transcript: str) -> Optional[str]:
        normalised = normalise(transcript)
        for rule in (EMERGENCY_RULE, SAFE_SPOT_RULE):
            if rule.matches(normalised):
                return rule.name
        return None

    def try_intercept(self, transcript: str) -> InterceptResult:
        intent = self.classify(transcript)
        if intent is None:
            return InterceptResult.NOT_HANDLED
        log.info("event=command_intercepted intent=%s text=%.60r", intent, transcript)
        if intent == EMERGENCY_RULE.name:
            self._handle_emergency()
        else:
            self._handle_safe_spot()
        return InterceptResult.HANDLED

    # -- handlers -------------------------------------------------------------

    def _handle_emergency(self) -> None:
        callback = self._emergency_cb
        if callback is None:
            log.warning("event=emergency_alert_unavailable reason=no_callback")
            self._queue.enqueue(EMERGENCY_UNAVAILABLE, VoiceCategory.SAFETY_CHECK)
            return
        if self.is_sending_emergency_alert:
            log.info("event=emergency_alert_deduplicated")
            self._queue.enqueue(EMERGENCY_IN_PROGRESS, VoiceCategory.SAFETY_CHECK)
            return
        self._queue.enqueue(EMERGENCY_ACK, VoiceCategory.SAFETY_CHECK)
        self.is_sending_emergency_alert = True
        self._spawn(self._run_emergency(callback), "emergency_alert")

    async def _run_emergency(self, callback: CommandCallback) -> None:
        try:
            await callback()
            log.info("event=emergency_alert_sent")
        except Exception as exc:
            log.error("event=emergency_alert_failed error=%s", exc, exc_info=True)
            if not self._disposed:
                self._queue.enqueue(EMERGENCY_FAILED, VoiceCategory.SAFETY_CHECK)
        finally:
            self.is_sending_emergency_alert = False

    def _handle_safe_spot(self) -> None:
        callback = self._safe_spot_cb
        if callback is None:
            log.warning("event=safe_spot_unavailable reason=no_callback")
            self._queue.enqueue(SAFE_SPOT_UNAVAILABLE, VoiceCategory.NAVIGATION)
            return
        if self.is_handling_safe_spot:
            log.info("event=safe_spot_deduplicated")
            self._queue.enqueue(SAFE_SPOT_WAIT, VoiceCategory.NAVIGATION)
            return
        self.is_handling_safe_spot = True
        self._queue.enqueue(SAFE_SPOT_LOOKING, VoiceCategory.NAVIGATION)
        self._spawn(self._run_safe_spot(callback), "safe_spot")

    async def _run_safe_spot(self, callback: CommandCallback) -> None:
        try:
            await callback()
        except Exception as exc:
            log.error("event=safe_spot_failed error=%s", exc, exc_info=True)
            follow_up = SAFE_SPOT_FAILED
        else:
            log.info("event=safe_spot_route_updated")
            follow_up = SAFE_SPOT_FOUND
        finally:
            self.is_handling_safe_spot = False
        if not self._disposed:
            self._queue.enqueue(follow_up, VoiceCategory.NAVIGATION)

    # -- lifecycle ------------------------------------------------------------

    def _spawn(self, coro, name: str) -> None:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def dispose(self) -> None:
        # In-flight callbacks run to completion; their follow-ups are not voiced.
        self._disposed = True
