"""
llm.py — SafeWalk Voice · Groq completion client
================================================
One prompt in, one reply out.  Backend trouble of any kind is logged and
reported as None; the orchestrator treats that as "nothing to say".
"""

import asyncio
import logging
import os
import time
from typing import Optional

from groq import AsyncGroq

from .config import GroqConfig

log = logging.getLogger("safewalk_voice.llm")


class GroqCompletionClient:
    """Single-shot chat completion on Groq.

    Never raises for backend trouble: timeouts, HTTP errors and empty answers
    all come back as None so the conversation turn can end quietly.
    """

    def __init__(self, config: GroqConfig, api_key: Optional[str] = None, client: Optional[AsyncGroq] = None):
        self._config = config
        self._client = client or AsyncGroq(api_key=api_key or os.environ["GROQ_API_KEY"])

    async def _call_model(self, prompt: str) -> str:
        kwargs = {}
        if self._config.temperature is not None:
            kwargs["temperature"] = self._config.temperature
        if self._config.max_tokens is not None:
            kwargs["max_tokens"] = self._config.max_tokens
        response = await self._client.chat.completions.create(
            model=self._config.model,
            messages=[{"role": "user", "content": prompt}],
            stream=False,
            **kwargs,
        )
        if not response.choices:
            return ""
        return (response.choices[0].message.content or "").strip()

    async def complete(self, prompt: str) -> Optional[str]:
        started = time.perf_counter()
        log.info("event=llm_request model=%s prompt_len=%d", self._config.model, len(prompt))
        try:
            text = await asyncio.wait_for(self._call_model(prompt), timeout=self._config.timeout_sec)
        except asyncio.TimeoutError:
            log.warning("event=llm_timeout timeout_sec=%.1f", self._config.timeout_sec)
            return None
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.warning("event=llm_error error=%s", exc)
            return None

        elapsed_ms = (time.perf_counter() - started) * 1000
        if not text:
            log.warning("event=llm_empty_response duration_ms=%.1f", elapsed_ms)
            return None
        log.info("event=llm_response chars=%d duration_ms=%.1f", len(text), elapsed_ms)
        return text

    async def aclose(self) -> None:
        await self._client.close()
