"""Streamed answer generation with a reasoning/response split.

Reasoning-capable models interleave "thinking" tokens before the answer.
``StreamState`` turns the raw token callbacks into a well-formed event
sequence on the channel:

- first reasoning token: ``thinking_start`` (once)
- every reasoning token: ``thinking_progress``
- first response token after reasoning: ``thinking_end`` (once)
- first response token with no prior reasoning: synthesised
  ``thinking_start`` + ``thinking_end``
- every response token: ``answer_progress``
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import Future, TimeoutError as FutureTimeoutError
from enum import Enum
from typing import Callable, Optional

from .channel import ChatEvent, EventChannel, Stage
from .constants import (
    ANSWER_SYSTEM_PROMPT,
    MOCK_ANSWER_FRAGMENTS,
    MSG_GENERATION_FAILED,
    MSG_RESPONSE_TIMEOUT,
    MSG_THINKING_END,
    MSG_THINKING_START,
    STREAM_TIMEOUT_SECONDS,
)
from .logger import LOGGER
from .providers import HighAvailabilitySelector
from .query_understanding import SessionPurpose
from .user_settings import SettingsStore


class StreamPhase(str, Enum):
    IDLE = "idle"
    THINKING = "thinking"
    DONE = "done"


class StreamState:
    """Per-run thinking phase tracker.

    Each transition checks and emits under one lock, so callbacks arriving
    on different threads cannot duplicate ``thinking_start`` or
    ``thinking_end``.
    """

    def __init__(self, channel: EventChannel) -> None:
        self._channel = channel
        self._lock = threading.Lock()
        self.phase = StreamPhase.IDLE
        self.reasoning_seen = False

    def on_reasoning(self, token: str) -> None:
        with self._lock:
            self.reasoning_seen = True
            if self.phase is StreamPhase.IDLE:
                self._channel.send(ChatEvent(MSG_THINKING_START, Stage.THINKING_START))
                self.phase = StreamPhase.THINKING
            self._channel.send(ChatEvent(token, Stage.THINKING_PROGRESS))

    def on_response(self, token: str) -> None:
        with self._lock:
            if self.phase is StreamPhase.IDLE:
                self._channel.send(ChatEvent(MSG_THINKING_START, Stage.THINKING_START))
                self._channel.send(ChatEvent(MSG_THINKING_END, Stage.THINKING_END))
                self.phase = StreamPhase.DONE
            elif self.phase is StreamPhase.THINKING:
                self._channel.send(ChatEvent(MSG_THINKING_END, Stage.THINKING_END))
                self.phase = StreamPhase.DONE
            self._channel.send(ChatEvent(token, Stage.ANSWER_PROGRESS))


class StreamingAnswerGenerator:
    """Stream an answer for a prompt through the selected provider."""

    def __init__(
        self,
        settings: SettingsStore,
        selector: HighAvailabilitySelector,
        timeout_seconds: float = STREAM_TIMEOUT_SECONDS,
    ) -> None:
        self._settings = settings
        self._selector = selector
        self.timeout_seconds = timeout_seconds

    @staticmethod
    def _send_mock_answer(channel: EventChannel) -> None:
        for fragment in MOCK_ANSWER_FRAGMENTS:
            channel.send(ChatEvent(fragment, Stage.ANSWER_PROGRESS))

    def generate(self, prompt: str, user_id: str, channel: EventChannel) -> Optional[str]:
        """Stream the answer onto ``channel`` and return the full text.

        Returns None when no model is configured (a canned answer is sent
        instead), on stream error and on timeout.

        Raises:
            ProviderSelectionError: No provider instance could be selected.
        """
        model = self._settings.get_default_model(user_id)
        if model is None:
            LOGGER.info("No default model for user %s, sending canned answer", user_id)
            self._send_mock_answer(channel)
            return None

        selection = self._selector.select_provider(
            model,
            user_id,
            SessionPurpose.ANSWER.key_for(user_id),
            self._settings.get_fallback_chain(user_id),
        )
        LOGGER.info(
            "Streaming answer: user=%s instance=%s prompt_len=%d",
            user_id, selection.instance_id, len(prompt),
        )

        state = StreamState(channel)
        finished: "Future[str]" = Future()
        settle_lock = threading.Lock()
        started = time.monotonic()

        def elapsed_ms() -> float:
            return (time.monotonic() - started) * 1000

        def settle(action: Callable[[], object]) -> bool:
            """Run ``action`` only if the outcome is still open; exactly one caller wins."""
            with settle_lock:
                if finished.done():
                    return False
                action()
                return True

        def on_complete_reasoning(reasoning: str) -> None:
            LOGGER.info("Reasoning complete, length=%d", len(reasoning))
            LOGGER.debug("Full reasoning:\n%s", reasoning)

        def on_complete_response(answer: str) -> None:
            if not settle(lambda: finished.set_result(answer)):
                LOGGER.warning("Answer for %s completed after the wait ended, ignoring", user_id)
                return
            LOGGER.info("Answer complete: user=%s length=%d", user_id, len(answer))
            self._selector.report_outcome(selection.instance_id, selection.model.model_id, True, elapsed_ms())

        def on_error(exc: BaseException) -> None:
            if not settle(lambda: finished.set_exception(exc)):
                LOGGER.warning("Answer stream for %s failed after the wait ended: %s", user_id, exc)
                return
            LOGGER.error("Answer stream failed: %s", exc)
            channel.send(ChatEvent.error(MSG_GENERATION_FAILED % exc))
            self._selector.report_outcome(
                selection.instance_id, selection.model.model_id, False, elapsed_ms(), str(exc),
            )

        try:
            token_stream = selection.provider.stream_chat(prompt, selection.model, ANSWER_SYSTEM_PROMPT)
        except Exception as exc:
            self._selector.report_outcome(
                selection.instance_id, selection.model.model_id, False, elapsed_ms(), str(exc),
            )
            raise
        (
            token_stream
            .on_partial_response(state.on_response)
            .on_partial_reasoning(state.on_reasoning)
            .on_complete_reasoning(on_complete_reasoning)
            .on_complete_response(on_complete_response)
            .on_error(on_error)
            .start()
        )

        try:
            return finished.result(timeout=self.timeout_seconds)
        except FutureTimeoutError:
            if not settle(finished.cancel):
                # The stream settled between the wait expiring and now
                return self._settled_answer(finished)
            LOGGER.error("Answer stream timed out after %.0fs (user=%s)", self.timeout_seconds, user_id)
            channel.send(ChatEvent.timeout(MSG_RESPONSE_TIMEOUT))
            self._selector.report_outcome(
                selection.instance_id, selection.model.model_id, False, elapsed_ms(), MSG_RESPONSE_TIMEOUT,
            )
            return None
        except Exception as exc:
            # Already surfaced on the channel by on_error
            LOGGER.warning("Answer stream ended with error: %s", exc)
            return None

    @staticmethod
    def _settled_answer(finished: "Future[str]") -> Optional[str]:
        try:
            return finished.result(timeout=0)
        except Exception as exc:
            LOGGER.warning("Answer stream ended with error: %s", exc)
            return None


__all__ = ["StreamPhase", "StreamState", "StreamingAnswerGenerator"]
