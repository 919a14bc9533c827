"""Push channel carrying staged progress events from a run to its consumer."""

from __future__ import annotations

import queue
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional

from .constants import MSG_CONNECTION_TIMEOUT, MSG_PROCESSING_ERROR
from .logger import LOGGER


class Stage(str, Enum):
    RETRIEVAL_START = "retrieval_start"
    RETRIEVAL_PROGRESS = "retrieval_progress"
    RETRIEVAL_END = "retrieval_end"
    THINKING_START = "thinking_start"
    THINKING_PROGRESS = "thinking_progress"
    THINKING_END = "thinking_end"
    ANSWER_START = "answer_start"
    ANSWER_PROGRESS = "answer_progress"
    ANSWER_END = "answer_end"
    ERROR = "error"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class ChatEvent:
    content: str
    stage: Stage
    payload: Optional[Any] = None
    done: bool = False

    @classmethod
    def error(cls, message: str) -> "ChatEvent":
        return cls(content=message, stage=Stage.ERROR, payload={"error": message}, done=True)

    @classmethod
    def timeout(cls, message: str) -> "ChatEvent":
        return cls(content=message, stage=Stage.TIMEOUT, payload={"error": message}, done=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "content": self.content,
            "stage": self.stage.value,
            "payload": self.payload,
            "done": self.done,
        }


_CLOSED = object()


class EventChannel:
    """Thread-safe event queue with completion, timeout and error hooks.

    Producers call ``send``; the consumer iterates ``events()`` until the
    channel completes. ``complete()`` is idempotent, and anything sent after
    it is dropped.
    """

    def __init__(self, timeout_seconds: Optional[float] = None) -> None:
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._lock = threading.Lock()
        self._completed = False
        self._timeout_seconds = timeout_seconds
        self._complete_hooks: List[Callable[[], None]] = []
        self._timeout_hooks: List[Callable[[], None]] = []
        self._error_hooks: List[Callable[[BaseException], None]] = []

    # -----------------------------------------------------------------
    # Hooks
    # -----------------------------------------------------------------

    def on_complete(self, hook: Callable[[], None]) -> "EventChannel":
        self._complete_hooks.append(hook)
        return self

    def on_timeout(self, hook: Callable[[], None]) -> "EventChannel":
        self._timeout_hooks.append(hook)
        return self

    def on_error(self, hook: Callable[[BaseException], None]) -> "EventChannel":
        self._error_hooks.append(hook)
        return self

    @staticmethod
    def _run_hooks(hooks: List[Callable], *args) -> None:
        for hook in hooks:
            try:
                hook(*args)
            except Exception as exc:
                LOGGER.warning("Channel hook %r failed: %s", hook, exc)

    # -----------------------------------------------------------------
    # Producer side
    # -----------------------------------------------------------------

    @property
    def completed(self) -> bool:
        with self._lock:
            return self._completed

    def send(self, event: ChatEvent) -> bool:
        with self._lock:
            if self._completed:
                LOGGER.debug("Channel closed, dropping %s event", event.stage.value)
                return False
            self._queue.put(event)
            return True

    def complete(self) -> None:
        with self._lock:
            if self._completed:
                return
            self._completed = True
            self._queue.put(_CLOSED)
        self._run_hooks(self._complete_hooks)

    def fail(self, exc: BaseException) -> None:
        """Abort from the consumer side, e.g. on client disconnect."""
        LOGGER.info("Channel failed: %s", exc)
        self._run_hooks(self._error_hooks, exc)
        self.complete()

    def expire(self) -> None:
        """Close the channel because its consumer deadline passed."""
        self._run_hooks(self._timeout_hooks)
        self.send(ChatEvent.timeout(MSG_CONNECTION_TIMEOUT))
        self.complete()

    @contextmanager
    def run_scope(self) -> Iterator["EventChannel"]:
        """Run a producer body that always ends by completing the channel.

        Unexpected exceptions become a single ``processing error`` event.
        """
        try:
            yield self
        except Exception as exc:
            LOGGER.error("RAG run failed: %s", exc, exc_info=True)
            self.send(ChatEvent.error(MSG_PROCESSING_ERROR % exc))
        finally:
            self.complete()

    # -----------------------------------------------------------------
    # Consumer side
    # -----------------------------------------------------------------

    def events(self, poll_interval: float = 0.5) -> Iterator[ChatEvent]:
        """Yield events until the channel completes or its timeout elapses."""
        deadline = time.monotonic() + self._timeout_seconds if self._timeout_seconds else None
        while True:
            if deadline is not None and time.monotonic() >= deadline and not self.completed:
                self.expire()
            try:
                item = self._queue.get(timeout=poll_interval)
            except queue.Empty:
                continue
            if item is _CLOSED:
                return
            yield item


__all__ = ["ChatEvent", "EventChannel", "Stage"]
