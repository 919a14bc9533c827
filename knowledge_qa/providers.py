"""Chat providers, token streams and high-availability provider selection.

``HighAvailabilitySelector`` picks a provider instance (``provider:model``)
for a model, walking the user's fallback chain when the preferred
instances are tripped. Instances trip after consecutive failures and
recover after a cooldown. A session key pins the run to the instance it
used last while that instance stays healthy.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Iterator, List, NamedTuple, Optional, Protocol

from google import genai
from google.genai import types
from google.genai.types import ThinkingConfig

from .logger import LOGGER
from .user_settings import ModelConfig, ProviderConfig, SettingsStore


class ProviderSelectionError(Exception):
    """Raised when no provider instance can serve the requested model."""
    pass


# =============================================================================
# Messages and token streams
# =============================================================================

@dataclass(frozen=True)
class ChatMessage:
    role: str  # "system" | "user"
    content: str

    @classmethod
    def system(cls, content: str) -> "ChatMessage":
        return cls("system", content)

    @classmethod
    def user(cls, content: str) -> "ChatMessage":
        return cls("user", content)


class StreamChunk(NamedTuple):
    text: str
    reasoning: bool = False


class TokenStream:
    """Callback-driven wrapper around a chunk iterator.

    Register handlers with the fluent ``on_*`` methods, then call
    ``start()``; chunks are consumed on a daemon thread and handlers run
    on that thread.
    """

    def __init__(self, chunk_source: Callable[[], Iterable[StreamChunk]]) -> None:
        self._chunk_source = chunk_source
        self._on_partial_response: Callable[[str], None] = lambda _text: None
        self._on_partial_reasoning: Callable[[str], None] = lambda _text: None
        self._on_complete_reasoning: Callable[[str], None] = lambda _text: None
        self._on_complete_response: Callable[[str], None] = lambda _text: None
        self._on_error: Callable[[BaseException], None] = lambda _exc: None
        self._thread: Optional[threading.Thread] = None

    def on_partial_response(self, handler: Callable[[str], None]) -> "TokenStream":
        self._on_partial_response = handler
        return self

    def on_partial_reasoning(self, handler: Callable[[str], None]) -> "TokenStream":
        self._on_partial_reasoning = handler
        return self

    def on_complete_reasoning(self, handler: Callable[[str], None]) -> "TokenStream":
        self._on_complete_reasoning = handler
        return self

    def on_complete_response(self, handler: Callable[[str], None]) -> "TokenStream":
        self._on_complete_response = handler
        return self

    def on_error(self, handler: Callable[[BaseException], None]) -> "TokenStream":
        self._on_error = handler
        return self

    def start(self) -> None:
        if self._thread is not None:
            raise RuntimeError("TokenStream already started")
        self._thread = threading.Thread(target=self._run, name="token-stream", daemon=True)
        self._thread.start()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def _run(self) -> None:
        reasoning_parts: List[str] = []
        response_parts: List[str] = []
        try:
            for chunk in self._chunk_source():
                if not chunk.text:
                    continue
                if chunk.reasoning:
                    reasoning_parts.append(chunk.text)
                    self._on_partial_reasoning(chunk.text)
                else:
                    response_parts.append(chunk.text)
                    self._on_partial_response(chunk.text)
            if reasoning_parts:
                self._on_complete_reasoning("".join(reasoning_parts))
            self._on_complete_response("".join(response_parts))
        except Exception as exc:
            LOGGER.error("TokenStream failed: %s", exc)
            self._on_error(exc)


# =============================================================================
# Providers
# =============================================================================

class ChatProvider(Protocol):
    name: str

    def chat(self, messages: List[ChatMessage], model: ModelConfig) -> str:
        ...

    def stream_chat(self, prompt: str, model: ModelConfig, system_prompt: Optional[str] = None) -> TokenStream:
        ...


class GeminiChatProvider:
    """Chat provider backed by the google-genai SDK."""

    TEMPERATURE = 0.3

    def __init__(self, config: ProviderConfig) -> None:
        api_key = config.api_key
        if not api_key:
            raise RuntimeError(f"Provider '{config.name}' has no API key ({config.api_key_env} is unset)")
        self.name = config.name
        if config.base_url:
            self._client = genai.Client(
                api_key=api_key,
                http_options=types.HttpOptions(base_url=config.base_url),
            )
        else:
            self._client = genai.Client(api_key=api_key)

    @staticmethod
    def _split_messages(messages: List[ChatMessage]) -> tuple:
        system = "\n\n".join(m.content for m in messages if m.role == "system") or None
        user = "\n\n".join(m.content for m in messages if m.role != "system")
        return system, user

    def chat(self, messages: List[ChatMessage], model: ModelConfig) -> str:
        system, user = self._split_messages(messages)
        response = self._client.models.generate_content(
            model=model.model_id,
            contents=user,
            config=types.GenerateContentConfig(
                system_instruction=system,
                temperature=self.TEMPERATURE,
            ),
        )
        return response.text or ""

    def stream_chat(self, prompt: str, model: ModelConfig, system_prompt: Optional[str] = None) -> TokenStream:
        config = types.GenerateContentConfig(
            system_instruction=system_prompt,
            temperature=self.TEMPERATURE,
            thinking_config=ThinkingConfig(include_thoughts=True) if model.reasoning else None,
        )

        def chunks() -> Iterator[StreamChunk]:
            response_stream = self._client.models.generate_content_stream(
                model=model.model_id,
                contents=prompt,
                config=config,
            )
            for chunk in response_stream:
                for candidate in chunk.candidates or []:
                    if candidate.content is None:
                        continue
                    for part in candidate.content.parts or []:
                        if part.text:
                            yield StreamChunk(part.text, bool(part.thought))

        return TokenStream(chunks)


class ProviderRegistry:
    """Lazily instantiates one chat provider per configured provider name."""

    def __init__(self, settings: SettingsStore) -> None:
        self._settings = settings
        self._providers: Dict[str, ChatProvider] = {}
        self._lock = threading.Lock()

    def register(self, name: str, provider: ChatProvider) -> None:
        with self._lock:
            self._providers[name] = provider

    def get(self, name: str) -> ChatProvider:
        with self._lock:
            provider = self._providers.get(name)
            if provider is not None:
                return provider
            config = self._settings.providers.get(name)
            if config is None:
                raise KeyError(f"Unknown provider '{name}'")
            if config.kind != "gemini":
                raise ValueError(f"Unsupported provider kind '{config.kind}' for '{name}'")
            provider = GeminiChatProvider(config)
            self._providers[name] = provider
            LOGGER.info("Provider '%s' initialised", name)
            return provider


# =============================================================================
# High-availability selection
# =============================================================================

@dataclass(frozen=True)
class ProviderSelection:
    provider: ChatProvider
    model: ModelConfig
    instance_id: str


@dataclass
class InstanceHealth:
    consecutive_failures: int = 0
    open_until: float = 0.0
    total_calls: int = 0
    total_failures: int = 0
    avg_latency_ms: float = 0.0
    last_error: Optional[str] = None


def instance_id_for(provider_name: str, model_id: str) -> str:
    return f"{provider_name}:{model_id}"


class HighAvailabilitySelector:
    """Choose a healthy provider instance and learn from reported outcomes."""

    LATENCY_SMOOTHING = 0.2

    def __init__(
        self,
        settings: SettingsStore,
        registry: ProviderRegistry,
        failure_threshold: int = 3,
        cooldown_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings
        self._registry = registry
        self._failure_threshold = failure_threshold
        self._cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._health: Dict[str, InstanceHealth] = {}
        self._affinity: Dict[str, str] = {}
        self._lock = threading.Lock()

    def _candidates(self, model: ModelConfig, fallback_chain: List[str]) -> List[tuple]:
        models = [model]
        for model_id in fallback_chain:
            if model_id == model.model_id or any(m.model_id == model_id for m in models):
                continue
            fallback = self._settings.get_model(model_id)
            if fallback is None:
                LOGGER.warning("Fallback model '%s' is not configured, skipping", model_id)
                continue
            models.append(fallback)
        return [
            (instance_id_for(provider_name, m.model_id), provider_name, m)
            for m in models
            for provider_name in m.providers
        ]

    def _is_available(self, instance_id: str, now: float) -> bool:
        health = self._health.get(instance_id)
        if health is None or health.consecutive_failures < self._failure_threshold:
            return True
        # Half-open once the cooldown has elapsed
        return now >= health.open_until

    def select_provider(
        self,
        model: ModelConfig,
        user_id: str,
        session_key: str,
        fallback_chain: Optional[List[str]] = None,
    ) -> ProviderSelection:
        """Return the instance to call for ``model``.

        Available instances are tried in order, the session's pinned
        instance first. An instance whose provider cannot be built is
        recorded as a failed call and skipped.

        Raises:
            ProviderSelectionError: No configured instance is available.
        """
        candidates = self._candidates(model, fallback_chain or [])
        now = self._clock()

        with self._lock:
            available = [c for c in candidates if self._is_available(c[0], now)]
            pinned = self._affinity.get(session_key)
        available.sort(key=lambda c: c[0] != pinned)

        build_errors = []
        for instance_id, provider_name, chosen_model in available:
            try:
                provider = self._registry.get(provider_name)
            except Exception as exc:
                LOGGER.warning("ProviderSelector: cannot build '%s', skipping %s: %s", provider_name, instance_id, exc)
                self.report_outcome(instance_id, chosen_model.model_id, False, 0.0, str(exc))
                build_errors.append(f"{instance_id}: {exc}")
                continue

            with self._lock:
                self._affinity[session_key] = instance_id
            if chosen_model.model_id != model.model_id:
                LOGGER.info(
                    "ProviderSelector: falling back from %s to %s for %s",
                    model.model_id, chosen_model.model_id, session_key,
                )
            LOGGER.debug("ProviderSelector: %s -> %s", session_key, instance_id)
            return ProviderSelection(provider=provider, model=chosen_model, instance_id=instance_id)

        message = f"No available provider for model '{model.model_id}' (user {user_id})"
        if build_errors:
            message += f"; unavailable: {'; '.join(build_errors)}"
        raise ProviderSelectionError(message)

    def report_outcome(
        self,
        instance_id: str,
        model_id: str,
        success: bool,
        latency_ms: float,
        error_message: Optional[str] = None,
    ) -> None:
        """Record a call outcome. Never raises."""
        try:
            with self._lock:
                health = self._health.setdefault(instance_id, InstanceHealth())
                health.total_calls += 1
                if health.total_calls == 1:
                    health.avg_latency_ms = float(latency_ms)
                else:
                    health.avg_latency_ms += self.LATENCY_SMOOTHING * (latency_ms - health.avg_latency_ms)

                if success:
                    health.consecutive_failures = 0
                    health.open_until = 0.0
                    health.last_error = None
                    return

                health.total_failures += 1
                health.consecutive_failures += 1
                health.last_error = error_message
                if health.consecutive_failures >= self._failure_threshold:
                    health.open_until = self._clock() + self._cooldown_seconds
                    LOGGER.warning(
                        "ProviderSelector: %s (%s) tripped after %d failures: %s",
                        instance_id, model_id, health.consecutive_failures, error_message,
                    )
        except Exception as exc:
            LOGGER.warning("ProviderSelector: failed to record outcome for %s: %s", instance_id, exc)

    def health_of(self, instance_id: str) -> InstanceHealth:
        with self._lock:
            return self._health.get(instance_id, InstanceHealth())


__all__ = [
    "ChatMessage",
    "ChatProvider",
    "GeminiChatProvider",
    "HighAvailabilitySelector",
    "InstanceHealth",
    "ProviderRegistry",
    "ProviderSelection",
    "ProviderSelectionError",
    "StreamChunk",
    "TokenStream",
    "instance_id_for",
]
