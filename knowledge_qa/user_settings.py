"""Provider, model and per-user settings loaded from a YAML file.

The file has four sections::

    providers:          # named provider instances
      gemini-primary: {kind: gemini, api_key_env: GOOGLE_API_KEY}
    models:             # model id -> providers that serve it
      gemini-2.5-flash: {providers: [gemini-primary], reasoning: true}
    defaults:           # applied to every user
      default_model: gemini-2.5-flash
      fallback_chain: [gemini-2.5-flash-lite]
      embedding: {model_id: models/text-embedding-004, api_key_env: GOOGLE_API_KEY}
    users:              # per-user overrides of ``defaults``
      alice: {default_model: null}

A ``default_model`` of ``null`` means the user has no chat model configured.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from .logger import LOGGER
from .models import EmbeddingConfig


@dataclass(frozen=True)
class ProviderConfig:
    name: str
    kind: str = "gemini"
    api_key_env: Optional[str] = None
    base_url: Optional[str] = None

    @property
    def api_key(self) -> Optional[str]:
        return os.getenv(self.api_key_env) if self.api_key_env else None


@dataclass(frozen=True)
class ModelConfig:
    model_id: str
    providers: Tuple[str, ...]
    reasoning: bool = False


def create_default_settings(settings_path: Path) -> Dict[str, Any]:
    """Write a starter settings file and return its contents."""
    settings_path.parent.mkdir(parents=True, exist_ok=True)

    default_settings = {
        "providers": {
            "gemini-primary": {"kind": "gemini", "api_key_env": "GOOGLE_API_KEY"},
        },
        "models": {
            "gemini-2.5-flash": {"providers": ["gemini-primary"], "reasoning": True},
            "gemini-2.5-flash-lite": {"providers": ["gemini-primary"], "reasoning": False},
        },
        "defaults": {
            "default_model": "gemini-2.5-flash",
            "fallback_chain": ["gemini-2.5-flash-lite"],
            "embedding": {
                "model_id": "models/text-embedding-004",
                "api_key_env": "GOOGLE_API_KEY",
            },
        },
        "users": {},
    }

    with open(settings_path, "w") as f:
        yaml.dump(default_settings, f, default_flow_style=False, sort_keys=False)

    LOGGER.warning("Created default settings at %s", settings_path)
    return default_settings


class SettingsStore:
    """Read-only view over the settings document."""

    def __init__(self, raw: Dict[str, Any]) -> None:
        self._raw = raw or {}
        self.providers: Dict[str, ProviderConfig] = {
            name: ProviderConfig(
                name=name,
                kind=spec.get("kind", "gemini"),
                api_key_env=spec.get("api_key_env"),
                base_url=spec.get("base_url"),
            )
            for name, spec in (self._raw.get("providers") or {}).items()
        }
        self.models: Dict[str, ModelConfig] = {
            model_id: ModelConfig(
                model_id=model_id,
                providers=tuple(spec.get("providers") or ()),
                reasoning=bool(spec.get("reasoning", False)),
            )
            for model_id, spec in (self._raw.get("models") or {}).items()
        }

    @classmethod
    def load(cls, settings_path: Path) -> "SettingsStore":
        """Load settings from YAML, creating a default file if none exists."""
        if not settings_path.exists():
            return cls(create_default_settings(settings_path))

        try:
            with open(settings_path, "r") as f:
                raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in settings file: {e}")

        store = cls(raw)
        LOGGER.debug(
            "Loaded settings: %d providers, %d models", len(store.providers), len(store.models)
        )
        return store

    # -----------------------------------------------------------------
    # Per-user lookups
    # -----------------------------------------------------------------

    def _user_value(self, user_id: str, key: str) -> Any:
        user_section = (self._raw.get("users") or {}).get(user_id) or {}
        if key in user_section:
            return user_section[key]
        return (self._raw.get("defaults") or {}).get(key)

    def get_model(self, model_id: str) -> Optional[ModelConfig]:
        return self.models.get(model_id)

    def get_default_model(self, user_id: str) -> Optional[ModelConfig]:
        """Resolve the user's default chat model, or None when unset/unknown."""
        model_id = self._user_value(user_id, "default_model")
        if not model_id:
            return None
        model = self.models.get(model_id)
        if model is None:
            LOGGER.warning("Default model '%s' for user %s is not configured", model_id, user_id)
        return model

    def get_fallback_chain(self, user_id: str) -> List[str]:
        chain = self._user_value(user_id, "fallback_chain") or []
        return [str(item) for item in chain if item]

    def get_embedding_config(self, user_id: str) -> EmbeddingConfig:
        spec = self._user_value(user_id, "embedding") or {}
        api_key_env = spec.get("api_key_env")
        return EmbeddingConfig(
            api_key=os.getenv(api_key_env) if api_key_env else spec.get("api_key"),
            model_id=spec.get("model_id", "models/text-embedding-004"),
            base_url=spec.get("base_url"),
        )


__all__ = [
    "ModelConfig",
    "ProviderConfig",
    "SettingsStore",
    "create_default_settings",
]
