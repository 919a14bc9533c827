"""Environment configuration and directory management."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .logger import LOGGER


def ensure_directory(path: Path) -> Path:
    """Create a directory if it does not already exist."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def resolve_path(env_key: str, default: Path) -> Path:
    """Resolve a path from environment variables or revert to a default."""
    value = os.getenv(env_key)
    return ensure_directory(Path(value).expanduser().resolve()) if value else ensure_directory(default.resolve())


def _env_int(env_key: str, default: int) -> int:
    raw = os.getenv(env_key)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        LOGGER.warning("Invalid integer for %s=%r, using %d", env_key, raw, default)
        return default


def _env_float(env_key: str, default: float) -> float:
    raw = os.getenv(env_key)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        LOGGER.warning("Invalid number for %s=%r, using %s", env_key, raw, default)
        return default


@dataclass(frozen=True)
class PathConfig:
    base_dir: Path
    data_dir: Path
    snapshot_dir: Path
    settings_path: Path


def build_paths(base_dir: Optional[Path] = None) -> PathConfig:
    """Produce all filesystem paths used by the application."""
    base = base_dir or Path(__file__).resolve().parent.parent
    data_dir = resolve_path("KNOWLEDGE_QA_DATA_DIR", base / "data")
    snapshot_dir = resolve_path("KNOWLEDGE_QA_SNAPSHOTS", data_dir / "snapshots")
    settings_env = os.getenv("KNOWLEDGE_QA_SETTINGS")
    settings_path = (
        Path(settings_env).expanduser().resolve() if settings_env else data_dir / "settings.yaml"
    )
    return PathConfig(
        base_dir=base,
        data_dir=data_dir,
        snapshot_dir=snapshot_dir,
        settings_path=settings_path,
    )


class AppConfig:
    """Singleton-like accessor around shared configuration."""

    _instance: Optional["AppConfig"] = None

    def __init__(self) -> None:
        self.paths = build_paths()
        self.qdrant_url = os.getenv("QDRANT_URL", "http://localhost:6333")
        self.qdrant_collection = os.getenv("QDRANT_COLLECTION", "knowledge_chunks")
        self.cohere_api_key = os.getenv("COHERE_API_KEY") or None
        self.stream_timeout_seconds = _env_float("RAG_STREAM_TIMEOUT_SECONDS", 30 * 60)
        self.max_workers = _env_int("RAG_MAX_WORKERS", 8)

        LOGGER.debug("Configuration initialised with base directory %s", self.paths.base_dir)
        LOGGER.info(
            "Qdrant at %s (collection '%s'), rerank %s, stream timeout %.0fs",
            self.qdrant_url,
            self.qdrant_collection,
            "enabled" if self.cohere_api_key else "disabled",
            self.stream_timeout_seconds,
        )

    @classmethod
    def get(cls) -> "AppConfig":
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Drop the cached instance so the next ``get()`` re-reads the environment."""
        cls._instance = None


__all__ = ["AppConfig", "PathConfig", "build_paths", "ensure_directory", "resolve_path"]
