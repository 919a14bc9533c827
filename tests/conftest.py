import pytest

from knowledge_qa.channel import EventChannel
from knowledge_qa.providers import HighAvailabilitySelector, ProviderRegistry
from knowledge_qa.user_settings import SettingsStore
from tests.fixtures.fakes import FakeChatProvider


SETTINGS = {
    "providers": {
        "primary": {"kind": "gemini", "api_key_env": "PRIMARY_KEY"},
        "backup": {"kind": "gemini", "api_key_env": "BACKUP_KEY"},
    },
    "models": {
        "main-model": {"providers": ["primary", "backup"], "reasoning": True},
        "lite-model": {"providers": ["primary"], "reasoning": False},
    },
    "defaults": {
        "default_model": "main-model",
        "fallback_chain": ["lite-model"],
        "embedding": {"model_id": "models/test-embedding", "api_key": "test-key"},
    },
    "users": {
        "nomodel": {"default_model": None},
    },
}


@pytest.fixture
def settings():
    return SettingsStore(SETTINGS)


@pytest.fixture
def provider():
    return FakeChatProvider(name="primary")


@pytest.fixture
def backup_provider():
    return FakeChatProvider(name="backup")


@pytest.fixture
def registry(settings, provider, backup_provider):
    registry = ProviderRegistry(settings)
    registry.register("primary", provider)
    registry.register("backup", backup_provider)
    return registry


@pytest.fixture
def selector(settings, registry):
    return HighAvailabilitySelector(settings, registry, failure_threshold=2, cooldown_seconds=30)


@pytest.fixture
def channel():
    return EventChannel()
