"""Logger level resolution and handler setup."""

import logging

import pytest

from knowledge_qa.logger import resolve_level, setup_logger


@pytest.fixture
def clean_env(monkeypatch):
    monkeypatch.delenv("KNOWLEDGE_QA_LOG_LEVEL", raising=False)
    monkeypatch.delenv("DEBUG_RAG", raising=False)
    return monkeypatch


def test_default_level_is_info(clean_env):
    assert resolve_level() == logging.INFO


def test_debug_rag_switches_to_debug(clean_env):
    clean_env.setenv("DEBUG_RAG", "TRUE")
    assert resolve_level() == logging.DEBUG


def test_explicit_level_wins_over_debug_flag(clean_env):
    clean_env.setenv("DEBUG_RAG", "true")
    clean_env.setenv("KNOWLEDGE_QA_LOG_LEVEL", "warning")
    assert resolve_level() == logging.WARNING


def test_unknown_level_name_is_ignored(clean_env):
    clean_env.setenv("KNOWLEDGE_QA_LOG_LEVEL", "chatty")
    assert resolve_level() == logging.INFO


def test_setup_is_idempotent_and_keeps_foreign_handlers(clean_env):
    name = "knowledge_qa.tests.setup"
    foreign = logging.NullHandler()
    logging.getLogger(name).addHandler(foreign)

    setup_logger(name)
    logger = setup_logger(name, level=logging.ERROR)

    assert foreign in logger.handlers
    assert len(logger.handlers) == 2
    assert logger.level == logging.ERROR
    assert logger.propagate is False
    logger.removeHandler(foreign)
