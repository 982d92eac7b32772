"""Shared pytest fixtures."""

from __future__ import annotations

import os

import pytest

from tests.helpers import QUIZ_DOCUMENT, SKY_DOCUMENT


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    """Keep developer environment overrides and log files out of the tests."""

    for name in list(os.environ):
        if name.startswith("QUIZSMITH_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("QUIZSMITH_LOG_DIR", str(tmp_path / "logs"))


@pytest.fixture
def sky_document() -> str:
    return SKY_DOCUMENT


@pytest.fixture
def quiz_document() -> str:
    return QUIZ_DOCUMENT
