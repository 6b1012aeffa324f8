"""Shared pytest configuration."""

import pytest


@pytest.fixture(autouse=True)
def _plain_logs(monkeypatch):
    monkeypatch.setenv("AUTOPLAY_NO_COLOR", "1")
    monkeypatch.delenv("AUTOPLAY_VERBOSE", raising=False)
