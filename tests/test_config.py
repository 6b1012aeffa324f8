"""Tests for environment-driven configuration."""

import pytest

from autoplay.config import Config


def test_defaults_validate():
    Config.validate()


@pytest.mark.parametrize("name", ["MAX_TURNS", "PARALLEL_SHARDS", "MAX_CONCURRENT", "MAX_TOKENS"])
def test_non_positive_limits_are_rejected(monkeypatch, name):
    monkeypatch.setattr(Config, name, 0)
    with pytest.raises(ValueError, match="must be a positive integer"):
        Config.validate()


def test_negative_turn_deadline_is_rejected(monkeypatch):
    monkeypatch.setattr(Config, "TURN_TIMEOUT_MS", -1)
    with pytest.raises(ValueError, match="AUTOPLAY_TURN_TIMEOUT_MS"):
        Config.validate()


def test_display_lists_limits(monkeypatch):
    monkeypatch.setattr(Config, "TURN_TIMEOUT_MS", 0)
    monkeypatch.setattr(Config, "CORE_VERSION", "v9.9.9")
    text = Config.display()
    assert text.startswith("Autoplay Configuration:")
    assert "Turn Deadline: disabled" in text
    assert "Core Version: v9.9.9" in text
