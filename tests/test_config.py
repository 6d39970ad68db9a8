"""Tests for environment configuration helpers."""

import importlib
import re

import pytest

import config
from config import default_consumer_name, get_bool_env, get_float_env, get_int_env


class TestGetIntEnv:
    """Tests for get_int_env."""

    def test_missing_uses_default(self, monkeypatch):
        monkeypatch.delenv("MEDIA_ENGINE_TEST_INT", raising=False)
        assert get_int_env("MEDIA_ENGINE_TEST_INT", 7) == 7

    def test_valid_value(self, monkeypatch):
        monkeypatch.setenv("MEDIA_ENGINE_TEST_INT", "42")
        assert get_int_env("MEDIA_ENGINE_TEST_INT", 7) == 42

    def test_invalid_value_uses_default(self, monkeypatch, caplog):
        monkeypatch.setenv("MEDIA_ENGINE_TEST_INT", "lots")
        assert get_int_env("MEDIA_ENGINE_TEST_INT", 7) == 7
        assert "Invalid MEDIA_ENGINE_TEST_INT" in caplog.text

    @pytest.mark.parametrize("value", ["0", "101"])
    def test_out_of_range_uses_default(self, monkeypatch, value):
        monkeypatch.setenv("MEDIA_ENGINE_TEST_INT", value)
        assert get_int_env("MEDIA_ENGINE_TEST_INT", 7, min_val=1, max_val=100) == 7


class TestGetFloatEnv:
    """Tests for get_float_env."""

    def test_valid_value(self, monkeypatch):
        monkeypatch.setenv("MEDIA_ENGINE_TEST_FLOAT", "2.5")
        assert get_float_env("MEDIA_ENGINE_TEST_FLOAT", 1.0) == 2.5

    @pytest.mark.parametrize("value", ["inf", "-inf", "nan", "fast"])
    def test_rejected_values(self, monkeypatch, value):
        monkeypatch.setenv("MEDIA_ENGINE_TEST_FLOAT", value)
        assert get_float_env("MEDIA_ENGINE_TEST_FLOAT", 1.0) == 1.0

    def test_below_minimum(self, monkeypatch):
        monkeypatch.setenv("MEDIA_ENGINE_TEST_FLOAT", "0.01")
        assert get_float_env("MEDIA_ENGINE_TEST_FLOAT", 5.0, min_val=0.1) == 5.0


class TestGetBoolEnv:
    """Tests for get_bool_env."""

    @pytest.mark.parametrize("value", ["true", "1", "YES", " on "])
    def test_truthy(self, monkeypatch, value):
        monkeypatch.setenv("MEDIA_ENGINE_TEST_BOOL", value)
        assert get_bool_env("MEDIA_ENGINE_TEST_BOOL", False) is True

    @pytest.mark.parametrize("value", ["false", "0", "no", ""])
    def test_falsy(self, monkeypatch, value):
        monkeypatch.setenv("MEDIA_ENGINE_TEST_BOOL", value)
        assert get_bool_env("MEDIA_ENGINE_TEST_BOOL", True) is False

    def test_missing(self, monkeypatch):
        monkeypatch.delenv("MEDIA_ENGINE_TEST_BOOL", raising=False)
        assert get_bool_env("MEDIA_ENGINE_TEST_BOOL", True) is True


class TestConsumerName:
    """Tests for consumer naming."""

    def test_default_name_is_unique(self):
        first = default_consumer_name()
        second = default_consumer_name()

        assert first != second
        assert re.search(r"-[0-9a-f]{8}$", first)

    def test_env_override(self):
        # Pinned by conftest
        assert config.CONSUMER_NAME == "test-worker"


class TestModuleDefaults:
    """Tests for values derived at import time."""

    def test_dead_letter_stream_follows_stream_name(self, monkeypatch):
        monkeypatch.setenv("MEDIA_ENGINE_STREAM_NAME", "jobs")
        monkeypatch.delenv("MEDIA_ENGINE_DEAD_LETTER_STREAM", raising=False)
        try:
            reloaded = importlib.reload(config)
            assert reloaded.STREAM_NAME == "jobs"
            assert reloaded.DEAD_LETTER_STREAM == "jobs:dead-letter"
        finally:
            monkeypatch.undo()
            importlib.reload(config)

    def test_defaults(self):
        assert config.LEASE_MS == 300000
        assert config.MAX_REDELIVERIES == 3
        assert config.DEFAULT_PROFILE == "hls_single"
        assert config.HEALTH_ENABLED is False
