"""
Tests for configuration loading and validation.
"""

import dataclasses
import os
from unittest.mock import patch

import pytest

from src.callagent.config import ConfigError, get_config


def _reload(**env):
    with patch.dict(os.environ, env):
        get_config.cache_clear()
        return get_config()


def test_defaults(config):
    assert config.port == 3000
    assert config.split_marker == "•"
    assert config.max_tool_chain_depth == 5
    assert config.ws_url == "wss://test.ngrok.io/ws"
    assert config.llm_model == "gpt-4o-mini"
    config.validate()


def test_public_host_scheme_is_stripped():
    config = _reload(PUBLIC_HOST="https://abc.ngrok.app/")
    assert config.public_host == "abc.ngrok.app"


def test_public_host_file_wins(tmp_path):
    host_file = tmp_path / "host.txt"
    host_file.write_text("wss://tunnel.example.com\n", encoding="utf-8")

    config = _reload(PUBLIC_HOST_FILE=str(host_file))

    assert config.public_host == "tunnel.example.com"


def test_missing_public_host_file_falls_back(tmp_path):
    config = _reload(PUBLIC_HOST_FILE=str(tmp_path / "missing.txt"))
    assert config.public_host == "test.ngrok.io"


def test_bad_integer_uses_default():
    config = _reload(MAX_TOOL_CHAIN_DEPTH="lots")
    assert config.max_tool_chain_depth == 5


def test_groq_selection():
    config = _reload(LLM_PROVIDER="groq", GROQ_API_KEY="gsk_test", GROQ_MODEL="llama-3.3-70b-versatile")
    assert config.llm_model == "llama-3.3-70b-versatile"
    assert config.llm_api_key == "gsk_test"
    config.validate()


class TestValidate:
    def test_missing_keys_are_listed(self, config):
        broken = dataclasses.replace(config, deepgram_api_key="", openai_api_key="")
        with pytest.raises(ConfigError) as exc:
            broken.validate()
        assert "DEEPGRAM_API_KEY" in str(exc.value)
        assert "OPENAI_API_KEY" in str(exc.value)

    def test_cartesia_needs_key(self, config):
        with pytest.raises(ConfigError, match="CARTESIA_API_KEY"):
            dataclasses.replace(config, tts_provider="cartesia", cartesia_api_key="").validate()

    def test_unknown_providers_rejected(self, config):
        with pytest.raises(ConfigError, match="TTS_PROVIDER"):
            dataclasses.replace(config, tts_provider="espeak").validate()
        with pytest.raises(ConfigError, match="LLM_PROVIDER"):
            dataclasses.replace(config, llm_provider="local").validate()

    def test_empty_split_marker_rejected(self, config):
        with pytest.raises(ConfigError, match="SPLIT_MARKER"):
            dataclasses.replace(config, split_marker="").validate()
