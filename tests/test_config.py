"""
Tests for configuration loading.
"""

import os
from dataclasses import replace
from unittest.mock import patch

import pytest

from src.bridge.config import ConfigError, get_config, init_config


class TestConfig:
    """Tests for Config."""

    def test_defaults(self):
        config = get_config()

        assert config.public_host == "test.ngrok.io"
        assert config.ws_url == "wss://test.ngrok.io/streams"
        assert config.base_url == "https://test.ngrok.io"
        assert config.deepgram_model == "nova-2"
        assert config.deepgram_language == "fr-FR"
        assert config.openai_tts_voice == "alloy"
        assert config.conversation_history_limit == 4
        assert config.debounce_seconds == 0.8
        assert config.outbound_frame_bytes == 4000
        assert config.barge_in_clear is False
        assert config.twilio_enabled

    def test_server_fallback_and_scheme_stripped(self):
        env = dict(os.environ)
        env.pop("PUBLIC_HOST")
        env["SERVER"] = "https://legacy.example.com/"

        with patch.dict(os.environ, env, clear=True):
            get_config.cache_clear()
            assert get_config().public_host == "legacy.example.com"

    def test_typed_overrides(self):
        with patch.dict(os.environ, {
            "DEBOUNCE_SECONDS": "1.5",
            "CONVERSATION_HISTORY_LIMIT": "6",
            "BARGE_IN_CLEAR": "yes",
            "OUTBOUND_FRAME_BYTES": "not-a-number",
        }):
            get_config.cache_clear()
            config = get_config()

        assert config.debounce_seconds == 1.5
        assert config.conversation_history_limit == 6
        assert config.barge_in_clear is True
        assert config.outbound_frame_bytes == 4000

    def test_missing_keys_rejected(self):
        with patch.dict(os.environ, {"OPENAI_API_KEY": "", "DEEPGRAM_API_KEY": ""}):
            get_config.cache_clear()
            with pytest.raises(ConfigError, match="OPENAI_API_KEY"):
                init_config()

    def test_invalid_lead_in_rejected(self):
        config = replace(get_config(), generation_lead_in_min_ms=800, generation_lead_in_max_ms=300)

        with pytest.raises(ConfigError):
            config.validate()

    def test_twilio_optional(self):
        config = replace(get_config(), twilio_account_sid="", twilio_auth_token="")

        config.validate()
        assert not config.twilio_enabled
