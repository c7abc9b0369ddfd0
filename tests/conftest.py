"""
Pytest configuration and fixtures.
"""

import pytest
import os
from dataclasses import replace
from unittest.mock import patch


@pytest.fixture(autouse=True)
def mock_env_vars():
    """Mock environment variables for tests."""
    env_vars = {
        "PUBLIC_HOST": "test.ngrok.io",
        "PORT": "7860",
        "LOG_LEVEL": "DEBUG",
        "TWILIO_ACCOUNT_SID": "ACtest123456789",
        "TWILIO_AUTH_TOKEN": "test_auth_token",
        "DEEPGRAM_API_KEY": "test_deepgram_key",
        "OPENAI_API_KEY": "test_openai_key",
        "OPENAI_MODEL": "gpt-4o",
    }

    with patch.dict(os.environ, env_vars):
        # Clear config cache
        from src.bridge.config import get_config
        get_config.cache_clear()
        yield
        get_config.cache_clear()


@pytest.fixture
def fast_config():
    """Default config with turn-taking timers shrunk for tests."""
    from src.bridge.config import get_config
    return replace(
        get_config(),
        greeting_delay_seconds=0.0,
        interrupt_grace_seconds=0.01,
        debounce_seconds=0.05,
        generation_lead_in_min_ms=0,
        generation_lead_in_max_ms=0,
        fragment_delay_seconds=0.0,
        sentence_min_chars=10,
    )


@pytest.fixture
def sample_ulaw_audio():
    """Generate sample mu-law audio (silence)."""
    return b"\xff" * 160  # 20ms of silence


@pytest.fixture
def twilio_start_message():
    """Sample Twilio start message."""
    import json
    return json.dumps({
        "event": "start",
        "streamSid": "MZ123456",
        "start": {
            "callSid": "CA789012",
            "accountSid": "AC345678",
            "tracks": ["inbound"],
            "customParameters": {},
        }
    })


@pytest.fixture
def twilio_media_message(sample_ulaw_audio):
    """Sample Twilio media message."""
    import json
    import base64

    return json.dumps({
        "event": "media",
        "streamSid": "MZ123456",
        "media": {
            "track": "inbound",
            "chunk": 1,
            "timestamp": "12345",
            "payload": base64.b64encode(sample_ulaw_audio).decode(),
        }
    })


@pytest.fixture
def twilio_stop_message():
    """Sample Twilio stop message."""
    import json
    return json.dumps({
        "event": "stop",
        "streamSid": "MZ123456",
    })
