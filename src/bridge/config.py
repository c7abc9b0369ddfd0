"""
Configuration management for the Twilio voice bridge.

Loads environment variables and provides a strongly-typed configuration object.
Validates required keys at startup.
"""

import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv
import structlog

load_dotenv()

logger = structlog.get_logger(__name__)


DEFAULT_SYSTEM_PROMPT = (
    "Tu es Pam, un agent de call center intelligent et accessible, doté d’une large "
    "palette de compétences : gestion des appels, support client, assistance technique "
    "et aide à la vente. Ta manière de communiquer doit rester conviviale et naturelle, "
    "sans répéter mécaniquement tes fonctionnalités."
)
DEFAULT_GREETING = (
    "Bonjour, ici Pam. Merci d’avoir pris contact. Comment puis-je vous aider aujourd’hui ?"
)
DEFAULT_APOLOGY = "Je rencontre une difficulté technique, veuillez réessayer."


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    public_host: str
    port: int = 8080
    log_level: str = "INFO"

    # Twilio (optional: outbound calls are disabled without credentials)
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_phone_number: str = "+15017122661"

    # Deepgram (STT)
    deepgram_api_key: str = ""
    deepgram_model: str = "nova-2"
    deepgram_language: str = "fr-FR"
    deepgram_endpointing_ms: int = 300

    # OpenAI (LLM + TTS)
    openai_api_key: str = ""
    openai_model: str = "gpt-4o"
    openai_temperature: float = 0.7
    openai_top_p: float = 0.85
    openai_frequency_penalty: float = 0.2
    openai_presence_penalty: float = 0.4
    openai_max_tokens: int = 200
    openai_tts_model: str = "tts-1-hd"
    openai_tts_voice: str = "alloy"

    # Agent prompts
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    greeting: str = DEFAULT_GREETING
    apology: str = DEFAULT_APOLOGY

    # Turn taking
    conversation_history_limit: int = 4
    min_transcript_chars: int = 2
    greeting_delay_seconds: float = 1.0
    interrupt_grace_seconds: float = 0.2
    debounce_seconds: float = 0.8
    generation_lead_in_min_ms: int = 300
    generation_lead_in_max_ms: int = 700
    fragment_delay_seconds: float = 0.15
    barge_in_clear: bool = False

    # Sentence segmentation
    sentence_terminators: str = ".!?"
    sentence_min_chars: int = 60

    # Outbound audio
    outbound_frame_bytes: int = 4000
    outbound_pacing: bool = False
    ffmpeg_path: str = "ffmpeg"

    @property
    def ws_url(self) -> str:
        """Get the media stream WebSocket URL for Twilio."""
        return f"wss://{self.public_host}/streams"

    @property
    def base_url(self) -> str:
        """Get the base HTTP URL."""
        return f"https://{self.public_host}"

    @property
    def twilio_enabled(self) -> bool:
        return bool(self.twilio_account_sid and self.twilio_auth_token)

    def validate(self) -> None:
        """Validate that all required configuration is present."""
        missing = []

        if not self.public_host:
            missing.append("PUBLIC_HOST")
        if not self.deepgram_api_key:
            missing.append("DEEPGRAM_API_KEY")
        if not self.openai_api_key:
            missing.append("OPENAI_API_KEY")
        if not self.openai_model:
            missing.append("OPENAI_MODEL")

        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                "Please check your .env file."
            )

        if self.conversation_history_limit < 1:
            raise ConfigError("CONVERSATION_HISTORY_LIMIT must be at least 1")
        if self.outbound_frame_bytes < 1:
            raise ConfigError("OUTBOUND_FRAME_BYTES must be at least 1")
        if self.generation_lead_in_max_ms < self.generation_lead_in_min_ms:
            raise ConfigError(
                "GENERATION_LEAD_IN_MAX_MS must not be lower than GENERATION_LEAD_IN_MIN_MS"
            )

        if not self.twilio_enabled:
            logger.warning("Twilio credentials missing, outbound calls disabled")

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            public_host=self.public_host,
            port=self.port,
            log_level=self.log_level,
            deepgram_model=self.deepgram_model,
            deepgram_language=self.deepgram_language,
            deepgram_endpointing_ms=self.deepgram_endpointing_ms,
            llm_model=self.openai_model,
            tts_model=self.openai_tts_model,
            tts_voice=self.openai_tts_voice,
            conversation_history_limit=self.conversation_history_limit,
            debounce_seconds=self.debounce_seconds,
            sentence_min_chars=self.sentence_min_chars,
            outbound_frame_bytes=self.outbound_frame_bytes,
            outbound_pacing=self.outbound_pacing,
            barge_in_clear=self.barge_in_clear,
            twilio_sid_prefix=self.twilio_account_sid[:6] + "..." if self.twilio_account_sid else "NOT SET",
            deepgram_key_set=bool(self.deepgram_api_key),
            openai_key_set=bool(self.openai_api_key),
        )


def _get_bool(key: str, default: bool = False) -> bool:
    """Get a boolean from environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ("true", "1", "yes", "on")


def _get_int(key: str, default: int) -> int:
    """Get an integer from environment variable."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_float(key: str, default: float) -> float:
    """Get a float from environment variable."""
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


def _strip_scheme(host: str) -> str:
    host = (host or "").strip()
    for prefix in ("https://", "http://", "wss://", "ws://"):
        if host.lower().startswith(prefix):
            host = host[len(prefix):]
            break
    return host.strip("/")


@lru_cache(maxsize=1)
def get_config() -> Config:
    """
    Get the application configuration.

    Uses lru_cache to ensure we only load config once.
    """
    config = Config(
        # Server (SERVER is accepted for older deployments)
        public_host=_strip_scheme(os.getenv("PUBLIC_HOST") or os.getenv("SERVER", "")),
        port=_get_int("PORT", 8080),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),

        # Twilio
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),
        twilio_phone_number=os.getenv("TWILIO_PHONE_NUMBER", "+15017122661"),

        # Deepgram
        deepgram_api_key=os.getenv("DEEPGRAM_API_KEY", ""),
        deepgram_model=os.getenv("DEEPGRAM_MODEL", "nova-2"),
        deepgram_language=os.getenv("DEEPGRAM_LANGUAGE", "fr-FR"),
        deepgram_endpointing_ms=_get_int("DEEPGRAM_ENDPOINTING_MS", 300),

        # OpenAI
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o"),
        openai_temperature=_get_float("OPENAI_TEMPERATURE", 0.7),
        openai_top_p=_get_float("OPENAI_TOP_P", 0.85),
        openai_frequency_penalty=_get_float("OPENAI_FREQUENCY_PENALTY", 0.2),
        openai_presence_penalty=_get_float("OPENAI_PRESENCE_PENALTY", 0.4),
        openai_max_tokens=_get_int("OPENAI_MAX_TOKENS", 200),
        openai_tts_model=os.getenv("OPENAI_TTS_MODEL", "tts-1-hd"),
        openai_tts_voice=os.getenv("OPENAI_TTS_VOICE", "alloy"),

        # Agent prompts
        system_prompt=os.getenv("AGENT_SYSTEM_PROMPT", DEFAULT_SYSTEM_PROMPT),
        greeting=os.getenv("AGENT_GREETING", DEFAULT_GREETING),
        apology=os.getenv("AGENT_APOLOGY", DEFAULT_APOLOGY),

        # Turn taking
        conversation_history_limit=_get_int("CONVERSATION_HISTORY_LIMIT", 4),
        min_transcript_chars=_get_int("MIN_TRANSCRIPT_CHARS", 2),
        greeting_delay_seconds=_get_float("GREETING_DELAY_SECONDS", 1.0),
        interrupt_grace_seconds=_get_float("INTERRUPT_GRACE_SECONDS", 0.2),
        debounce_seconds=_get_float("DEBOUNCE_SECONDS", 0.8),
        generation_lead_in_min_ms=_get_int("GENERATION_LEAD_IN_MIN_MS", 300),
        generation_lead_in_max_ms=_get_int("GENERATION_LEAD_IN_MAX_MS", 700),
        fragment_delay_seconds=_get_float("FRAGMENT_DELAY_SECONDS", 0.15),
        barge_in_clear=_get_bool("BARGE_IN_CLEAR", False),

        # Sentence segmentation
        sentence_terminators=os.getenv("SENTENCE_TERMINATORS", ".!?"),
        sentence_min_chars=_get_int("SENTENCE_MIN_CHARS", 60),

        # Outbound audio
        outbound_frame_bytes=_get_int("OUTBOUND_FRAME_BYTES", 4000),
        outbound_pacing=_get_bool("OUTBOUND_PACING", False),
        ffmpeg_path=os.getenv("FFMPEG_PATH", "ffmpeg"),
    )

    return config


def init_config() -> Config:
    """
    Initialize and validate configuration.

    Call this at application startup to fail fast if config is invalid.
    """
    config = get_config()
    config.validate()
    config.log_config()
    return config
