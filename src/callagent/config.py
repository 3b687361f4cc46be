"""
Configuration management for the phone call agent.

Loads environment variables and provides a strongly-typed configuration object.
Validates required keys at startup.
"""

import os
import re
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv
import structlog

load_dotenv()

logger = structlog.get_logger(__name__)

DEFAULT_GREETING = "Hello! My name is Ivy. What kind of leads are you looking for?"


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    public_host: str
    port: int = 3000
    log_level: str = "INFO"

    # Twilio
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_phone_number: str = ""
    transfer_number: str = ""

    # Deepgram (STT)
    deepgram_api_key: str = ""
    deepgram_model: str = "nova-2"
    deepgram_endpointing_ms: int = 200
    deepgram_utterance_end_ms: int = 1000

    # TTS
    # - "deepgram": Aura REST voices (mu-law 8kHz, no conversion)
    # - "cartesia": streaming WebSocket TTS
    tts_provider: str = "deepgram"
    deepgram_tts_model: str = "aura-asteria-en"
    cartesia_api_key: str = ""
    cartesia_voice_id: str = "a0e99841-438c-4a64-b679-ae501e7d6091"
    cartesia_model: str = "sonic-english"

    # LLM Provider (OpenAI/Groq)
    llm_provider: str = "openai"  # "openai" | "groq"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    groq_api_key: str = ""
    groq_model: str = "llama-3.3-70b-versatile"

    # Agent settings
    agent_name: str = "Ivy"
    company_name: str = "Nextlead"
    greeting: str = DEFAULT_GREETING
    split_marker: str = "•"
    min_interruption_chars: int = 5
    max_tool_chain_depth: int = 5

    @property
    def ws_url(self) -> str:
        """Get the WebSocket URL for Twilio."""
        return f"wss://{self.public_host}/ws"

    @property
    def base_url(self) -> str:
        """Get the base HTTP URL."""
        return f"https://{self.public_host}"

    @property
    def llm_model(self) -> str:
        return self.groq_model if self.llm_provider == "groq" else self.openai_model

    @property
    def llm_api_key(self) -> str:
        return self.groq_api_key if self.llm_provider == "groq" else self.openai_api_key

    def validate(self) -> None:
        """Validate that all required configuration is present."""
        missing = []

        if not self.public_host:
            missing.append("PUBLIC_HOST")
        if not self.deepgram_api_key:
            missing.append("DEEPGRAM_API_KEY")

        tts = (self.tts_provider or "deepgram").strip().lower()
        if tts not in ("deepgram", "cartesia"):
            raise ConfigError(
                f"Invalid TTS_PROVIDER '{self.tts_provider}'. Expected 'deepgram' or 'cartesia'."
            )
        if tts == "cartesia" and not self.cartesia_api_key:
            missing.append("CARTESIA_API_KEY")

        provider = (self.llm_provider or "openai").strip().lower()
        if provider not in ("groq", "openai"):
            raise ConfigError(
                f"Invalid LLM_PROVIDER '{self.llm_provider}'. Expected 'openai' or 'groq'."
            )

        if provider == "groq":
            if not self.groq_api_key:
                missing.append("GROQ_API_KEY")
            if not self.groq_model:
                missing.append("GROQ_MODEL")

        if provider == "openai":
            if not self.openai_api_key:
                missing.append("OPENAI_API_KEY")
            if not self.openai_model:
                missing.append("OPENAI_MODEL")

        if not self.split_marker:
            raise ConfigError("SPLIT_MARKER must not be empty.")

        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                "Please check your .env file."
            )

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            public_host=self.public_host,
            port=self.port,
            log_level=self.log_level,
            deepgram_model=self.deepgram_model,
            deepgram_endpointing_ms=self.deepgram_endpointing_ms,
            deepgram_utterance_end_ms=self.deepgram_utterance_end_ms,
            tts_provider=self.tts_provider,
            llm_provider=self.llm_provider,
            llm_model=self.llm_model,
            agent_name=self.agent_name,
            min_interruption_chars=self.min_interruption_chars,
            max_tool_chain_depth=self.max_tool_chain_depth,
            twilio_sid_prefix=self.twilio_account_sid[:6] + "..." if self.twilio_account_sid else "NOT SET",
            transfer_number_set=bool(self.transfer_number),
            deepgram_key_set=bool(self.deepgram_api_key),
            cartesia_key_set=bool(self.cartesia_api_key),
            groq_key_set=bool(self.groq_api_key),
            openai_key_set=bool(self.openai_api_key),
        )


def _get_int(key: str, default: int) -> int:
    """Get an integer from environment variable."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def _strip_scheme(host: str) -> str:
    return re.sub(r"^(https?|wss?)://", "", host.strip()).rstrip("/")


def _resolve_public_host() -> str:
    """
    Resolve the public host name.

    PUBLIC_HOST_FILE (written by a tunnel process) wins over PUBLIC_HOST so a
    restarted tunnel is picked up without editing .env.
    """
    host = os.getenv("PUBLIC_HOST", "")
    host_file = os.getenv("PUBLIC_HOST_FILE", "")
    if host_file:
        try:
            with open(host_file, "r", encoding="utf-8") as fh:
                from_file = fh.readline()
            if from_file.strip():
                host = from_file
        except OSError as e:
            logger.error("Failed to read public host file", path=host_file, error=str(e))
    return _strip_scheme(host) if host else ""


@lru_cache(maxsize=1)
def get_config() -> Config:
    """
    Get the application configuration.

    Uses lru_cache to ensure we only load config once.
    """
    config = Config(
        # Server
        public_host=_resolve_public_host(),
        port=_get_int("PORT", 3000),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),

        # Twilio
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),
        twilio_phone_number=os.getenv("TWILIO_PHONE_NUMBER", ""),
        transfer_number=os.getenv("TRANSFER_NUMBER", ""),

        # Deepgram
        deepgram_api_key=os.getenv("DEEPGRAM_API_KEY", ""),
        deepgram_model=os.getenv("DEEPGRAM_MODEL", "nova-2"),
        deepgram_endpointing_ms=_get_int("DEEPGRAM_ENDPOINTING_MS", 200),
        deepgram_utterance_end_ms=_get_int("DEEPGRAM_UTTERANCE_END_MS", 1000),

        # TTS
        tts_provider=os.getenv("TTS_PROVIDER", "deepgram").strip().lower(),
        deepgram_tts_model=os.getenv("DEEPGRAM_TTS_MODEL", "aura-asteria-en"),
        cartesia_api_key=os.getenv("CARTESIA_API_KEY", ""),
        cartesia_voice_id=os.getenv("CARTESIA_VOICE_ID", "a0e99841-438c-4a64-b679-ae501e7d6091"),
        cartesia_model=os.getenv("CARTESIA_MODEL", "sonic-english"),

        # LLM Provider
        llm_provider=os.getenv("LLM_PROVIDER", "openai").strip().lower(),
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        groq_api_key=os.getenv("GROQ_API_KEY", ""),
        groq_model=os.getenv("GROQ_MODEL", "llama-3.3-70b-versatile"),

        # Agent settings
        agent_name=os.getenv("AGENT_NAME", "Ivy"),
        company_name=os.getenv("COMPANY_NAME", "Nextlead"),
        greeting=os.getenv("GREETING", DEFAULT_GREETING),
        split_marker=os.getenv("SPLIT_MARKER", "•"),
        min_interruption_chars=_get_int("MIN_INTERRUPTION_CHARS", 5),
        max_tool_chain_depth=_get_int("MAX_TOOL_CHAIN_DEPTH", 5),
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
