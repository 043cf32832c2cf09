"""
Environment-driven settings.

Values are read once at import time from the process environment, after an
optional ``.env`` file in the working directory has been loaded. Missing
credentials are not fatal here; the component that needs them raises when it
is used.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import dotenv

from callbridge.config.constants import CONFIG_TTL_SECONDS, REPLY_TIMEOUT_SECONDS

env_path = Path(".") / ".env"
if env_path.exists():
    dotenv.load_dotenv(env_path)


@dataclass(frozen=True)
class Settings:
    """Snapshot of the service configuration."""

    server: str
    host: str
    port: int

    twilio_account_sid: Optional[str]
    twilio_auth_token: Optional[str]
    from_number: Optional[str]

    voice_backend: str

    elevenlabs_api_key: Optional[str]
    elevenlabs_agent_id: Optional[str]
    elevenlabs_voice_id: Optional[str]
    elevenlabs_tts_model: str

    deepgram_api_key: Optional[str]
    deepgram_model: str

    llm_api_key: Optional[str]
    llm_base_url: str
    llm_model: str

    bot_token: Optional[str]
    admin_chat_id: Optional[str]

    database_path: str
    config_ttl_seconds: int
    reply_timeout_seconds: float

    @property
    def stream_url(self) -> str:
        return f"wss://{self.server}/connection"


def load_settings() -> Settings:
    """Build a Settings snapshot from the current environment."""
    return Settings(
        server=os.getenv("SERVER", "localhost:8000"),
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID"),
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN"),
        from_number=os.getenv("FROM_NUMBER") or os.getenv("TWILIO_PHONE_NUMBER"),
        voice_backend=os.getenv("VOICE_BACKEND", "managed").lower(),
        elevenlabs_api_key=os.getenv("ELEVENLABS_API_KEY"),
        elevenlabs_agent_id=os.getenv("ELEVENLABS_AGENT_ID"),
        elevenlabs_voice_id=os.getenv("ELEVENLABS_VOICE_ID"),
        elevenlabs_tts_model=os.getenv("ELEVENLABS_TTS_MODEL", "eleven_turbo_v2_5"),
        deepgram_api_key=os.getenv("DEEPGRAM_API_KEY"),
        deepgram_model=os.getenv("DEEPGRAM_MODEL", "nova-2"),
        llm_api_key=os.getenv("LLM_API_KEY") or os.getenv("OPENAI_API_KEY"),
        llm_base_url=os.getenv("LLM_BASE_URL", "https://api.openai.com/v1"),
        llm_model=os.getenv("LLM_MODEL", "gpt-4o-mini"),
        bot_token=os.getenv("BOT_TOKEN"),
        admin_chat_id=os.getenv("ADMIN_CHAT_ID"),
        database_path=os.getenv("DATABASE_PATH", "data/calls.db"),
        config_ttl_seconds=int(os.getenv("CONFIG_TTL_SECONDS", str(CONFIG_TTL_SECONDS))),
        reply_timeout_seconds=float(
            os.getenv("REPLY_TIMEOUT_SECONDS", str(REPLY_TIMEOUT_SECONDS))
        ),
    )


settings = load_settings()
