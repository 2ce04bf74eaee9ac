"""Application configuration using environment variables."""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import AliasChoices, AnyHttpUrl, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve the project root once so that `.env` is discovered regardless of CWD
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent

DEFAULT_MODEL_PRICES: dict[str, float] = {
    "gpt-4o": 15.0,
    "gpt-4o-mini": 0.5625,
    "o1-preview": 29.25,
    "o1-mini": 5.85,
}


class Settings(BaseSettings):
    """Load configuration from environment variables and `.env`."""

    model_config = SettingsConfigDict(
        env_file=str(PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    openai_api_key: SecretStr = Field(
        ...,
        validation_alias=AliasChoices("OPENAI_API_KEY", "OPENAI_KEY", "openai_api_key"),
    )
    openai_base_url: AnyHttpUrl = Field(
        default_factory=lambda: AnyHttpUrl("https://api.openai.com/v1"),
        validation_alias=AliasChoices("OPENAI_BASE_URL", "openai_base_url"),
    )
    transcription_model: str = Field(
        default="whisper-1",
        validation_alias=AliasChoices("TRANSCRIPTION_MODEL", "transcription_model"),
    )
    request_timeout: float = Field(
        default=120.0,
        validation_alias=AliasChoices("OPENAI_TIMEOUT", "timeout", "request_timeout"),
        ge=1,
    )

    # Credits charged per turn, keyed by model identifier
    model_prices: dict[str, float] = Field(
        default_factory=lambda: dict(DEFAULT_MODEL_PRICES),
        validation_alias=AliasChoices("MODEL_PRICES", "model_prices"),
    )

    deepgram_api_key: SecretStr | None = Field(
        default=None,
        validation_alias=AliasChoices("DEEPGRAM_API_KEY", "DEEPGRAM_KEY", "deepgram_api_key"),
    )
    deepgram_speak_url: AnyHttpUrl = Field(
        default_factory=lambda: AnyHttpUrl("https://api.deepgram.com/v1/speak"),
        validation_alias=AliasChoices("DEEPGRAM_SPEAK_URL", "deepgram_speak_url"),
    )
    tts_model: str = Field(
        default="aura-asteria-en",
        validation_alias=AliasChoices("TTS_MODEL", "tts_model"),
    )
    tts_sample_rate: int = Field(
        default=16000,
        ge=8000,
        validation_alias=AliasChoices("TTS_SAMPLE_RATE", "tts_sample_rate"),
    )
    archive_assistant_audio: bool = Field(
        default=False,
        validation_alias=AliasChoices(
            "ARCHIVE_ASSISTANT_AUDIO", "archive_assistant_audio"
        ),
    )

    auth_service_url: AnyHttpUrl = Field(
        default_factory=lambda: AnyHttpUrl("http://localhost:8001"),
        validation_alias=AliasChoices("AUTH_SERVICE_URL", "auth_service_url"),
    )
    internal_server_key: SecretStr = Field(
        default_factory=lambda: SecretStr(""),
        validation_alias=AliasChoices("INTERNAL_SERVER_KEY", "internal_server_key"),
    )

    chat_database_path: Path = Field(
        default_factory=lambda: Path("data/conversations.db"),
        validation_alias=AliasChoices("CHAT_DATABASE_PATH", "chat_db", "chat_database_path"),
    )
    public_dir: Path = Field(
        default_factory=lambda: Path("public"),
        validation_alias=AliasChoices("PUBLIC_DIR", "public_dir"),
    )
    logging_settings_path: Path = Field(
        default_factory=lambda: Path("logging_settings.conf"),
        validation_alias=AliasChoices("LOGGING_SETTINGS_PATH", "logging_settings_path"),
    )

    # Frames buffered between a turn's producer task and the response body;
    # a slow reader suspends the producer once this many frames are pending.
    relay_queue_size: int = Field(
        default=64,
        ge=1,
        validation_alias=AliasChoices("RELAY_QUEUE_SIZE", "relay_queue_size"),
    )

    @property
    def auth_base_url(self) -> str:
        return str(self.auth_service_url).rstrip("/")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached `Settings` instance."""

    return Settings()  # pyright: ignore[reportCallIssue]


def resolve_project_path(path: Path) -> Path:
    """Anchor relative configured paths at the project root."""

    if path.is_absolute():
        return path
    return (PROJECT_ROOT / path).resolve()


__all__ = [
    "DEFAULT_MODEL_PRICES",
    "PROJECT_ROOT",
    "Settings",
    "get_settings",
    "resolve_project_path",
]
