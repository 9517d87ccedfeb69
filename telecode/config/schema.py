"""Configuration schema using Pydantic."""

from pathlib import Path

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from telecode.errors import ConfigError


class TelegramConfig(BaseModel):
    """Telegram channel configuration."""
    bot_token: str = ""  # Bot token from @BotFather
    allowed_user_id: int | None = None  # The only user allowed to talk to the bot
    proxy: str | None = None  # HTTP/SOCKS5 proxy URL, e.g. "socks5://127.0.0.1:1080"
    download_timeout_s: float = Field(default=30.0, gt=0)
    max_file_bytes: int = Field(default=10 * 1024 * 1024, ge=1024)


class OpenCodeConfig(BaseModel):
    """OpenCode server connection."""
    server_url: str = ""
    server_username: str = "opencode"
    server_password: str = ""
    request_timeout_s: float | None = None  # None: prompt calls wait for the guard timeout

    @field_validator("server_url", mode="before")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        if isinstance(value, str):
            return value.strip().rstrip("/")
        return value


class BridgeConfig(BaseModel):
    """Prompt lifecycle settings."""
    prompt_timeout_s: float = Field(default=600.0, gt=0)
    event_retry_delay_s: float = Field(default=1.0, ge=0)
    message_limit: int = Field(default=4096, ge=1, le=4096)


class Config(BaseSettings):
    """Root configuration for telecode."""

    model_config = SettingsConfigDict(env_prefix="TELECODE_", env_nested_delimiter="__")

    telegram: TelegramConfig = Field(default_factory=TelegramConfig)
    opencode: OpenCodeConfig = Field(default_factory=OpenCodeConfig)
    bridge: BridgeConfig = Field(default_factory=BridgeConfig)
    data_dir: str = "~/.telecode"

    @property
    def data_path(self) -> Path:
        """Get expanded data directory path."""
        return Path(self.data_dir).expanduser()

    def validate_runtime(self) -> None:
        """Check the settings required to actually run the bridge."""
        if not self.telegram.bot_token:
            raise ConfigError("Missing telegram.botToken (TELECODE_TELEGRAM__BOT_TOKEN)")
        if self.telegram.allowed_user_id is None:
            raise ConfigError("Missing telegram.allowedUserId (TELECODE_TELEGRAM__ALLOWED_USER_ID)")
        if not self.opencode.server_url:
            raise ConfigError("Missing opencode.serverUrl (TELECODE_OPENCODE__SERVER_URL)")
