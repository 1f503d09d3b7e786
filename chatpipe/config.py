"""Configuration schema and loader."""

from pathlib import Path

import yaml
from pydantic import BaseModel, Field, PrivateAttr

from chatpipe.utils.security import DENY_PATTERNS


class ChannelConfig(BaseModel):
    enabled: bool = False
    token: str = ""
    allow_from: list[str] = Field(default_factory=list)
    max_message_len: int = Field(default=4000, ge=1)
    retry_attempts: int = Field(default=2, ge=1, le=10)
    retry_backoff_ms: int = Field(default=50, ge=0)


class TelegramConfig(ChannelConfig):
    max_message_len: int = Field(default=4000, ge=1, le=4096)
    proxy: str | None = None


class DiscordConfig(ChannelConfig):
    max_message_len: int = Field(default=1800, ge=1, le=2000)


class CLIConfig(BaseModel):
    enabled: bool = False
    sender_id: str = "local"
    chat_id: str = "local"
    allow_from: list[str] = Field(default_factory=lambda: ["local"])


class ChannelsConfig(BaseModel):
    telegram: TelegramConfig = Field(default_factory=TelegramConfig)
    discord: DiscordConfig = Field(default_factory=DiscordConfig)
    cli: CLIConfig = Field(default_factory=CLIConfig)


class ExecToolConfig(BaseModel):
    timeout: int = Field(default=60, ge=1)
    deny_patterns: list[str] = Field(default_factory=lambda: list(DENY_PATTERNS))


class ToolsConfig(BaseModel):
    exec: ExecToolConfig = Field(default_factory=ExecToolConfig)


class TranscriptLogConfig(BaseModel):
    enabled: bool = False
    path: str = "data/transcript.jsonl"
    max_bytes: int | None = Field(default=1_000_000, ge=1)
    max_files: int | None = Field(default=3, ge=1)


class TranscriptionConfig(BaseModel):
    enabled: bool = True
    timeout: int = Field(default=120, ge=1)


class Config(BaseModel):
    """Root configuration."""
    workspace: str = "workspace"
    session_store_path: str = "data/sessions.json"
    channels: ChannelsConfig = Field(default_factory=ChannelsConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    transcript_log: TranscriptLogConfig = Field(default_factory=TranscriptLogConfig)
    transcription: TranscriptionConfig = Field(default_factory=TranscriptionConfig)
    _config_dir: Path = PrivateAttr(default_factory=lambda: Path.cwd())

    def _resolve(self, value: str) -> Path:
        p = Path(value).expanduser()
        if not p.is_absolute():
            p = self._config_dir / p
        return p.resolve()

    def workspace_path(self) -> Path:
        return self._resolve(self.workspace)

    def session_store_file(self) -> Path:
        return self._resolve(self.session_store_path)

    def transcript_log_file(self) -> Path:
        return self._resolve(self.transcript_log.path)


def load_config(path: str | Path = "config.yaml") -> Config:
    """Load config from YAML file. A missing file yields the defaults."""
    p = Path(path).expanduser()
    resolved_path = p.resolve()
    if p.exists():
        with open(resolved_path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        config = Config(**data)
    else:
        config = Config()
    config._config_dir = resolved_path.parent
    return config
