from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


_PROJECT_ROOT = Path(__file__).parent.parent


class Settings(BaseSettings):
    # Read from OS env and optional .env file in project root.
    model_config = SettingsConfigDict(
        env_file=str(_PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Persisted routes and the global provider document share one directory.
    config_dir: str = Field(
        "config",
        alias="CONFIG_DIR",
        description="Directory holding one TOML route file per model plus the global provider config",
    )
    global_config_name: str = Field(
        "_global.toml",
        alias="GLOBAL_CONFIG_NAME",
        description="File name of the global provider config inside CONFIG_DIR; must start with '_'",
    )
    models_dir: str = Field(
        "models",
        alias="MODELS_DIR",
        description="Directory where downloaded GGUF weights are stored",
    )

    # Hugging Face hub access for local quantized discovery.
    hf_token: Optional[str] = Field(
        default=None,
        alias="HF_TOKEN",
        description="Optional hub token used for listing, metadata probes and downloads",
    )
    hf_endpoint: str = Field(
        "https://huggingface.co",
        alias="HF_ENDPOINT",
        description="Hub endpoint used to build file URLs for metadata probes",
    )
    gguf_header_bytes: int = Field(
        1024 * 1024,
        alias="GGUF_HEADER_BYTES",
        description="Number of leading bytes fetched from a GGUF file to read its quantization metadata",
        ge=1024,
    )

    # Locally spawned inference backends.
    local_backend_host: str = Field(
        "127.0.0.1",
        alias="LOCAL_BACKEND_HOST",
        description="Interface local backends bind to and are reached at",
    )
    local_backend_port_start: int = Field(
        8081,
        alias="LOCAL_BACKEND_PORT_START",
        description="First port handed out to a local backend; ports are never reused",
        ge=1024,
        le=65535,
    )
    backend_kill_timeout: float = Field(
        10.0,
        alias="BACKEND_KILL_TIMEOUT",
        description="Seconds to wait for a killed backend process to be reaped",
        gt=0,
    )

    # HTTP timeouts
    upstream_timeout: float = Field(600.0, alias="UPSTREAM_TIMEOUT")
    discovery_timeout: float = Field(30.0, alias="DISCOVERY_TIMEOUT")

    # Application log level for our lazygate logger.
    # Can be overridden via LOG_LEVEL env var, e.g. "DEBUG" while debugging.
    log_level: str = Field(
        "INFO",
        alias="LOG_LEVEL",
        description="Application log level: DEBUG, INFO, WARNING, ERROR, CRITICAL",
    )
    log_timezone: Optional[str] = Field(
        default=None,
        alias="LOG_TIMEZONE",
        description="Timezone name for log timestamps, e.g. 'Europe/Berlin'. Defaults to system local time.",
    )
    log_dir: str = Field(
        "logs",
        alias="LOG_DIR",
        description="Directory for daily application log files",
    )
    log_backup_count: int = Field(
        7,
        alias="LOG_BACKUP_COUNT",
        description="Keep the most recent N daily log files; 0 disables cleanup",
        ge=0,
    )

    @property
    def global_config_path(self) -> Path:
        return Path(self.config_dir) / self.global_config_name


settings = Settings()  # Reads from environment if available


__all__ = ["Settings", "settings"]
