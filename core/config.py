"""Application configuration."""

from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings."""

    # API settings
    API_HOST: str = "127.0.0.1"
    API_PORT: int = 5080
    LOG_LEVEL: str = "INFO"

    # Static UI assets, mounted at "/" when set
    FRONTEND_DIR: Path | None = None

    # Foundry Local
    FOUNDRY_ENDPOINT: str | None = None  # Pinned endpoint, skips discovery
    FOUNDRY_CLI_PATH: str | None = None  # None = look up "foundry" on PATH
    FOUNDRY_DISCOVERY: list[str] = ["cli", "port_scan"]
    FOUNDRY_PROBE_PORTS: list[int] = [5272, 5273, 5274]
    FOUNDRY_DEFAULT_ENDPOINT: str = "http://localhost:5272"
    FOUNDRY_CLI_TIMEOUT: float = 15.0
    FOUNDRY_PROBE_TIMEOUT: float = 3.0

    # Ollama
    OLLAMA_ENABLED: bool = True
    OLLAMA_ENDPOINT: str = "http://localhost:11434"

    # Timeouts (seconds)
    REQUEST_TIMEOUT: float = 600.0
    UNLOAD_TIMEOUT: float = 5.0
    DOWNLOAD_TIMEOUT: float = 4 * 60 * 60  # Multi-GB artifacts

    # Download streaming
    DOWNLOAD_POLL_INTERVAL: float = 2.0
    DOWNLOAD_QUEUE_SIZE: int = 64

    model_config = {"env_prefix": "FOUNDRY_WEBUI_", "env_file": ".env"}


settings = Settings()
