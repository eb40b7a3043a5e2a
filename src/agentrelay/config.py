import json
from pathlib import Path

from pydantic import AliasChoices, Field, computed_field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # API
    app_name: str = "agentrelay"
    app_version: str = "0.4.0"
    host: str = "0.0.0.0"
    port: int = 3456

    # Child process
    command: str = "claude"
    command_args: list[str] = []
    pty_cols: int = 80
    pty_rows: int = 30

    # Output pipeline
    frame_delay_ms: int = 100
    sync_hold_ms: int = 2_000
    backlog_size: int = 100
    classifier_window: int = 1_000

    # Paths
    state_dir: str = Field(
        default=str(Path.home() / ".agentrelay"),
        validation_alias=AliasChoices("state_dir", "AGENTRELAY_STATE"),
        description="Directory for state files (config.json, logs)",
    )

    # Logging
    log_level: str = "info"
    log_to_file: bool = True

    @computed_field  # type: ignore[prop-decorator]
    @property
    def log_dir(self) -> Path:
        """Directory for per-run log files."""
        return Path(self.state_dir) / "logs"

    model_config = {
        "env_file": ".env",
        "extra": "ignore",
    }


_override: Settings | None = None


def get_settings() -> Settings:
    """Return the active settings instance."""
    if _override:
        return _override
    settings = Settings()
    return _load_config_file(settings)


def _load_config_file(settings: Settings) -> Settings:
    """Load and merge config.json if it exists."""
    config_path = Path(settings.state_dir) / "config.json"
    if not config_path.exists():
        return settings

    try:
        data = json.loads(config_path.read_text())
        if not isinstance(data, dict):
            return settings

        # Expand ~ in path fields
        if isinstance(data.get("state_dir"), str):
            data["state_dir"] = str(Path(data["state_dir"]).expanduser())

        return settings.model_copy(update=data)
    except (OSError, ValueError):
        return settings


def override_settings(s: Settings | None) -> None:
    """Swap in a custom Settings (use None to reset)."""
    global _override  # noqa: PLW0603
    _override = s
