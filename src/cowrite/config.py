"""Runtime settings.

Settings are merged in order of precedence:
  1. Built-in defaults
  2. ``COWRITE_*`` environment variables
  3. CLI overrides
"""

from pathlib import Path
from typing import Any

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PERSIST_FILE = ".cowrite-comments.json"

ENV_PREFIX = "COWRITE_"


class Settings(BaseSettings):
    """Settings for one project directory.

    Every field can be set from the environment, e.g.
    ``COWRITE_SEARCH_WINDOW=50``. Keyword arguments win over the environment.
    """

    project_dir: Path = Field(default_factory=Path.cwd)
    persist_file: str = Field(default=PERSIST_FILE, min_length=1)
    reload_guard_seconds: float = Field(
        default=0.2, ge=0.0, description="Ignore changes to the comments file this soon after our own write"
    )
    search_window: int = Field(
        default=200, ge=0, description="Characters searched on each side of an anchor when re-anchoring"
    )
    wait_timeout: float = Field(default=30.0, gt=0.0, description="Default wait_for_comment timeout (seconds)")

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_ignore_empty=True,
        extra="ignore",
    )

    @property
    def persist_path(self) -> Path:
        return self.project_dir / self.persist_file


def load_settings(project_dir: str | Path | None = None, cli_overrides: dict[str, Any] | None = None) -> Settings:
    """Build settings for ``project_dir`` (defaults to the working directory).

    ``None`` values in ``cli_overrides`` are ignored so unset CLI options
    fall through to the environment.

    Raises:
        pydantic.ValidationError: If an environment or CLI value is invalid
    """
    overrides = {key: value for key, value in (cli_overrides or {}).items() if value is not None}
    root = Path(project_dir) if project_dir is not None else Path.cwd()
    overrides["project_dir"] = root.resolve()
    return Settings(**overrides)
