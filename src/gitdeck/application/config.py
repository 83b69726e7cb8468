from pathlib import Path
from typing import Any, Literal

from pydantic import Field, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from gitdeck.domain.constants import (
    DATABASE_FILENAME,
    DEBOUNCE_SECONDS,
    DEFAULT_BRANCH,
    DEFAULT_NEW_CARDS_PER_DAY,
    GITHUB_API_URL,
    MAX_BATCH_SIZE,
)


class AppConfig(BaseSettings):
    """
    Configuration model for gitdeck.
    Supports loading from:
    1. Config file (~/.config/gitdeck/config.toml or ~/.gitdeck.toml)
    2. Environment variables (GITDECK_*)
    3. Manual overrides (CLI)
    """

    model_config = SettingsConfigDict(
        env_prefix="GITDECK_",
        extra="ignore",
    )

    # Remote
    backend: Literal["github", "local"] = "github"
    repo_url: str | None = None
    token: str | None = None
    branch: str = DEFAULT_BRANCH
    api_base_url: str = GITHUB_API_URL
    local_root: Path | None = None

    # Paths
    data_dir: Path = Field(default_factory=lambda: Path.home() / ".local/share/gitdeck")

    # Study
    new_cards_per_day: int = Field(default=DEFAULT_NEW_CARDS_PER_DAY, ge=0)
    review_order: Literal["random", "oldest-first", "deck-grouped"] = "oldest-first"
    theme: Literal["light", "dark", "system"] = "system"

    # Sync
    debounce_seconds: float = Field(default=DEBOUNCE_SECONDS, gt=0)
    max_batch_size: int = Field(default=MAX_BATCH_SIZE, ge=1)

    verbose: int = 1

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        from pydantic_settings import TomlConfigSettingsSource

        # Sources listed first win; CLI overrides beat env, env beats the file.
        toml_file = find_config_file()
        if toml_file:
            return (
                init_settings,
                env_settings,
                TomlConfigSettingsSource(settings_cls, toml_file=toml_file),
            )
        return (init_settings, env_settings)

    @field_validator("local_root", "data_dir", mode="before")
    @classmethod
    def resolve_path(cls, v: Any) -> Path | None:
        if v is None:
            return None
        return Path(v).expanduser().resolve()

    @property
    def is_configured(self) -> bool:
        """True when a remote is set up well enough to sync."""
        if self.backend == "local":
            return self.local_root is not None
        return bool(self.repo_url and self.token)

    @property
    def database_path(self) -> Path:
        return self.data_dir / DATABASE_FILENAME


def find_config_file() -> Path | None:
    for f in [
        Path.home() / ".config/gitdeck/config.toml",
        Path.home() / ".gitdeck.toml",
    ]:
        if f.exists():
            return f
    return None


def resolve_config(cli_overrides: dict[str, Any] | None = None) -> AppConfig:
    """
    Multi-layered configuration resolution.
    1. Defaults in AppConfig
    2. ~/.config/gitdeck/config.toml (if exists)
    3. Environment variables (GITDECK_*)
    4. cli_overrides (passed from Typer)
    """
    overrides = {k: v for k, v in (cli_overrides or {}).items() if v is not None}
    return AppConfig(**overrides)
