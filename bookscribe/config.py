"""
bookscribe.config - YAML config loading and validation.

Handles loading bookscribe.yaml, applying defaults, and validating the
scheduler timing and speech backend parameters.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from bookscribe.exceptions import ConfigError

CONFIG_FILENAME = "bookscribe.yaml"
DEFAULT_DATA_DIR = Path.home() / ".bookscribe"

# Two requests for the same book whose chapter start times fall within this
# window are treated as the same chapter.
DEDUP_TOLERANCE_SECONDS = 1.0


class BookscribeConfig(BaseModel):
    """Resolved configuration for the transcription pipeline."""

    database_path: Path = Field(default_factory=lambda: DEFAULT_DATA_DIR / "transcription.db")
    enabled: bool = True

    locale: str = "en_US"
    speech_backend: str = "faster"
    whisper_model: str = "small"
    whisper_device: str = "auto"
    whisper_compute_type: str = "auto"

    progress_check_interval: float = Field(default=5.0, gt=0.0)
    stall_timeout: float = Field(default=30.0, gt=0.0)
    first_sentence_timeout: float = Field(default=60.0, gt=0.0)
    max_attempts: int = Field(default=3, ge=1)
    retry_delay: float = Field(default=30.0, ge=0.0)

    settle_delay: float = Field(default=0.5, ge=0.0)
    dedup_tolerance: float = Field(default=DEDUP_TOLERANCE_SECONDS, ge=0.0)
    prefetch_next_chapter: bool = True

    simulate_chapters: bool = True
    simulated_chapter_length: float = Field(default=900.0, gt=0.0)

    store_busy_timeout: float = Field(default=5.0, gt=0.0)

    @field_validator("speech_backend")
    @classmethod
    def validate_speech_backend(cls, v: str) -> str:
        valid = {"faster", "none"}
        if v not in valid:
            raise ValueError(f"speech_backend must be one of: {valid}")
        return v

    @field_validator("locale")
    @classmethod
    def validate_locale(cls, v: str) -> str:
        if not v or not v.replace("_", "-").split("-")[0].isalpha():
            raise ValueError(f"Invalid locale: {v!r}")
        return v

    @property
    def language(self) -> str:
        """Language code of the configured locale (``en_US`` -> ``en``)."""
        return self.locale.replace("_", "-").split("-")[0].lower()


def load_config(path: Path | None = None) -> BookscribeConfig:
    """Load and validate configuration.

    Args:
        path: Path to a bookscribe.yaml file, or a directory containing one.
            When None, built-in defaults are returned.

    Returns:
        Validated BookscribeConfig

    Raises:
        ConfigError: If the file is missing or fails validation
    """
    if path is None:
        return BookscribeConfig()

    config_file = path / CONFIG_FILENAME if path.is_dir() else path
    if not config_file.exists():
        raise ConfigError(f"No {CONFIG_FILENAME} found at {config_file}")

    with open(config_file) as f:
        raw_config = yaml.safe_load(f) or {}

    if not isinstance(raw_config, dict):
        raise ConfigError(f"{config_file} must contain a mapping")

    merged = {key: value for key, value in raw_config.items() if value is not None}
    if "database_path" in merged:
        merged["database_path"] = Path(merged["database_path"]).expanduser()

    try:
        return BookscribeConfig(**merged)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {config_file}: {e}") from e


def create_default_config() -> dict[str, Any]:
    """Create a default config dict suitable for writing to YAML."""
    defaults = BookscribeConfig().model_dump()
    defaults["database_path"] = str(defaults["database_path"])
    return defaults


def write_config(config: dict[str, Any], path: Path) -> None:
    """Write configuration to a YAML file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        yaml.dump(config, f, default_flow_style=False, sort_keys=False)
