"""
Manages loading, saving, and validating the queue configuration using Pydantic.

This module defines the configuration schema as a Pydantic model (`Settings`)
and provides a manager class (`ConfigManager`) to handle persistence to a JSON file.
The download queue reads `Settings` synchronously on every scheduling pass, so
changes made at runtime (for example to `max_concurrent_downloads`) take effect
on the next pass.
"""

import json
import time
import re
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from . import constants

DOWNLOAD_MODES = ('auto', 'audio', 'mute')


class Settings(BaseModel):
    """
    Defines the queue's configuration schema using Pydantic.

    This class provides type hints, default values, and validation logic for all
    configuration settings.
    """
    # Admission control
    max_concurrent_downloads: int = Field(default=2, ge=1, le=20)

    # Per-mode defaults applied to every submission
    download_mode: str = 'auto'
    video_quality: str = 'max'
    audio_quality: str = 'best'
    convert_to_mp4: bool = False
    remux: bool = True
    embed_thumbnail: bool = True
    youtube_music_audio_only: bool = True

    # Output
    download_path: Path = Field(default_factory=Path.home, validate_default=True)
    audio_path: Optional[Path] = None
    filename_template: str = '%(title).100s [%(id)s].%(ext)s'

    # Queue behavior
    notifications_enabled: bool = True
    warn_on_metadata_failure: bool = False
    metadata_retry_attempts: int = Field(default=constants.METADATA_RETRY_ATTEMPTS, ge=1)
    metadata_retry_delay: float = Field(default=constants.METADATA_RETRY_DELAY, ge=0)
    completed_removal_delay: float = Field(default=constants.COMPLETED_REMOVAL_DELAY, ge=0)
    persist_debounce: float = Field(default=constants.PERSIST_DEBOUNCE, ge=0)
    sweep_interval: float = Field(default=constants.ORPHAN_SWEEP_INTERVAL, gt=0)

    log_level: str = 'INFO'

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        """Ensures log_level is a valid logging level string."""
        upper_value = value.upper()
        allowed_levels: List[str] = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if upper_value not in allowed_levels:
            raise ValueError(f"'{value}' is not a valid log level. Must be one of {allowed_levels}.")
        return upper_value

    @field_validator('download_mode')
    @classmethod
    def validate_download_mode(cls, value: str) -> str:
        if value not in DOWNLOAD_MODES:
            raise ValueError(f"'{value}' is not a valid download mode. Must be one of {list(DOWNLOAD_MODES)}.")
        return value

    @field_validator('filename_template')
    @classmethod
    def validate_filename_template(cls, value: str) -> str:
        """
        Validates the yt-dlp filename template.

        Raises:
            ValueError: If the template is invalid.
        """
        is_invalid = (
            not value or
            not re.search(r'%\((?:title|id)\)', value) or
            '/' in value or '\\' in value or '..' in value or
            Path(value).is_absolute()
        )
        if is_invalid:
            raise ValueError("Filename template is invalid. It must include %(title)s or %(id)s and cannot contain path separators.")
        return value

    @field_validator('download_path', mode='before')
    @classmethod
    def validate_download_path(cls, value: Any) -> Path:
        """Falls back to the home directory when the path is not an existing directory."""
        path = Path(value)
        if not path.is_dir():
            return Path.home()
        return path

    def option_defaults(self) -> Dict[str, Any]:
        """Returns the per-mode defaults snapshotted into each new job's options."""
        return {
            'download_mode': self.download_mode,
            'video_quality': self.video_quality,
            'audio_quality': self.audio_quality,
            'convert_to_mp4': self.convert_to_mp4,
            'remux': self.remux,
        }

    def output_dir_for(self, download_mode: str) -> Path:
        """Chooses the output directory, honoring a separate audio path when configured."""
        if download_mode == 'audio' and self.audio_path:
            return self.audio_path
        return self.download_path


class ConfigManager:
    """Handles loading and saving the configuration file."""
    def __init__(self, config_path: Path):
        """
        Initializes the ConfigManager.

        Args:
            config_path: The path to the configuration file.
        """
        self.config_path = config_path
        self.logger = logging.getLogger(__name__)
        # Ensure the configuration directory exists
        self.config_path.parent.mkdir(parents=True, exist_ok=True)

    def load(self) -> Settings:
        """
        Loads config from file, merges with defaults, validates, and returns it.

        If the file doesn't exist, is invalid, or an error occurs, a default
        configuration is returned. Invalid files are backed up.

        Returns:
            A validated Settings object.
        """
        if not self.config_path.exists():
            self.logger.info("Config file not found. Creating with default settings.")
            default_settings = Settings()
            self.save(default_settings)
            return default_settings

        try:
            config_data = json.loads(self.config_path.read_text(encoding='utf-8'))
            return Settings.model_validate(config_data)
        except (ValidationError, json.JSONDecodeError, IOError) as e:
            self.logger.error(f"Error loading {self.config_path}: {e}. Backing up and using defaults.")
            try:
                backup_path = self.config_path.with_suffix(f".{int(time.time())}.bak")
                self.config_path.rename(backup_path)
                self.logger.info(f"Backed up corrupted config to {backup_path}")
            except IOError as backup_e:
                self.logger.error(f"Could not back up corrupted config file: {backup_e}")
            return Settings()

    def save(self, settings: Settings):
        """
        Saves the provided settings object to the config file.

        Args:
            settings: The Settings object to save.
        """
        try:
            self.config_path.write_text(settings.model_dump_json(indent=4), encoding='utf-8')
        except IOError as e:
            self.logger.error(f"Error saving config file to {self.config_path}: {e}")

    def update(self, settings: Settings, changes: Dict[str, Any]) -> Settings:
        """
        Validates a partial update, saves it and applies it to `settings` in place.

        Updating in place keeps every holder of the `settings` object (such as a
        running queue) looking at the new values.

        Raises:
            ValidationError: If the merged settings are invalid.
        """
        new_settings = Settings.model_validate({**settings.model_dump(), **changes})
        self.save(new_settings)
        for name in type(new_settings).model_fields:
            setattr(settings, name, getattr(new_settings, name))
        return settings
