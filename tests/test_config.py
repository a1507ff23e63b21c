"""Tests for Settings validation and the ConfigManager."""

import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from mediaqueue.config import ConfigManager, Settings


class TestSettings:

    def test_defaults(self, tmp_path):
        settings = Settings(download_path=tmp_path)
        assert settings.max_concurrent_downloads == 2
        assert settings.download_path == tmp_path
        assert settings.option_defaults()['download_mode'] == 'auto'

    @pytest.mark.parametrize("changes", [
        {'max_concurrent_downloads': 0},
        {'download_mode': 'video-only'},
        {'log_level': 'LOUD'},
        {'filename_template': '../%(title)s.%(ext)s'},
        {'filename_template': 'no-placeholders.mp4'},
    ])
    def test_invalid_values_are_rejected(self, changes):
        with pytest.raises(ValidationError):
            Settings(**changes)

    def test_missing_download_path_falls_back_to_home(self, tmp_path):
        settings = Settings(download_path=tmp_path / "does-not-exist")
        assert settings.download_path == Path.home()

    def test_audio_path_used_for_audio_mode(self, tmp_path):
        audio = tmp_path / "music"
        settings = Settings(download_path=tmp_path, audio_path=audio)
        assert settings.output_dir_for('audio') == audio
        assert settings.output_dir_for('auto') == tmp_path


class TestConfigManager:

    def test_load_creates_default_file(self, tmp_path):
        manager = ConfigManager(tmp_path / "conf" / "config.json")
        settings = manager.load()
        assert settings.max_concurrent_downloads == 2
        assert (tmp_path / "conf" / "config.json").exists()

    def test_round_trip(self, tmp_path):
        manager = ConfigManager(tmp_path / "config.json")
        manager.save(Settings(download_path=tmp_path, max_concurrent_downloads=5, video_quality='720'))
        loaded = manager.load()
        assert loaded.max_concurrent_downloads == 5
        assert loaded.video_quality == '720'

    def test_corrupt_file_is_backed_up(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{not json", encoding='utf-8')
        settings = ConfigManager(path).load()

        assert settings.max_concurrent_downloads == 2
        assert not path.exists()
        assert list(tmp_path.glob("config.*.bak"))

    def test_update_applies_in_place(self, tmp_path):
        path = tmp_path / "config.json"
        manager = ConfigManager(path)
        settings = Settings(download_path=tmp_path)

        returned = manager.update(settings, {'max_concurrent_downloads': 4})
        assert returned is settings
        assert settings.max_concurrent_downloads == 4
        assert json.loads(path.read_text(encoding='utf-8'))['max_concurrent_downloads'] == 4

    def test_invalid_update_changes_nothing(self, tmp_path):
        manager = ConfigManager(tmp_path / "config.json")
        settings = Settings(download_path=tmp_path)
        with pytest.raises(ValidationError):
            manager.update(settings, {'max_concurrent_downloads': 99})
        assert settings.max_concurrent_downloads == 2
