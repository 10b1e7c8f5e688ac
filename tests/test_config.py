"""
Test cases for configuration loading.
"""
from __future__ import annotations
import pytest

from globtail.config import Config, load_config, parse_start
from globtail.tailer import END


def _write(tmp_path, text: str) -> str:
    path = tmp_path / "globtail.yaml"
    path.write_text(text, encoding="utf-8")
    return str(path)


class TestLoadConfig:
    """Test loading valid configuration files."""

    def test_example_config(self, config_path):
        cfg = load_config(str(config_path))
        assert cfg.version == 1
        assert cfg.tail.start == END
        assert cfg.tail.poll_interval is None
        assert [g.pattern for g in cfg.globs] == ["/var/log/*.log", "/var/log/nginx/**/*.log"]
        assert cfg.globs[0].interval == 60.0
        assert cfg.globs[0].exclude[0].search("/var/log/app.log.gz")
        assert cfg.globs[1].exclude == []

    def test_empty_file_gives_defaults(self, tmp_path):
        cfg = load_config(_write(tmp_path, ""))
        assert cfg == Config()
        assert cfg.tail.symlink_check_interval == 1.0
        assert cfg.tail.missing_file_check_interval == 1.0

    def test_glob_shorthand_string(self, tmp_path):
        cfg = load_config(_write(tmp_path, "globs:\n  - /tmp/*.log\n"))
        assert cfg.globs[0].pattern == "/tmp/*.log"
        assert cfg.globs[0].interval == 60.0

    def test_tail_settings(self, tmp_path):
        cfg = load_config(_write(tmp_path, (
            "tail:\n"
            "  start: 0\n"
            "  symlink_check_interval: 0.5\n"
            "  missing_file_check_interval: 2\n"
            "  poll_interval: 0.25\n"
        )))
        assert cfg.tail.start == 0
        assert cfg.tail.symlink_check_interval == 0.5
        assert cfg.tail.missing_file_check_interval == 2.0
        assert cfg.tail.poll_interval == 0.25


class TestConfigErrors:
    """Test validation errors."""

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError, match="Configuration file not found"):
            load_config(str(tmp_path / "nope.yaml"))

    def test_invalid_yaml(self, tmp_path):
        with pytest.raises(ValueError, match="Invalid YAML"):
            load_config(_write(tmp_path, "globs: [unclosed\n"))

    def test_top_level_must_be_mapping(self, tmp_path):
        with pytest.raises(ValueError, match="mapping"):
            load_config(_write(tmp_path, "- just\n- a list\n"))

    def test_glob_without_pattern(self, tmp_path):
        with pytest.raises(ValueError, match="missing required field 'pattern'"):
            load_config(_write(tmp_path, "globs:\n  - interval: 5\n"))

    def test_invalid_exclude_regex(self, tmp_path):
        with pytest.raises(ValueError, match="Invalid exclude regex"):
            load_config(_write(tmp_path, "globs:\n  - pattern: '*.log'\n    exclude: ['(']\n"))

    def test_negative_interval(self, tmp_path):
        with pytest.raises(ValueError, match="must be positive"):
            load_config(_write(tmp_path, "globs:\n  - pattern: '*.log'\n    interval: -1\n"))

    def test_non_numeric_interval(self, tmp_path):
        with pytest.raises(ValueError, match="number of seconds"):
            load_config(_write(tmp_path, "tail:\n  symlink_check_interval: soon\n"))


class TestParseStart:
    """Test start position parsing."""

    def test_end(self):
        assert parse_start("end") == END
        assert parse_start("END") == END
        assert parse_start(None) == END

    def test_offsets(self):
        assert parse_start(0) == 0
        assert parse_start("128") == 128

    def test_invalid(self):
        with pytest.raises(ValueError):
            parse_start(-1)
        with pytest.raises(ValueError):
            parse_start("middle")
