"""
Tests for run configuration and logging setup.
"""

import logging
from pathlib import Path

import pytest

from hostplay.config import RunConfig, load_config
from hostplay.engine.errors import ConfigError
from hostplay.log import TRACE, configure_logging, level_for


class TestLoadConfig:
    """Test configuration layering."""

    def test_defaults(self, tmp_path: Path, monkeypatch):
        """With no file and no environment the defaults apply."""
        monkeypatch.chdir(tmp_path)
        config = load_config(environ={})
        assert config == RunConfig()
        assert config.forks == 5
        assert config.strategy == "linear"
        assert config.task_timeout is None

    def test_ini_file(self, tmp_path: Path):
        """The [defaults] section sets values; aliases map to fields."""
        cfg = tmp_path / "hostplay.cfg"
        cfg.write_text("""
[defaults]
forks = 20
strategy = free
timeout = 30
gathering = implicit
""")
        config = load_config(str(cfg), environ={})

        assert config.forks == 20
        assert config.strategy == "free"
        assert config.task_timeout == 30.0
        assert config.gather_facts is True

    def test_cwd_file_picked_up(self, tmp_path: Path, monkeypatch):
        """./hostplay.cfg is read when no path is given."""
        (tmp_path / "hostplay.cfg").write_text("[defaults]\nforks = 9\n")
        monkeypatch.chdir(tmp_path)
        assert load_config(environ={}).forks == 9

    def test_environment_beats_file(self, tmp_path: Path):
        """HOSTPLAY_* variables override the config file."""
        cfg = tmp_path / "hostplay.cfg"
        cfg.write_text("[defaults]\nforks = 20\n")
        config = load_config(str(cfg), environ={
            "HOSTPLAY_FORKS": "3",
            "HOSTPLAY_ROLES_PATH": "/a:/b",
        })
        assert config.forks == 3
        assert config.roles_path == ["/a", "/b"]

    def test_cli_override_beats_environment(self, tmp_path: Path, monkeypatch):
        """override() applies non-None values on top."""
        monkeypatch.chdir(tmp_path)
        config = load_config(environ={"HOSTPLAY_STRATEGY": "free"})
        overridden = config.override(strategy="linear", forks=None, check_mode=True)
        assert overridden.strategy == "linear"
        assert overridden.forks == 5
        assert overridden.check_mode is True
        assert config.strategy == "free"

    def test_unknown_keys_warn(self, tmp_path: Path, caplog):
        """Unknown INI keys are ignored with a warning."""
        cfg = tmp_path / "hostplay.cfg"
        cfg.write_text("[defaults]\nhost_key_checking = false\n")
        with caplog.at_level(logging.WARNING, logger="hostplay.config"):
            config = load_config(str(cfg), environ={})
        assert config == RunConfig()
        assert "host_key_checking" in caplog.text

    def test_missing_explicit_file(self, tmp_path: Path):
        """A named config file that does not exist is an error."""
        with pytest.raises(ConfigError):
            load_config(str(tmp_path / "missing.cfg"), environ={})

    @pytest.mark.parametrize("key,value", [
        ("forks", "many"),
        ("forks", "0"),
        ("strategy", "random"),
        ("task_timeout", "-1"),
        ("gather_facts", "perhaps"),
    ])
    def test_invalid_values(self, key, value):
        """Invalid values raise ConfigError naming the setting."""
        with pytest.raises(ConfigError) as exc_info:
            RunConfig().override(**{key: value})
        assert exc_info.value.key == key

    def test_zero_timeout_means_none(self):
        """A zero timeout disables the timeout."""
        assert RunConfig().override(task_timeout="0").task_timeout is None


class TestLogging:
    """Test logging setup."""

    @pytest.mark.parametrize("verbosity,level", [
        (0, logging.WARNING),
        (1, logging.INFO),
        (2, logging.DEBUG),
        (3, TRACE),
        (5, TRACE),
    ])
    def test_level_for(self, verbosity, level):
        """-v counts map to logging levels."""
        assert level_for(verbosity) == level

    def test_configure_replaces_handlers(self, tmp_path: Path):
        """Configuring twice leaves a single handler on the hostplay logger."""
        log_file = tmp_path / "run.log"
        configure_logging(1)
        logger = configure_logging(2, str(log_file))

        assert len(logger.handlers) == 1
        assert logger.level == logging.DEBUG
        logging.getLogger("hostplay.engine.scheduler").debug("hello from the scheduler")
        logger.handlers[0].flush()
        assert "hello from the scheduler" in log_file.read_text()
