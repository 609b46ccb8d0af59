"""Test fleet configuration defaults, validation and layered YAML loading."""

import shutil
from pathlib import Path

import pytest
import yaml

from fleet_orchestrator import config_loader
from fleet_orchestrator.config import FleetConfig
from fleet_orchestrator.config_loader import (
    _flatten,
    load_config,
    load_fleet_config,
    save_config_section,
)

SHIPPED_DEFAULTS = Path(__file__).resolve().parents[2] / "config" / "defaults.yml"


@pytest.fixture
def config_dir(tmp_path, monkeypatch):
    """Isolated config directory holding a copy of the shipped defaults."""
    shutil.copy(SHIPPED_DEFAULTS, tmp_path / "defaults.yml")
    monkeypatch.setenv("FLEET_CONFIG_DIR", str(tmp_path))
    monkeypatch.delenv("FLEET_CONFIG_FILE", raising=False)
    monkeypatch.setattr(config_loader, "_config_cache", None)
    return tmp_path


def test_defaults_are_valid():
    """Test that the built-in defaults pass validation."""
    config = FleetConfig()

    assert config.max_concurrent_starts == 2
    assert config.bot_quota == 10
    assert config.auto_restart_enabled is False


def test_env_overrides_default(monkeypatch):
    """Test environment variables feed the dataclass defaults."""
    monkeypatch.setenv("FLEET_BOT_QUOTA", "4")
    monkeypatch.setenv("FLEET_AUTO_RESTART_ENABLED", "yes")

    config = FleetConfig()

    assert config.bot_quota == 4
    assert config.auto_restart_enabled is True


@pytest.mark.parametrize(
    "overrides",
    [
        {"max_concurrent_starts": 0},
        {"bot_quota": 0},
        {"poll_interval": 0},
        {"launch_delay": -1},
        {"listener_backoff_factor": 0.5},
        {"listener_max_attempts": -1},
    ],
)
def test_invalid_values_rejected(overrides):
    """Test __post_init__ validation."""
    with pytest.raises(ValueError):
        FleetConfig(**overrides)


def test_bypass_agent_configured():
    """Test the bypass stage needs both the flag and an executable."""
    assert FleetConfig(bypass_agent_executable="/opt/agent").bypass_agent_configured is True
    assert FleetConfig(bypass_agent_executable="").bypass_agent_configured is False
    assert (
        FleetConfig(bypass_agent_enabled=False, bypass_agent_executable="/opt/agent").bypass_agent_configured
        is False
    )


def test_from_mapping_ignores_unknown_keys():
    """Test unknown keys are dropped rather than raising."""
    config = FleetConfig.from_mapping({"bot_quota": 3, "not_a_setting": True})
    assert config.bot_quota == 3


def test_flatten_nested_groups():
    """Test nested YAML groups map onto flat field names."""
    flat = _flatten(
        {
            "bypass_agent": {"enabled": False, "settle_delay": 2},
            "listener": {"max_attempts": 4},
            "bot_quota": 7,
        }
    )

    assert flat == {
        "bypass_agent_enabled": False,
        "bypass_agent_settle_delay": 2,
        "listener_max_attempts": 4,
        "bot_quota": 7,
    }


@pytest.mark.unit
class TestLayeredLoading:
    """Test defaults.yml + config.yml + environment layering."""

    def test_shipped_defaults(self, config_dir, monkeypatch):
        monkeypatch.delenv("FLEET_CHANNEL_ADDRESS", raising=False)

        config = load_fleet_config()

        assert config.listener_max_attempts == 10
        assert config.injection_success_marker == "Successfully injected module"
        assert config.channel_address == "fleet.sock"
        assert config.bypass_agent_executable == ""

    def test_user_config_overrides_defaults(self, config_dir):
        (config_dir / "config.yml").write_text(
            yaml.safe_dump({"fleet": {"bot_quota": 3, "listener": {"max_attempts": 2}}})
        )

        config = load_fleet_config()

        assert config.bot_quota == 3
        assert config.listener_max_attempts == 2
        assert config.max_concurrent_starts == 2

    def test_env_interpolation(self, config_dir, monkeypatch):
        monkeypatch.setenv("FLEET_TARGET_EXECUTABLE", "/opt/fleet/target.bin")

        config = load_fleet_config()

        assert config.target_executable == "/opt/fleet/target.bin"

    def test_missing_fleet_section(self, tmp_path, monkeypatch):
        monkeypatch.setenv("FLEET_CONFIG_DIR", str(tmp_path))
        monkeypatch.setattr(config_loader, "_config_cache", None)

        config = load_fleet_config()

        assert isinstance(config, FleetConfig)
        assert config.bot_quota == 10

    def test_cache(self, config_dir):
        first = load_config()
        assert load_config() is first
        assert load_config(force_reload=True) is not first

    def test_save_section_persists_and_updates_cache(self, config_dir):
        assert save_config_section("fleet", {"auto_restart_enabled": True}) is True

        saved = yaml.safe_load((config_dir / "config.yml").read_text())
        assert saved == {"fleet": {"auto_restart_enabled": True}}
        assert load_config().fleet.auto_restart_enabled is True
        assert load_fleet_config().auto_restart_enabled is True

    def test_save_section_keeps_other_values(self, config_dir):
        (config_dir / "config.yml").write_text(yaml.safe_dump({"fleet": {"bot_quota": 4}}))

        save_config_section("fleet", {"auto_restart_enabled": False})

        saved = yaml.safe_load((config_dir / "config.yml").read_text())
        assert saved["fleet"] == {"bot_quota": 4, "auto_restart_enabled": False}

    def test_save_section_failure_returns_false(self, config_dir, monkeypatch):
        blocker = config_dir / "blocked"
        blocker.write_text("not a directory")
        monkeypatch.setenv("FLEET_CONFIG_FILE", str(blocker / "config.yml"))

        assert save_config_section("fleet", {"auto_restart_enabled": True}) is False
