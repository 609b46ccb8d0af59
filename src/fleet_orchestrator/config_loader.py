"""
OmegaConf-based configuration management for the fleet orchestrator.

Provides layered config loading with environment variable interpolation
and write-back of individual sections (used to persist toggles such as
auto-restart).
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from omegaconf import DictConfig, OmegaConf

from .config import FleetConfig

logger = logging.getLogger(__name__)

# Global config cache
_config_cache: Optional[DictConfig] = None


def get_config_dir() -> Path:
    """Get config directory path (single source of truth)."""
    return Path(os.getenv("FLEET_CONFIG_DIR", "config"))


def get_config_path() -> Path:
    """Path of the user config file that receives saved sections."""
    config_file = os.getenv("FLEET_CONFIG_FILE", "config.yml")
    if os.path.isabs(config_file):
        return Path(config_file)
    return get_config_dir() / config_file


def load_config(force_reload: bool = False) -> DictConfig:
    """
    Load and merge configuration using OmegaConf.

    Merge priority (later overrides earlier):
    1. config/defaults.yml (shipped defaults)
    2. config/config.yml (user overrides)
    3. Environment variables (via ${oc.env:VAR,default} syntax)

    Args:
        force_reload: If True, reload from disk even if cached

    Returns:
        Merged DictConfig with all settings
    """
    global _config_cache

    if _config_cache is not None and not force_reload:
        return _config_cache

    defaults_path = get_config_dir() / "defaults.yml"
    config_path = get_config_path()

    defaults = OmegaConf.create({})
    if defaults_path.exists():
        try:
            defaults = OmegaConf.load(defaults_path)
            logger.info(f"Loaded defaults from {defaults_path}")
        except Exception as e:
            logger.warning(f"Could not load defaults from {defaults_path}: {e}")

    user_config = OmegaConf.create({})
    if config_path.exists():
        try:
            user_config = OmegaConf.load(config_path)
            logger.info(f"Loaded config from {config_path}")
        except Exception as e:
            logger.error(f"Error loading config from {config_path}: {e}")

    merged = OmegaConf.merge(defaults, user_config)
    _config_cache = merged
    return merged


def reload_config() -> DictConfig:
    """Reload configuration from disk (invalidate cache)."""
    global _config_cache
    _config_cache = None
    return load_config(force_reload=True)


def _flatten(values: Dict[str, Any], prefix: str = "") -> Dict[str, Any]:
    """Flatten nested groups so ``bypass_agent.enabled`` becomes ``bypass_agent_enabled``."""
    flat: Dict[str, Any] = {}
    for key, value in values.items():
        name = f"{prefix}_{key}" if prefix else str(key)
        if isinstance(value, dict):
            flat.update(_flatten(value, name))
        else:
            flat[name] = value
    return flat


def load_fleet_config(force_reload: bool = False) -> FleetConfig:
    """
    Build a FleetConfig from the ``fleet`` section of the merged YAML.

    Keys missing from YAML keep their environment-backed defaults.
    """
    cfg = load_config(force_reload=force_reload)
    section = cfg.get("fleet", None)
    if section is None:
        return FleetConfig()

    values = OmegaConf.to_container(section, resolve=True) or {}
    return FleetConfig.from_mapping(_flatten(values))


def save_config_section(section_path: str, values: Dict[str, Any]) -> bool:
    """
    Update a config section and save to config.yml.

    Also updates the in-memory config cache so changes take effect immediately.

    Args:
        section_path: Dot-separated path (e.g., 'fleet')
        values: Dict with new values

    Returns:
        True if saved successfully
    """
    try:
        config_path = get_config_path()
        config_path.parent.mkdir(parents=True, exist_ok=True)

        existing_config = OmegaConf.create({})
        if config_path.exists():
            existing_config = OmegaConf.load(config_path)

        OmegaConf.update(existing_config, section_path, values, merge=True)
        OmegaConf.save(existing_config, config_path)

        merged = reload_config()
        OmegaConf.update(merged, section_path, values, merge=True)

        logger.info(f"Saved config section '{section_path}' to {config_path}")
        return True

    except Exception as e:
        logger.error(f"Error saving config section '{section_path}': {e}")
        return False
