"""Configuration file loader with validation"""

import yaml
import os
from pathlib import Path
from typing import Dict, Any, Optional
from .errors import ConfigurationError

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parents[2] / "config" / "settings.yaml"

REQUIRED_KEYS = ['version', 'database', 'scraper', 'concurrency', 'state']


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load YAML configuration file with validation.
    SCRAPE_SYNC_CONFIG overrides the default location.

    Args:
        config_path: Path to configuration file

    Returns:
        Dictionary with configuration

    Raises:
        ConfigurationError: If file doesn't exist or invalid YAML
    """
    config_path = config_path or os.getenv("SCRAPE_SYNC_CONFIG") or str(DEFAULT_CONFIG_PATH)

    try:
        config_file = Path(config_path)

        if not config_file.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        with open(config_file, 'r') as f:
            config = yaml.safe_load(f) or {}

        missing_keys = [key for key in REQUIRED_KEYS if key not in config]

        if missing_keys:
            raise ConfigurationError(f"Missing required configuration keys: {missing_keys}")

        return config

    except ConfigurationError:
        raise
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in configuration file: {e}")
    except Exception as e:
        raise ConfigurationError(f"Error loading configuration: {e}")


def save_config(config_path: str, config: Dict[str, Any]) -> None:
    """
    Save configuration to YAML file

    Args:
        config_path: Path to configuration file
        config: Configuration dictionary

    Raises:
        ConfigurationError: If unable to write file
    """
    try:
        config_file = Path(config_path)
        config_file.parent.mkdir(parents=True, exist_ok=True)

        with open(config_file, 'w') as f:
            yaml.dump(config, f, default_flow_style=False, sort_keys=False)

    except Exception as e:
        raise ConfigurationError(f"Error saving configuration: {e}")


def get_section(config: Dict[str, Any], section: str) -> Dict[str, Any]:
    """
    Get one configuration section, empty dict when absent

    Args:
        config: Full configuration dictionary
        section: Top-level key (e.g. "scraper", "concurrency")

    Returns:
        Section dictionary
    """
    return config.get(section) or {}
