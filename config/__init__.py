"""Configuration module for loading and managing application settings"""
from typing import Dict, Any
import os

from .lib.load_settings_conf import load_settings_conf, validate_settings, SettingsError, DEFAULTS

__all__ = ['settings_conf', 'load_settings_conf', 'validate_settings', 'SettingsError', 'DEFAULTS']

# Directory holding settings.conf, overridable for deployments and tests
SETTINGS_DIR = os.environ.get('MARKETPLACE_SETTINGS_DIR', '.')

try:
    settings_conf: Dict[str, Any] = load_settings_conf(SETTINGS_DIR)

except SettingsError as e:
    # Re-raise the error but provide more context
    raise SettingsError(
        f"Configuration Error\n"
        "=================\n\n"
        f"{str(e)}\n\n"
        f"Please check {os.path.join(SETTINGS_DIR, 'settings.conf')}.\n"
        "See settings.conf.example for the available keys."
    )
