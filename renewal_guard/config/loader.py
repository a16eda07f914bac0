"""
Configuration management and loading.

Handles engine settings read from a YAML file.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict

import yaml

from renewal_guard.core.schedule import CalculationVersion, InvalidVersionError
from renewal_guard.storage.db import DEFAULT_DB_PATH


@dataclass(frozen=True)
class ReminderConfig:
    """How many days ahead reminders are due."""
    renewal_days: int = 7
    cancellation_days: int = 3

    def __post_init__(self):
        """Validate reminder windows are not negative."""
        if self.renewal_days < 0:
            raise ValueError("renewal_days must be >= 0")
        if self.cancellation_days < 0:
            raise ValueError("cancellation_days must be >= 0")


@dataclass(frozen=True)
class EngineConfig:
    """Complete engine configuration."""
    database_path: str = DEFAULT_DB_PATH
    default_calculation_version: CalculationVersion = CalculationVersion.LEGACY
    significant_difference_days: int = 7
    reminders: ReminderConfig = field(default_factory=ReminderConfig)

    def __post_init__(self):
        """Validate engine values."""
        if not self.database_path:
            raise ValueError("database_path cannot be empty")
        if self.significant_difference_days <= 0:
            raise ValueError("significant_difference_days must be > 0")


def load_engine_config(path: str) -> EngineConfig:
    """Load and validate engine configuration from YAML file.

    Every key is optional, but unknown keys and badly typed values are
    rejected so a typo never silently falls back to a default.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated EngineConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Engine config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return EngineConfig()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration root must be a dictionary")

    allowed_top_keys = {
        'database_path',
        'default_calculation_version',
        'significant_difference_days',
        'reminders'
    }
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    defaults = EngineConfig()
    kwargs: Dict[str, Any] = {}

    if 'database_path' in raw_config:
        database_path = raw_config['database_path']
        if not isinstance(database_path, str) or not database_path.strip():
            raise ValueError("'database_path' must be a non-empty string")
        kwargs['database_path'] = database_path

    if 'default_calculation_version' in raw_config:
        try:
            kwargs['default_calculation_version'] = CalculationVersion.parse(
                raw_config['default_calculation_version']
            )
        except InvalidVersionError:
            raise ValueError("'default_calculation_version' must be 1 or 2")

    if 'significant_difference_days' in raw_config:
        kwargs['significant_difference_days'] = _parse_int(
            raw_config['significant_difference_days'], 'significant_difference_days', minimum=1
        )

    if 'reminders' in raw_config:
        kwargs['reminders'] = _parse_reminders(raw_config['reminders'])

    return EngineConfig(
        database_path=kwargs.get('database_path', defaults.database_path),
        default_calculation_version=kwargs.get(
            'default_calculation_version', defaults.default_calculation_version
        ),
        significant_difference_days=kwargs.get(
            'significant_difference_days', defaults.significant_difference_days
        ),
        reminders=kwargs.get('reminders', defaults.reminders)
    )


def _parse_reminders(data: Any) -> ReminderConfig:
    """Parse and validate the reminders section.

    Args:
        data: Raw reminders section

    Returns:
        Validated ReminderConfig

    Raises:
        ValueError: If the section is invalid
    """
    if not isinstance(data, dict):
        raise ValueError("'reminders' must be a dictionary")

    allowed_keys = {'renewal_days', 'cancellation_days'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in reminders: {unknown_keys}")

    defaults = ReminderConfig()
    return ReminderConfig(
        renewal_days=_parse_int(
            data.get('renewal_days', defaults.renewal_days), 'reminders.renewal_days', minimum=0
        ),
        cancellation_days=_parse_int(
            data.get('cancellation_days', defaults.cancellation_days),
            'reminders.cancellation_days',
            minimum=0
        )
    )


def _parse_int(value: Any, path: str, minimum: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{path}' must be an integer")
    if value < minimum:
        raise ValueError(f"'{path}' must be >= {minimum}")
    return value
