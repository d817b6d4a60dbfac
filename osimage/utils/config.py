#!/usr/bin/env python3
"""
utils/config.py
Configuration Management for the OS image builder
Disk geometry, partition defaults and logging options from a JSON file,
checked against a jsonschema document
"""

import json
import threading
from copy import deepcopy
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Union

import jsonschema


CONFIG_FILE_VERSION = '1.0'

_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
_LOG_SWITCHES = ["console_logging", "file_logging", "error_file_logging",
                 "structured_logging", "use_colors"]


class ConfigError(Exception):
    """Raised when a configuration file cannot be read or written"""
    pass


class ConfigValidationError(ConfigError):
    """Raised when configuration values break the schema"""
    pass


def _section(properties: Dict[str, Any], required=None) -> Dict[str, Any]:
    schema = {"type": "object", "properties": properties}
    if required:
        schema["required"] = required
    return schema


class Config:
    """
    Layered configuration: DEFAULT_CONFIG overlaid with the sections found in
    the config file. Values are read per section and key.
    """

    SCHEMA = _section({
        "disk": _section({
            "bytes_per_sector": {"type": "integer", "enum": [512, 1024, 2048, 4096]},
            "sectors_per_track": {"type": "integer", "minimum": 1, "maximum": 255},
            "heads_per_cylinder": {"type": "integer", "minimum": 1, "maximum": 255},
            "default_size_mb": {"type": "integer", "minimum": 1},
            "minimum_size_mb": {"type": "integer", "minimum": 1},
            "default_image_name": {"type": "string", "minLength": 1},
        }, required=["bytes_per_sector", "sectors_per_track", "heads_per_cylinder"]),
        "partition": _section({
            "filesystem": {"type": "string", "enum": ["mfs", "fat"]},
            "label": {"type": "string", "maxLength": 64},
            "first_sector": {"type": "integer", "minimum": 1},
        }),
        "logging": _section({
            "level": {"type": "string", "enum": _LOG_LEVELS},
            "log_directory": {"type": "string"},
            "max_file_size": {"type": "integer", "minimum": 1024},
            "backup_count": {"type": "integer", "minimum": 1, "maximum": 100},
            **{switch: {"type": "boolean"} for switch in _LOG_SWITCHES},
        }),
    })

    DEFAULT_CONFIG = {
        "disk": {
            "bytes_per_sector": 512,
            "sectors_per_track": 63,
            "heads_per_cylinder": 255,
            "default_size_mb": 128,
            "minimum_size_mb": 64,
            "default_image_name": "disk.img",
        },
        "partition": {
            "filesystem": "mfs",
            "label": "System",
            "first_sector": 2048,
        },
        "logging": {
            "level": "INFO",
            "console_logging": True,
            "file_logging": False,
            "error_file_logging": False,
            "structured_logging": False,
            "use_colors": True,
            "log_directory": "logs",
            "max_file_size": 10 * 1024 * 1024,
            "backup_count": 5,
        },
    }

    def __init__(self, config_file: Optional[Union[str, Path]] = None):
        """
        Args:
            config_file: JSON file to read (when it exists); defaults only when omitted
        """
        self._lock = threading.RLock()
        self._config = deepcopy(self.DEFAULT_CONFIG)
        self._config_file = Path(config_file) if config_file else None

        if self._config_file is not None and self._config_file.exists():
            self.load()

    @property
    def config_file(self) -> Optional[Path]:
        return self._config_file

    def load(self, config_file: Optional[Union[str, Path]] = None) -> bool:
        """Overlay the sections of a config file; False when there is no file to read"""
        path = Path(config_file) if config_file else self._config_file
        if path is None or not path.exists():
            return False

        try:
            data = json.loads(path.read_text(encoding='utf-8'))
        except (OSError, ValueError) as e:
            raise ConfigError(f"Failed to load config {path}: {str(e)}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"Config root must be an object: {path}")

        # Files written by save() wrap the sections in a 'config' key
        with self._lock:
            self._merge_config(data.get('config', data))
            self.ensure_valid()
        return True

    def save(self, config_file: Optional[Union[str, Path]] = None) -> bool:
        path = Path(config_file) if config_file else self._config_file
        if path is None:
            raise ConfigError("No configuration file to save to")

        with self._lock:
            document = {
                'version': CONFIG_FILE_VERSION,
                'saved_at': datetime.now().isoformat(),
                'config': self._config,
            }
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_text(json.dumps(document, indent=4, sort_keys=True), encoding='utf-8')
            except OSError as e:
                raise ConfigError(f"Failed to save config {path}: {str(e)}") from e
        return True

    def _merge_config(self, overrides: Dict):
        for section, values in overrides.items():
            current = self._config.get(section)
            if isinstance(values, dict) and isinstance(current, dict):
                current.update(values)
            else:
                self._config[section] = values

    def get(self, section: str, key: str, default: Any = None) -> Any:
        return self._config.get(section, {}).get(key, default)

    def set(self, section: str, key: str, value: Any):
        with self._lock:
            self._config.setdefault(section, {})[key] = value

    def apply_override(self, assignment: str):
        """Apply a 'section.key=value' setting; the value is read as JSON, else kept as text"""
        setting, separator, raw = assignment.partition('=')
        section, dot, key = setting.strip().partition('.')
        if not (separator and dot and section and key):
            raise ConfigError(f"Expected section.key=value, got '{assignment}'")
        try:
            value = json.loads(raw)
        except ValueError:
            value = raw
        self.set(section, key, value)

    def get_section(self, section: str) -> Dict[str, Any]:
        """Copy of one section; edits to it do not reach the configuration"""
        return deepcopy(self._config.get(section, {}))

    def ensure_valid(self):
        """Raise ConfigValidationError naming the first offending setting"""
        try:
            jsonschema.validate(instance=self._config, schema=self.SCHEMA)
        except jsonschema.ValidationError as e:
            location = '.'.join(str(part) for part in e.absolute_path) or '<root>'
            raise ConfigValidationError(f"{location}: {e.message}") from e

    def logging_options(self) -> Dict[str, Any]:
        """Logging section translated to the keys setup_logging() expects"""
        options = self.get_section('logging')
        options['log_level'] = options.pop('level', 'INFO')
        return options

