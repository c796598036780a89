"""
Configuration Management System for TopicGate

Handles loading configuration from environment variables, config files,
and provides validation and runtime updates.
"""

import os
import json
import yaml
import logging
from typing import Any, Dict, List, Optional, Callable, Tuple
from pathlib import Path
from dataclasses import dataclass


@dataclass
class ConfigSource:
    """Configuration source definition"""
    name: str
    priority: int
    loader: Callable
    path: Optional[str] = None


class ConfigurationError(Exception):
    """Configuration-related errors"""
    pass


class ConfigurationManager:
    """
    Manages system configuration with support for multiple sources,
    validation, and runtime updates.
    """

    def __init__(self, config_dir: str = "config"):
        self.config_dir = Path(config_dir)
        self.config: Dict[str, Any] = {}
        self.watchers: Dict[str, List[Callable]] = {}
        self.sources: List[ConfigSource] = []
        self.logger = logging.getLogger(__name__)

        # Default configuration values
        self.defaults = {
            "app": {
                "name": "TopicGate",
                "version": "1.0.0",
                "debug": False,
                "log_level": "INFO",
                "status_interval": 300
            },
            "database": {
                "path": "data/topicgate.db",
                "max_connections": 10
            },
            "logging": {
                "level": "INFO",
                "file": "logs/topicgate.log",
                "max_size": "10MB",
                "backup_count": 5,
                "console": True
            },
            "bridge": {
                "enabled": True,
                "forum": {
                    "container_id": None,
                    "log_container_id": None
                },
                "clients": {
                    "source": None,
                    "forum": None,
                    "source_options": {},
                    "forum_options": {}
                },
                "sync": {
                    "include_self_messages": False,
                    "ignored_conversations": [],
                    "command_prefix": "/"
                },
                "media": {
                    "staging_dir": "data/staging",
                    "max_file_size": 52428800,
                    "timeout": 30
                },
                "rate_limits": {
                    "commands": {"points": 10, "duration": 60},
                    "downloads": {"points": 5, "duration": 3600},
                    "cleanup_interval": 300
                },
                "reconnect": {
                    "delay": 5,
                    "multiplier": 1.0,
                    "max_delay": 60
                },
                "presence": {
                    "revert_after": 10
                },
                "calls": {
                    "suppression_window": 30,
                    "cleanup_interval": 60
                },
                "reply_index": {
                    "max_age": 86400
                },
                "mark_read_delay": 1.0
            }
        }

        self._setup_sources()

    def _setup_sources(self):
        """Set up configuration sources in priority order"""
        self.sources.append(ConfigSource(
            name="environment",
            priority=4,
            loader=self._load_from_env
        ))

        local_config_path = str(self.config_dir / "config.yaml")
        self.sources.append(ConfigSource(
            name="local_config",
            priority=3,
            loader=lambda: self._load_from_file(local_config_path),
            path=local_config_path
        ))

        default_config_path = str(self.config_dir / "default.yaml")
        self.sources.append(ConfigSource(
            name="default_config",
            priority=2,
            loader=lambda: self._load_from_file(default_config_path),
            path=default_config_path
        ))

        self.sources.append(ConfigSource(
            name="defaults",
            priority=1,
            loader=lambda: self.defaults
        ))

    def load_config(self) -> None:
        """Load configuration from all sources"""
        self.logger.info("Loading configuration from all sources")

        merged_config = {}

        # Lowest priority first so later sources override
        for source in sorted(self.sources, key=lambda x: x.priority):
            try:
                source_config = source.loader()
                if source_config:
                    merged_config = self._deep_merge(merged_config, source_config)
                    self.logger.debug(f"Loaded configuration from {source.name}")
            except Exception as e:
                self.logger.warning(f"Failed to load config from {source.name}: {e}")

        self.config = merged_config
        self._validate_config()
        self.logger.info("Configuration loaded successfully")

    def _load_from_env(self) -> Dict[str, Any]:
        """Load configuration from environment variables"""
        config = {}

        env_mappings = {
            "TOPICGATE_DEBUG": "app.debug",
            "TOPICGATE_LOG_LEVEL": "app.log_level",
            "TOPICGATE_DB_PATH": "database.path",
            "TOPICGATE_FORUM_CONTAINER_ID": "bridge.forum.container_id",
            "TOPICGATE_LOG_CONTAINER_ID": "bridge.forum.log_container_id",
            "TOPICGATE_SOURCE_CLIENT": "bridge.clients.source",
            "TOPICGATE_FORUM_CLIENT": "bridge.clients.forum",
            "TOPICGATE_INCLUDE_SELF_MESSAGES": "bridge.sync.include_self_messages",
            "TOPICGATE_IGNORED_CONVERSATIONS": "bridge.sync.ignored_conversations",
            "TOPICGATE_STAGING_DIR": "bridge.media.staging_dir",
            "TOPICGATE_MAX_FILE_SIZE": "bridge.media.max_file_size"
        }

        for env_var, config_key in env_mappings.items():
            value = os.getenv(env_var)
            if value is not None:
                if value.lower() in ('true', 'false'):
                    value = value.lower() == 'true'
                elif value.lstrip('-').isdigit():
                    value = int(value)
                elif config_key == "bridge.sync.ignored_conversations":
                    # JSON array or comma separated list
                    try:
                        value = json.loads(value)
                    except json.JSONDecodeError:
                        value = [item.strip() for item in value.split(',') if item.strip()]

                self._set_nested_value(config, config_key, value)

        return config

    def _load_from_file(self, file_path: str) -> Dict[str, Any]:
        """Load configuration from YAML or JSON file"""
        path = Path(file_path)

        if not path.exists():
            return {}

        try:
            with open(path, 'r') as f:
                if path.suffix.lower() in ['.yaml', '.yml']:
                    return yaml.safe_load(f) or {}
                elif path.suffix.lower() == '.json':
                    return json.load(f)
                else:
                    self.logger.warning(f"Unsupported config file format: {path}")
                    return {}
        except Exception as e:
            self.logger.error(f"Error loading config file {path}: {e}")
            return {}

    def _deep_merge(self, base: Dict, override: Dict) -> Dict:
        """Deep merge two dictionaries"""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result

    def _set_nested_value(self, config: Dict, key_path: str, value: Any) -> None:
        """Set a nested configuration value using dot notation"""
        keys = key_path.split('.')
        current = config

        for key in keys[:-1]:
            if key not in current:
                current[key] = {}
            current = current[key]

        current[keys[-1]] = value

    def _validate_config(self) -> None:
        """Validate configuration values"""
        errors = []

        required_sections = ['app', 'database', 'bridge']
        for section in required_sections:
            if section not in self.config:
                errors.append(f"Missing required configuration section: {section}")

        db_path = self.get('database.path')
        if db_path:
            db_dir = Path(db_path).parent
            if not db_dir.exists():
                try:
                    db_dir.mkdir(parents=True, exist_ok=True)
                except Exception as e:
                    errors.append(f"Cannot create database directory {db_dir}: {e}")

        log_level = self.get('app.log_level', 'INFO')
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if str(log_level).upper() not in valid_levels:
            errors.append(f"Invalid log level: {log_level}")

        max_file_size = self.get('bridge.media.max_file_size')
        if max_file_size is not None and (not isinstance(max_file_size, int) or max_file_size <= 0):
            errors.append(f"Invalid media max_file_size: {max_file_size}")

        for bucket in ('commands', 'downloads'):
            limits = self.get(f'bridge.rate_limits.{bucket}', {}) or {}
            for field_name in ('points', 'duration'):
                value = limits.get(field_name)
                if value is not None and (not isinstance(value, (int, float)) or value <= 0):
                    errors.append(f"Invalid rate limit {bucket}.{field_name}: {value}")

        multiplier = self.get('bridge.reconnect.multiplier', 1.0)
        if not isinstance(multiplier, (int, float)) or multiplier < 1.0:
            errors.append(f"Invalid reconnect multiplier: {multiplier}")

        if errors:
            raise ConfigurationError(f"Configuration validation failed: {'; '.join(errors)}")

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value using dot notation"""
        keys = key.split('.')
        current = self.config

        try:
            for k in keys:
                current = current[k]
            return current
        except (KeyError, TypeError):
            return default

    def set(self, key: str, value: Any) -> None:
        """Set configuration value using dot notation"""
        self._set_nested_value(self.config, key, value)

        if key in self.watchers:
            for callback in self.watchers[key]:
                try:
                    callback(key, value)
                except Exception as e:
                    self.logger.error(f"Error in config watcher for {key}: {e}")

    def watch(self, key: str, callback: Callable[[str, Any], None]) -> None:
        """Watch for configuration changes"""
        if key not in self.watchers:
            self.watchers[key] = []
        self.watchers[key].append(callback)

    def get_section(self, section: str) -> Dict[str, Any]:
        """Get entire configuration section"""
        return self.get(section, {})

    def is_bridge_enabled(self) -> bool:
        """Check if the bridge is enabled"""
        return bool(self.get('bridge.enabled', False))

    def get_client_spec(self, role: str) -> Tuple[Optional[str], Dict[str, Any]]:
        """
        Get a network client's import path and constructor options.

        Args:
            role: "source" or "forum"

        Returns:
            ("module:Class" path or None, keyword options)
        """
        return (
            self.get(f'bridge.clients.{role}'),
            self.get(f'bridge.clients.{role}_options', {}) or {}
        )

    def export_config(self, file_path: str) -> None:
        """Export current configuration to file"""
        path = Path(file_path)

        try:
            with open(path, 'w') as f:
                if path.suffix.lower() in ['.yaml', '.yml']:
                    yaml.dump(self.config, f, default_flow_style=False, indent=2)
                elif path.suffix.lower() == '.json':
                    json.dump(self.config, f, indent=2)
                else:
                    raise ValueError(f"Unsupported file format: {path.suffix}")

            self.logger.info(f"Configuration exported to {path}")
        except Exception as e:
            self.logger.error(f"Failed to export configuration: {e}")
            raise ConfigurationError(f"Export failed: {e}")


# Global configuration manager instance
config_manager = ConfigurationManager()
