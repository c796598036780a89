"""
Logging Configuration for TopicGate

Provides centralized logging setup with structured logging,
file rotation, and component-specific log levels.
"""

import logging
import logging.handlers
import sys
import json
from pathlib import Path
from typing import Dict, Optional, Any
import structlog
from datetime import datetime


class TopicGateLogger:
    """
    Centralized logging configuration for TopicGate
    """

    def __init__(self, config: Dict):
        self.config = config
        self.loggers: Dict[str, logging.Logger] = {}
        self.component_log_levels: Dict[str, str] = {}
        self._setup_logging()

    def _setup_logging(self):
        """Set up logging configuration"""
        log_config = self.config.get('logging', {})
        log_level = log_config.get('level', 'INFO').upper()
        log_file = log_config.get('file', 'logs/topicgate.log')
        max_size = log_config.get('max_size', '10MB')
        backup_count = log_config.get('backup_count', 5)
        console_enabled = log_config.get('console', True)
        console_level = log_config.get('console_level', 'INFO').upper()

        structlog.configure(
            processors=[
                structlog.stdlib.filter_by_level,
                structlog.stdlib.add_logger_name,
                structlog.stdlib.add_log_level,
                structlog.stdlib.PositionalArgumentsFormatter(),
                structlog.processors.TimeStamper(fmt="ISO"),
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.UnicodeDecoder(),
                structlog.processors.JSONRenderer()
            ],
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            wrapper_class=structlog.stdlib.BoundLogger,
            cache_logger_on_first_use=True,
        )

        root_logger = logging.getLogger()
        root_logger.setLevel(getattr(logging, log_level))
        root_logger.handlers.clear()

        # File handler with rotation
        if log_file:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.handlers.RotatingFileHandler(
                log_file,
                maxBytes=self._parse_size(max_size),
                backupCount=backup_count,
                encoding='utf-8'
            )
            file_formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            )
            file_handler.setFormatter(file_formatter)
            file_handler.setLevel(getattr(logging, log_level))
            root_logger.addHandler(file_handler)

        if console_enabled:
            console_handler = logging.StreamHandler(sys.stdout)
            console_formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
                datefmt='%H:%M:%S'
            )
            console_handler.setFormatter(console_formatter)
            console_handler.setLevel(getattr(logging, console_level))
            root_logger.addHandler(console_handler)

        # e.g. {"media_relay": "DEBUG", "src.services.bridge.dispatcher": "WARNING"}
        component_levels = log_config.get('components', {})
        for component, level in component_levels.items():
            self.set_component_log_level(component, level)

        self._configure_third_party_loggers()

    def _parse_size(self, size_str: str) -> int:
        """Parse size string like '10MB' to bytes"""
        size_str = str(size_str).upper()
        if size_str.endswith('KB'):
            return int(size_str[:-2]) * 1024
        elif size_str.endswith('MB'):
            return int(size_str[:-2]) * 1024 * 1024
        elif size_str.endswith('GB'):
            return int(size_str[:-2]) * 1024 * 1024 * 1024
        else:
            return int(size_str)

    def _configure_third_party_loggers(self):
        """Configure third-party library loggers to reduce noise"""
        noisy_loggers = [
            'asyncio',
            'aiohttp.access',
            'aiohttp.client',
            'PIL',
        ]

        for logger_name in noisy_loggers:
            logger = logging.getLogger(logger_name)
            logger.setLevel(logging.WARNING)

    def _full_name(self, name: str) -> str:
        if name.startswith('topicgate') or name.startswith('src.'):
            return name
        return f'topicgate.{name}'

    def get_logger(self, name: str) -> logging.Logger:
        """Get a logger for a specific component"""
        if name not in self.loggers:
            logger = logging.getLogger(self._full_name(name))
            if name in self.component_log_levels:
                logger.setLevel(getattr(logging, self.component_log_levels[name]))
            self.loggers[name] = logger

        return self.loggers[name]

    def set_component_log_level(self, component: str, level: str):
        """
        Set log level for a specific component.

        Args:
            component: Component name, short ("media_relay") or dotted module path
            level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        """
        level = level.upper()
        self.component_log_levels[component] = level
        logging.getLogger(self._full_name(component)).setLevel(getattr(logging, level))

    def get_component_log_level(self, component: str) -> str:
        """Get log level for a specific component"""
        return self.component_log_levels.get(component, 'INFO')

    def get_structured_logger(self, name: str) -> structlog.BoundLogger:
        """Get a structured logger for a specific component"""
        return structlog.get_logger(self._full_name(name))


# Global logger instance
_logger_instance: Optional[TopicGateLogger] = None


def initialize_logging(config: Dict) -> TopicGateLogger:
    """Initialize the global logging system"""
    global _logger_instance
    _logger_instance = TopicGateLogger(config)
    return _logger_instance


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance"""
    if _logger_instance is None:
        # Fallback to basic logging if not initialized
        logging.basicConfig(
            level=logging.INFO,
            format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )
        return logging.getLogger(f'topicgate.{name}')

    return _logger_instance.get_logger(name)


def get_structured_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance"""
    if _logger_instance is None:
        return structlog.get_logger(f'topicgate.{name}')

    return _logger_instance.get_structured_logger(name)


def log_relay_error(logger: logging.Logger, direction: str, error_type: str,
                    error_message: str, context: Optional[Dict[str, Any]] = None):
    """
    Log a structured relay failure with context.

    Args:
        logger: Logger instance
        direction: "source->forum" or "forum->source"
        error_type: Exception class name
        error_message: Error message
        context: Additional context such as conversation or thread ids
    """
    error_data = {
        'timestamp': datetime.utcnow().isoformat(),
        'direction': direction,
        'error_type': error_type,
        'error_message': error_message,
    }

    if context:
        error_data['context'] = context

    logger.error(json.dumps(error_data, default=str))
