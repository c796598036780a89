"""
Core module for TopicGate

Contains configuration management, logging setup and the SQLite
database layer shared by the bridge services.
"""

from .config import ConfigurationManager, ConfigurationError
from .database import DatabaseManager, DatabaseError, initialize_database, get_database

__all__ = [
    'ConfigurationManager',
    'ConfigurationError',
    'DatabaseManager',
    'DatabaseError',
    'initialize_database',
    'get_database'
]
