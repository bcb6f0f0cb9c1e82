"""
DB Agent - Log Package

Log relay and its service manager.
"""

from .manager import Config, Manager
from .relay import BUFFER_SIZE, Relay

__all__ = ['BUFFER_SIZE', 'Config', 'Manager', 'Relay']
