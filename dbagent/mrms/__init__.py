"""
DB Agent - MRMS Package

MySQL Restart Monitor Service: tells subscribers when MySQL restarted.
"""

from .manager import Manager
from .monitor import Monitor, MysqlInstance

__all__ = ['Manager', 'Monitor', 'MysqlInstance']
