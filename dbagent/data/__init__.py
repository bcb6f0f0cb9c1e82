"""
DB Agent - Data Package

Durable spool of reports and the sender that ships them to the API.
"""

from .manager import Config, Manager
from .sender import Sender
from .serializer import JsonGzipSerializer, JsonSerializer, make_serializer
from .spooler import Spooler
from .stats import SenderStats, SentInfo, SentReport, format_sent_report

__all__ = [
    'Config', 'JsonGzipSerializer', 'JsonSerializer', 'Manager', 'Sender', 'SenderStats',
    'SentInfo', 'SentReport', 'Spooler', 'format_sent_report', 'make_serializer',
]
