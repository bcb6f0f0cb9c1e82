"""
DB Agent

Monitoring agent that lives next to a MySQL server, collects query analytics
and streams reports, log entries and command replies to a remote management
service.
"""

VERSION = "1.0.4"
