"""
Topic Gateway.

Tracks which clients are reachable through which live connections, which
topics each client belongs to, and fans messages out to topic members.
"""

__version__ = "1.0.0"
