"""
Hostplay Connections Module

Transports for the default module invoker: local subprocess and SSH.
"""

from hostplay.connections.base import Connection, RunResult, create_connection
from hostplay.connections.local import LocalConnection

__all__ = [
    'Connection',
    'RunResult',
    'LocalConnection',
    'create_connection',
]
