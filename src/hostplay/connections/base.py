"""
Hostplay Connection Base Class

Abstract base class for the transports used by the default module invoker.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from hostplay.engine.errors import ConnectionError
from hostplay.engine.inventory import Host


@dataclass
class RunResult:
    """Result of running a command on a target host."""

    rc: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        return self.rc == 0


class Connection(ABC):
    """
    Abstract base class for connections.

    All connection types (SSH, local) must implement this interface.
    """

    def __init__(self, host: Host):
        self.host = host

    @abstractmethod
    async def connect(self) -> None:
        """Establish the connection."""

    @abstractmethod
    async def close(self) -> None:
        """Close the connection."""

    @abstractmethod
    async def run(
        self,
        command: str,
        shell: bool = True,
        timeout: Optional[float] = None,
        cwd: Optional[str] = None,
        environment: Optional[dict] = None,
    ) -> RunResult:
        """
        Run a command on the target host.

        Args:
            command: Command to execute
            shell: If True, run through a shell
            timeout: Optional timeout in seconds
            cwd: Working directory
            environment: Environment variables

        Returns:
            RunResult with rc, stdout, stderr
        """

    @abstractmethod
    async def exists(self, path: str) -> bool:
        """Check whether a path exists on the target host."""

    @property
    def connection_type(self) -> str:
        """Return the connection type name."""
        return self.__class__.__name__.replace('Connection', '').lower()


async def create_connection(host: Host) -> Connection:
    """
    Open the connection a host asks for via ``hostplay_connection`` or
    ``ansible_connection``.

    Raises:
        ConnectionError: Unknown connection type, or connecting failed
    """
    conn_type = host.connection

    if conn_type == 'local':
        from hostplay.connections.local import LocalConnection
        conn: Connection = LocalConnection(host)
    elif conn_type == 'ssh':
        from hostplay.connections.ssh_asyncssh import SSHConnection
        conn = SSHConnection(host)
    else:
        raise ConnectionError(host.name, f"Unknown connection type: {conn_type}", conn_type)

    await conn.connect()
    return conn
