"""
Hostplay SSH Connection (asyncssh)

SSH connection using asyncssh for async operations.
"""

import asyncio
import getpass
from typing import Optional

import asyncssh

from hostplay.connections.base import Connection, RunResult
from hostplay.engine.errors import ConnectionError
from hostplay.engine.inventory import Host


class SSHConnection(Connection):
    """
    SSH connection using asyncssh.

    Supports:
    - Key-based authentication
    - Password authentication
    - SSH agent
    - Custom ports
    """

    def __init__(self, host: Host):
        super().__init__(host)
        self._conn: Optional[asyncssh.SSHClientConnection] = None

    async def connect(self) -> None:
        """Establish SSH connection."""
        password = self.host.get_variable('ansible_password') or \
            self.host.get_variable('ansible_ssh_pass')
        private_key = self.host.get_variable('ansible_ssh_private_key_file')
        host_key_checking = self.host.get_variable('ansible_ssh_host_key_checking', True)

        connect_kwargs = {
            'host': self.host.address,
            'port': self.host.port or 22,
            'username': self.host.user or getpass.getuser(),
            'connect_timeout': int(self.host.get_variable('ansible_ssh_timeout', 30)),
        }
        if private_key:
            connect_kwargs['client_keys'] = [private_key]
        if password:
            connect_kwargs['password'] = password
        if not host_key_checking or str(host_key_checking).lower() in ('false', 'no'):
            connect_kwargs['known_hosts'] = None

        try:
            self._conn = await asyncssh.connect(**connect_kwargs)
        except (OSError, asyncssh.Error) as e:
            raise ConnectionError(host=self.host.name, message=str(e), connection_type='ssh') from e

    async def close(self) -> None:
        """Close SSH connection."""
        if self._conn:
            self._conn.close()
            await self._conn.wait_closed()
            self._conn = None

    async def run(
        self,
        command: str,
        shell: bool = True,
        timeout: Optional[float] = None,
        cwd: Optional[str] = None,
        environment: Optional[dict] = None,
    ) -> RunResult:
        """
        Run a command over SSH.

        Args:
            command: Command to execute
            shell: If True, wrap in shell execution
            timeout: Optional timeout in seconds
            cwd: Working directory (prepends cd command)
            environment: Environment variables

        Returns:
            RunResult with rc, stdout, stderr
        """
        if not self._conn:
            raise ConnectionError(self.host.name, "Not connected", 'ssh')

        full_command = command
        if cwd:
            full_command = f"cd {_shell_quote(cwd)} && {command}"
        if shell:
            full_command = f"/bin/sh -c {_shell_quote(full_command)}"
        if environment:
            env_prefix = " ".join(f"{k}={_shell_quote(str(v))}" for k, v in environment.items())
            full_command = f"env {env_prefix} {full_command}"

        try:
            result = await asyncio.wait_for(self._conn.run(full_command, check=False), timeout=timeout)
        except asyncio.TimeoutError:
            return RunResult(rc=124, stdout="", stderr="Command timed out")
        except (OSError, asyncssh.Error) as e:
            raise ConnectionError(self.host.name, str(e), 'ssh') from e

        return RunResult(
            rc=result.exit_status or 0,
            stdout=str(result.stdout or ""),
            stderr=str(result.stderr or ""),
        )

    async def exists(self, path: str) -> bool:
        result = await self.run(f"test -e {_shell_quote(path)}", shell=True)
        return result.rc == 0


def _shell_quote(s: str) -> str:
    """Quote a string for shell use."""
    return "'" + s.replace("'", "'\"'\"'") + "'"
