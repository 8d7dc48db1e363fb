"""
Hostplay Module Base

Base class and registry for built-in modules, and the default module
invoker the scheduler dispatches through.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Type

from hostplay.connections.base import Connection, create_connection
from hostplay.engine.inventory import Host
from hostplay.engine.results import TaskResult, TaskStatus

logger = logging.getLogger(__name__)


@dataclass
class ModuleOutcome:
    """What a module invocation reports back to the engine."""

    changed: bool = False
    rc: int = 0
    stdout: str = ""
    stderr: str = ""
    msg: str = ""
    failed: bool = False
    skipped: bool = False
    unreachable: bool = False
    data: Dict[str, Any] = field(default_factory=dict)
    # before/after mapping, reported when diff mode is on
    diff: Optional[Dict[str, Any]] = None

    @property
    def status(self) -> TaskStatus:
        if self.unreachable:
            return TaskStatus.UNREACHABLE
        if self.failed:
            return TaskStatus.FAILED
        if self.skipped:
            return TaskStatus.SKIPPED
        if self.changed:
            return TaskStatus.CHANGED
        return TaskStatus.OK

    def to_task_result(self, host: str, task_name: str) -> TaskResult:
        """Convert to TaskResult."""
        return TaskResult(
            host=host,
            task_name=task_name,
            status=self.status,
            changed=self.changed,
            rc=self.rc,
            stdout=self.stdout,
            stderr=self.stderr,
            msg=self.msg,
            results={**self.data, "diff": self.diff} if self.diff is not None else dict(self.data),
        )


@dataclass
class ModuleContext:
    """Everything a module instance may look at while it runs."""

    host: Host
    connection: Optional[Connection]
    variables: Dict[str, Any]
    check_mode: bool = False
    diff_mode: bool = False

    @property
    def become(self) -> bool:
        return bool(self.variables.get('ansible_become', False))

    @property
    def become_user(self) -> str:
        return str(self.variables.get('ansible_become_user', 'root'))


class ModuleInvoker(Protocol):
    """Transport plus action: runs one module on one host."""

    async def invoke(
        self,
        host: Host,
        module_name: str,
        args: Dict[str, Any],
        effective_vars: Dict[str, Any],
        check_mode: bool = False,
        diff_mode: bool = False,
    ) -> ModuleOutcome:
        ...

    async def close(self) -> None:
        ...


class Module(ABC):
    """
    Base class for all modules.

    Modules implement task execution logic for specific operations.
    """

    # Module name (used for registration)
    name: str = ""

    # Required arguments
    required_args: List[str] = []

    # Optional arguments with defaults
    optional_args: Dict[str, Any] = {}

    # Whether the module talks to the target host at all
    needs_connection: bool = True

    def __init__(self, args: Dict[str, Any], context: ModuleContext):
        self.args = args
        self.context = context
        self.connection = context.connection

    def validate_args(self) -> Optional[str]:
        """
        Validate module arguments.

        Returns:
            Error message if validation fails, None otherwise
        """
        for required in self.required_args:
            if required not in self.args:
                return f"Missing required argument: {required}"
        return None

    def get_arg(self, name: str, default: Any = None) -> Any:
        """Get an argument value with optional default."""
        if name in self.args:
            return self.args[name]
        if name in self.optional_args:
            return self.optional_args[name]
        return default

    def wrap_become(self, cmd: str) -> str:
        """Wrap command with sudo if become is enabled."""
        if not self.context.become:
            return cmd
        return f"sudo -u {self.context.become_user} {cmd}"

    @abstractmethod
    async def run(self) -> ModuleOutcome:
        """
        Execute the module.

        Returns:
            ModuleOutcome with execution outcome
        """


# Module registry
_modules: Dict[str, Type[Module]] = {}
_modules_imported = False


def register_module(cls: Type[Module]) -> Type[Module]:
    """Decorator to register a module class."""
    _modules[cls.name] = cls
    return cls


def get_module(name: str) -> Optional[Type[Module]]:
    """Get a module class by name."""
    _ensure_modules_imported()
    return _modules.get(name)


def list_modules() -> List[str]:
    """List all registered module names."""
    _ensure_modules_imported()
    return sorted(_modules)


def _ensure_modules_imported() -> None:
    """Ensure all modules have been imported."""
    global _modules_imported
    if not _modules_imported:
        _import_builtin_modules()
        _modules_imported = True


def _import_builtin_modules() -> None:
    """Import all built-in modules to register them."""
    # These imports trigger the @register_module decorators
    from hostplay.modules import builtin_assert  # noqa: F401
    from hostplay.modules import builtin_command  # noqa: F401
    from hostplay.modules import builtin_debug  # noqa: F401
    from hostplay.modules import builtin_fail  # noqa: F401
    from hostplay.modules import builtin_ping  # noqa: F401
    from hostplay.modules import builtin_set_fact  # noqa: F401
    from hostplay.modules import builtin_setup  # noqa: F401


ConnectionFactory = Callable[[Host], Awaitable[Connection]]


class RegistryInvoker:
    """
    Default ModuleInvoker: runs registered built-in modules over a cached
    per-host connection.

    Connection variables (``ansible_host``, ``ansible_user``, ...) are read
    from the task's effective variables, so they may come from any scope.
    """

    def __init__(self, connection_factory: Optional[ConnectionFactory] = None):
        self.connection_factory = connection_factory or create_connection
        self._connections: Dict[str, Connection] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    async def invoke(
        self,
        host: Host,
        module_name: str,
        args: Dict[str, Any],
        effective_vars: Dict[str, Any],
        check_mode: bool = False,
        diff_mode: bool = False,
    ) -> ModuleOutcome:
        """
        Run ``module_name`` on ``host``.

        Raises:
            ConnectionError: If the host cannot be reached
        """
        module_class = get_module(module_name)
        if module_class is None:
            return ModuleOutcome(failed=True, msg=f"Unknown module: {module_name}")

        connection = None
        if module_class.needs_connection:
            connection = await self._connection(host, effective_vars)

        module = module_class(args, ModuleContext(host, connection, effective_vars, check_mode, diff_mode))
        error = module.validate_args()
        if error:
            return ModuleOutcome(failed=True, msg=error)
        return await module.run()

    async def close(self) -> None:
        """Close every cached connection."""
        connections, self._connections = self._connections, {}
        for name, connection in connections.items():
            try:
                await connection.close()
            except OSError as e:
                logger.warning("Error closing connection to %s: %s", name, e)

    async def _connection(self, host: Host, effective_vars: Dict[str, Any]) -> Connection:
        lock = self._locks.setdefault(host.name, asyncio.Lock())
        async with lock:
            if host.name not in self._connections:
                target = Host(host.name, {
                    k: v for k, v in effective_vars.items()
                    if k.startswith(('ansible_', 'hostplay_'))
                })
                logger.debug("Opening %s connection to %s", target.connection, host.name)
                self._connections[host.name] = await self.connection_factory(target)
            return self._connections[host.name]
