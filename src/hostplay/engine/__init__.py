"""
Hostplay Engine Module

Core engine: variable resolution, task graph building, scheduling and
handler notification.
"""

from hostplay.engine.inventory import InventoryManager
from hostplay.engine.playbook import PlaybookParser, Play, Task, Block
from hostplay.engine.templating import TemplateEngine
from hostplay.engine.variables import VariableManager, VariableScopes, Precedence
from hostplay.engine.facts import FactCache
from hostplay.engine.taskgraph import TaskGraph, TaskGraphBuilder
from hostplay.engine.handlers import NotificationQueue
from hostplay.engine.scheduler import Scheduler
from hostplay.engine.results import TaskResult, TaskStatus, PlayResult, PlaybookResult
from hostplay.engine.errors import (
    HostplayError,
    ParseError,
    BuildError,
    IncludeError,
    ConnectionError,
)

__all__ = [
    'InventoryManager',
    'PlaybookParser',
    'Play',
    'Task',
    'Block',
    'TemplateEngine',
    'VariableManager',
    'VariableScopes',
    'Precedence',
    'FactCache',
    'TaskGraph',
    'TaskGraphBuilder',
    'NotificationQueue',
    'Scheduler',
    'TaskResult',
    'TaskStatus',
    'PlayResult',
    'PlaybookResult',
    'HostplayError',
    'ParseError',
    'BuildError',
    'IncludeError',
    'ConnectionError',
]
