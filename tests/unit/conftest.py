"""
Shared helpers for engine tests: a scripted module invoker, a recording
sleep, and a one-call playbook runner over an in-memory inventory.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest

from hostplay.engine.inventory import InventoryManager
from hostplay.engine.playbook import PlaybookParser
from hostplay.engine.results import PlaybookResult, TaskStatus
from hostplay.engine.scheduler import Scheduler
from hostplay.engine.taskgraph import TaskGraphBuilder
from hostplay.engine.variables import VariableManager, VariableScopes
from hostplay.modules.base import ModuleOutcome


@dataclass
class Call:
    host: str
    module: str
    args: Dict[str, Any]
    variables: Dict[str, Any]
    check_mode: bool
    diff_mode: bool = False


def default_outcome(module: str, args: Dict[str, Any]) -> ModuleOutcome:
    """What the fake invoker answers when no responder overrides it."""
    if module == 'set_fact':
        return ModuleOutcome(data={'ansible_facts': dict(args)})
    if module == 'setup':
        return ModuleOutcome(data={'ansible_facts': {'ansible_system': 'Linux'}})
    if module == 'fail':
        return ModuleOutcome(failed=True, msg=str(args.get('msg', 'Failed as requested')))
    if module in ('command', 'shell'):
        return ModuleOutcome(changed=True, stdout=str(args.get('_raw_params', '')))
    if module == 'debug':
        return ModuleOutcome(msg=str(args.get('msg', '')))
    return ModuleOutcome()


class FakeInvoker:
    """
    ModuleInvoker double.

    ``responder(host, module, args)`` may return a ModuleOutcome, raise, or
    return None to fall back to ``default_outcome``. ``delay`` (seconds, or
    a callable of (host, label)) is awaited inside the invocation.
    """

    def __init__(self, responder: Optional[Callable] = None, delay: Any = 0):
        self.responder = responder
        self.delay = delay
        self.calls: List[Call] = []
        self.log: List[tuple] = []
        self.closed = False

    @staticmethod
    def label(module: str, args: Dict[str, Any]) -> str:
        if '_raw_params' in args:
            return str(args['_raw_params'])
        if 'msg' in args:
            return str(args['msg'])
        return module

    async def invoke(self, host, module_name, args, effective_vars, check_mode=False, diff_mode=False):
        label = self.label(module_name, args)
        self.calls.append(Call(host.name, module_name, args, effective_vars, check_mode, diff_mode))
        self.log.append(('start', host.name, label))
        delay = self.delay(host.name, label) if callable(self.delay) else self.delay
        if delay:
            await asyncio.sleep(delay)
        outcome = self.responder(host.name, module_name, args) if self.responder else None
        self.log.append(('end', host.name, label))
        return outcome or default_outcome(module_name, args)

    async def close(self):
        self.closed = True

    def labels(self, host: Optional[str] = None) -> List[str]:
        """Labels of invocations, in call order, optionally for one host."""
        return [self.label(c.module, c.args) for c in self.calls if host is None or c.host == host]


def make_inventory(hosts=('web1',), groups: Optional[Dict[str, List[str]]] = None) -> InventoryManager:
    inventory = InventoryManager()
    for name in hosts:
        inventory.add_host(name)
    for group, members in (groups or {}).items():
        for name in members:
            inventory.add_host(name, group)
    inventory.finalize()
    return inventory


@dataclass
class Run:
    result: PlaybookResult
    scheduler: Scheduler
    invoker: FakeInvoker
    sleeps: List[float] = field(default_factory=list)

    def statuses(self, host: str) -> List[tuple]:
        """(task name, status) pairs recorded for a host across plays."""
        return [
            (r.task_name, r.status)
            for play in self.result.play_results
            for r in play.task_results
            if r.host == host
        ]

    def status_of(self, host: str, task_name: str) -> TaskStatus:
        matches = [s for name, s in self.statuses(host) if name == task_name]
        assert matches, f"{task_name} did not run on {host}"
        return matches[-1]


async def run_playbook(
    tmp_path: Path,
    text: str,
    hosts=('web1',),
    groups: Optional[Dict[str, List[str]]] = None,
    invoker: Optional[FakeInvoker] = None,
    run_tags=None,
    skip_tags=None,
    extra_vars: Optional[Dict[str, Any]] = None,
    inventory: Optional[InventoryManager] = None,
    **options: Any,
) -> Run:
    """Parse, build and run a playbook written to ``tmp_path/site.yml``."""
    path = tmp_path / 'site.yml'
    path.write_text(text)
    inventory = inventory or make_inventory(hosts, groups)
    parser = PlaybookParser(path)
    builder = TaskGraphBuilder(parser, static_vars=extra_vars)
    graphs = [builder.build(play, run_tags, skip_tags) for play in parser.parse()]

    invoker = invoker or FakeInvoker()
    sleeps: List[float] = []

    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    scheduler = Scheduler(
        variables=VariableManager(VariableScopes.load(inventory, tmp_path, extra_vars)),
        invoker=invoker,
        sleep=fake_sleep,
        **options,
    )
    result = await scheduler.run_playbook(graphs, lambda play: inventory.get_hosts(play.hosts), str(path))
    return Run(result, scheduler, invoker, sleeps)


@pytest.fixture
def fake_invoker() -> FakeInvoker:
    return FakeInvoker()


@pytest.fixture(autouse=True)
def reset_hostplay_logger():
    """CLI tests install handlers on the hostplay logger; drop them afterwards."""
    yield
    logger = logging.getLogger('hostplay')
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)
