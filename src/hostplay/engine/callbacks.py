"""
Hostplay Output Callbacks

Run events (play start, task start, per-host results, recap) are reported
to a callback object. ``DisplayCallback`` prints the colored terminal
output; ``CallbackBase`` is silent and is what JSON mode and tests use.
"""

import os
import sys
from typing import Dict, List, Optional, TextIO

from hostplay.engine.playbook import Play, Task
from hostplay.engine.results import HostStats, PlaybookResult, PlayResult, TaskResult, TaskStatus

COLORS = {
    'ok': '\033[32m',          # Green
    'changed': '\033[33m',     # Yellow
    'failed': '\033[31m',      # Red
    'unreachable': '\033[31m',
    'skipped': '\033[36m',     # Cyan
    'rescued': '\033[35m',
    'ignored': '\033[35m',
}
RESET = '\033[0m'


def supports_color(stream: TextIO) -> bool:
    """Whether ANSI colors should be written to ``stream``."""
    if os.environ.get('NO_COLOR'):
        return False
    if os.environ.get('FORCE_COLOR'):
        return True
    try:
        if not stream.isatty():
            return False
    except (AttributeError, ValueError):
        return False
    return os.environ.get('TERM', '') != 'dumb'


class CallbackBase:
    """No-op callback; subclasses override the events they care about."""

    def playbook_start(self, path: str) -> None:
        pass

    def play_start(self, play: Play, hosts: List[str]) -> None:
        pass

    def batch_start(self, hosts: List[str], number: int, total: int) -> None:
        pass

    def task_start(self, task: Task, handler: bool = False) -> None:
        pass

    def task_result(self, result: TaskResult) -> None:
        pass

    def task_retry(self, result: TaskResult, remaining: int) -> None:
        pass

    def include_loaded(self, host: str, target: str) -> None:
        pass

    def warning(self, msg: str) -> None:
        pass

    def play_end(self, result: PlayResult) -> None:
        pass

    def playbook_end(self, result: PlaybookResult) -> None:
        pass


class DisplayCallback(CallbackBase):
    """Human-readable terminal output."""

    def __init__(self, verbosity: int = 0, stream: Optional[TextIO] = None, color: Optional[bool] = None):
        self.verbosity = verbosity
        self.stream = stream or sys.stdout
        self.color = supports_color(self.stream) if color is None else color
        self._last_banner: Optional[int] = None

    def _print(self, msg: str) -> None:
        print(msg, file=self.stream)

    def _paint(self, status: str, text: str) -> str:
        if not self.color:
            return text
        return f"{COLORS.get(status, '')}{text}{RESET}"

    def playbook_start(self, path: str) -> None:
        self._print(f"\nPLAYBOOK: {path}")

    def play_start(self, play: Play, hosts: List[str]) -> None:
        self._last_banner = None
        self._print(f"\nPLAY [{play.name}] " + "*" * 50)
        if not hosts:
            self.warning(f"No hosts matched for play: {play.hosts}")

    def batch_start(self, hosts: List[str], number: int, total: int) -> None:
        if total > 1:
            self._print(f"\nBATCH {number}/{total}: {', '.join(hosts)}")

    def task_start(self, task: Task, handler: bool = False) -> None:
        # Consecutive hosts on the same task share one banner
        if self._last_banner == id(task):
            return
        self._last_banner = id(task)
        label = "RUNNING HANDLER" if handler else "TASK"
        self._print(f"\n{label} [{task.name}] " + "-" * 50)

    def task_result(self, result: TaskResult) -> None:
        status = 'ignored' if result.ignored else result.status.value
        line = self._paint(result.status.value, f"{result.status.value}: [{result.host}]")
        if result.loop_results:
            for item in result.loop_results:
                self._print(self._paint(
                    item.status.value,
                    f"{item.status.value}: [{item.host}] => (item={item.results.get('item')})",
                ))
        if result.msg:
            line += f" => {result.msg}"
        self._print(line)
        if status == 'ignored':
            self._print(self._paint('ignored', "...ignoring"))
        diff = result.results.get("diff")
        if diff:
            self._print(f"  --- before: {diff.get('before')}")
            self._print(f"  +++ after: {diff.get('after')}")
        if self.verbosity >= 2 and result.stdout:
            self._print(f"  stdout: {result.stdout[:200]}")
        if self.verbosity >= 1 and result.stderr:
            self._print(f"  stderr: {result.stderr[:200]}")

    def task_retry(self, result: TaskResult, remaining: int) -> None:
        self._print(f"FAILED - RETRYING: [{result.host}]: {result.task_name} ({remaining} retries left).")

    def include_loaded(self, host: str, target: str) -> None:
        self._print(f"included: {target} for {host}")

    def warning(self, msg: str) -> None:
        print(self._paint('changed', f"[WARNING]: {msg}"), file=sys.stderr)

    def play_end(self, result: PlayResult) -> None:
        if result.aborted:
            self._print("\nNO MORE HOSTS LEFT " + "*" * 50)

    def playbook_end(self, result: PlaybookResult) -> None:
        self.print_recap(result.get_final_stats())

    def print_recap(self, host_stats: Dict[str, HostStats]) -> None:
        """Print final recap."""
        self._print("\nPLAY RECAP " + "*" * 60)

        for host, stats in sorted(host_stats.items()):
            parts = []
            for name in ('ok', 'changed', 'unreachable', 'failed', 'skipped', 'rescued', 'ignored'):
                count = getattr(stats, name)
                text = f"{name}={count}"
                parts.append(self._paint(name, text) if count else text)
            self._print(f"{host:40} : {'  '.join(parts)}")


def summary_line(result: TaskResult) -> str:
    """One-line plain text summary of a result, for logs."""
    if result.status == TaskStatus.FAILED and result.ignored:
        return f"{result.host}: {result.task_name} failed (ignored)"
    return f"{result.host}: {result.task_name} {result.status.value}"
