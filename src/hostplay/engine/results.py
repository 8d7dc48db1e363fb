"""
Hostplay Result Classes

Data structures for task, play, and playbook execution results.
"""

from dataclasses import asdict, dataclass, field, fields, replace
from typing import Any, Dict, List, Optional, Tuple
from enum import Enum
import json

from hostplay.engine.errors import ExitCode


class TaskStatus(Enum):
    """Status of a task execution."""
    OK = "ok"
    CHANGED = "changed"
    FAILED = "failed"
    SKIPPED = "skipped"
    UNREACHABLE = "unreachable"


@dataclass(frozen=True)
class TaskResult:
    """Immutable result of executing a single task on a single host."""

    host: str
    task_name: str
    status: TaskStatus
    changed: bool = False
    rc: int = 0
    stdout: str = ""
    stderr: str = ""
    msg: str = ""
    # Module return data
    results: Dict[str, Any] = field(default_factory=dict)
    # For loop results
    loop_results: Optional[Tuple['TaskResult', ...]] = None
    elapsed: float = 0.0
    # Failed, but ignore_errors kept the host active
    ignored: bool = False
    attempts: int = 1

    def evolve(self, **changes: Any) -> 'TaskResult':
        """Return a copy with the given fields replaced."""
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON output."""
        result = {
            "host": self.host,
            "task": self.task_name,
            "status": self.status.value,
            "changed": self.changed,
            "rc": self.rc,
            "elapsed": round(self.elapsed, 3),
        }
        if self.stdout:
            result["stdout"] = self.stdout
        if self.stderr:
            result["stderr"] = self.stderr
        if self.msg:
            result["msg"] = self.msg
        if self.results:
            result["results"] = self.results
        if self.ignored:
            result["ignored"] = True
        if self.attempts > 1:
            result["attempts"] = self.attempts
        if self.loop_results:
            result["loop_results"] = [r.to_dict() for r in self.loop_results]
        return result

    def registered_value(self) -> Dict[str, Any]:
        """Mapping stored under a task's ``register`` name."""
        value = {
            'changed': self.changed,
            'failed': self.status == TaskStatus.FAILED,
            'skipped': self.status == TaskStatus.SKIPPED,
            'unreachable': self.status == TaskStatus.UNREACHABLE,
            'rc': self.rc,
            'stdout': self.stdout,
            'stderr': self.stderr,
            'stdout_lines': self.stdout.splitlines() if self.stdout else [],
            'stderr_lines': self.stderr.splitlines() if self.stderr else [],
            'msg': self.msg,
            'attempts': self.attempts,
            **self.results,
        }
        if self.loop_results is not None:
            value['results'] = [r.registered_value() for r in self.loop_results]
        return value

    @property
    def failed(self) -> bool:
        """Check if the task failed."""
        return self.status in (TaskStatus.FAILED, TaskStatus.UNREACHABLE)

    @property
    def ok(self) -> bool:
        """Check if the task succeeded (ok or changed)."""
        return self.status in (TaskStatus.OK, TaskStatus.CHANGED)


@dataclass
class HostStats:
    """Per-host counters, one per status plus rescued and ignored."""

    host: str
    ok: int = 0
    changed: int = 0
    failed: int = 0
    skipped: int = 0
    unreachable: int = 0
    rescued: int = 0
    ignored: int = 0

    def record(self, result: TaskResult) -> None:
        counter = 'ignored' if result.ignored else result.status.value
        setattr(self, counter, getattr(self, counter) + 1)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def merge(self, other: 'HostStats') -> None:
        """Add another host's counters to this one."""
        for counter in fields(self)[1:]:
            name = counter.name
            setattr(self, name, getattr(self, name) + getattr(other, name))


@dataclass
class PlayResult:
    """Result of executing a single play."""

    play_name: str
    hosts: List[str]
    task_results: List[TaskResult] = field(default_factory=list)
    host_stats: Dict[str, HostStats] = field(default_factory=dict)
    # Hosts that ended the play failed or unreachable
    failed_hosts: List[str] = field(default_factory=list)
    unreachable_hosts: List[str] = field(default_factory=list)
    # Set when max_fail_percentage or any_errors_fatal stopped the play
    aborted: bool = False

    def __post_init__(self) -> None:
        for host in self.hosts:
            self.host_stats.setdefault(host, HostStats(host))

    def add_result(self, result: TaskResult) -> None:
        """Add a task result."""
        self.task_results.append(result)

        if result.host not in self.host_stats:
            self.host_stats[result.host] = HostStats(result.host)
        self.host_stats[result.host].record(result)

    def record_rescue(self, host: str) -> None:
        """Count a block rescue for a host; the rescued failure no longer counts as failed."""
        stats = self.host_stats.setdefault(host, HostStats(host))
        stats.rescued += 1
        stats.failed = max(0, stats.failed - 1)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON output."""
        return {
            "play": self.play_name,
            "hosts": self.hosts,
            "tasks": [r.to_dict() for r in self.task_results],
            "stats": {h: s.to_dict() for h, s in self.host_stats.items()},
            "aborted": self.aborted,
        }

    @property
    def has_failures(self) -> bool:
        """Check if any host failed in this play."""
        return bool(self.failed_hosts or self.unreachable_hosts)

    @property
    def all_hosts_failed(self) -> bool:
        """Check if every targeted host ended failed or unreachable."""
        if not self.hosts:
            return False
        down = set(self.failed_hosts) | set(self.unreachable_hosts)
        return all(h in down for h in self.hosts)


@dataclass
class PlaybookResult:
    """Result of executing an entire playbook."""

    playbook_path: str
    play_results: List[PlayResult] = field(default_factory=list)

    def add_play_result(self, result: PlayResult) -> None:
        """Add a play result."""
        self.play_results.append(result)

    def get_final_stats(self) -> Dict[str, HostStats]:
        """Get aggregated stats for all hosts across all plays."""
        final_stats: Dict[str, HostStats] = {}

        for play_result in self.play_results:
            for host, stats in play_result.host_stats.items():
                if host not in final_stats:
                    final_stats[host] = HostStats(host)
                final_stats[host].merge(stats)

        return final_stats

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON output."""
        return {
            "playbook": self.playbook_path,
            "plays": [p.to_dict() for p in self.play_results],
            "stats": {h: s.to_dict() for h, s in self.get_final_stats().items()},
        }

    def to_json(self, indent: int = 2) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict(), indent=indent, default=str)

    @property
    def success(self) -> bool:
        """Check if the entire playbook succeeded."""
        return not any(p.has_failures for p in self.play_results)

    @property
    def exit_code(self) -> int:
        """
        Get appropriate exit code.

        Failed tasks take precedence over unreachable hosts.
        """
        if any(p.failed_hosts for p in self.play_results):
            return ExitCode.HOST_FAILED
        if any(p.unreachable_hosts for p in self.play_results):
            return ExitCode.HOST_UNREACHABLE
        return ExitCode.SUCCESS
