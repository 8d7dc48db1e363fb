"""
Tests for handlers and notify support.
"""

from pathlib import Path

import pytest

from conftest import FakeInvoker, run_playbook

from hostplay.engine.handlers import NotificationQueue
from hostplay.engine.playbook import Task
from hostplay.engine.results import TaskResult, TaskStatus
from hostplay.modules.base import ModuleOutcome


def handler(name, listen=()):
    return Task(name=name, module="command", args={"_raw_params": name}, listen=list(listen))


class TestNotificationQueue:
    """Test queueing rules."""

    def test_notify_twice_queues_once(self):
        """A second notification before a flush is a no-op."""
        restart = handler("restart")
        queue = NotificationQueue([restart])

        assert queue.notify("web1", "restart") == [restart]
        assert queue.notify("web1", "restart") == []
        assert queue.pending("web1") == [restart]

    def test_queues_are_per_host(self):
        """Notifying for one host does not queue for another."""
        queue = NotificationQueue([handler("restart")])
        queue.notify("web1", "restart")
        assert queue.has_pending("web1")
        assert not queue.has_pending("web2")

    def test_listen_topic(self):
        """A listen topic queues every subscribed handler in definition order."""
        a = handler("restart nginx", listen=["restart web"])
        b = handler("restart php", listen=["restart web"])
        queue = NotificationQueue([a, b])

        assert queue.notify("web1", "restart web") == [a, b]

    def test_unknown_handler(self):
        """Unknown names are ignored."""
        queue = NotificationQueue([handler("restart")])
        assert queue.notify("web1", "nope") == []
        assert not queue.has_pending("web1")

    def test_later_definition_replaces(self):
        """Registering a handler name again replaces the earlier one."""
        first = handler("restart")
        second = Task(name="restart", module="debug")
        queue = NotificationQueue([first, second])
        assert queue.handlers == [second]

    @pytest.mark.asyncio
    async def test_flush_runs_in_notification_order(self):
        """Handlers run in first-notified order and the queue is emptied."""
        a, b = handler("a"), handler("b")
        queue = NotificationQueue([a, b])
        queue.notify("web1", "b")
        queue.notify("web1", "a")
        ran = []

        async def execute(task):
            ran.append(task.name)
            return TaskResult("web1", task.name, TaskStatus.OK)

        assert await queue.flush("web1", execute) == [b, a]
        assert ran == ["b", "a"]
        assert not queue.has_pending("web1")

    @pytest.mark.asyncio
    async def test_notification_during_flush_joins_it(self):
        """A handler notified by a running handler runs in the same flush."""
        a, b = handler("a"), handler("b")
        queue = NotificationQueue([a, b])
        queue.notify("web1", "a")

        async def execute(task):
            if task.name == "a":
                queue.notify("web1", "b")
            return TaskResult("web1", task.name, TaskStatus.CHANGED)

        assert [h.name for h in await queue.flush("web1", execute)] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_failure_stops_flush(self):
        """A failing handler discards the rest of the queue."""
        a, b = handler("a"), handler("b")
        queue = NotificationQueue([a, b])
        queue.notify("web1", "a")
        queue.notify("web1", "b")

        async def execute(task):
            return TaskResult("web1", task.name, TaskStatus.FAILED)

        assert await queue.flush("web1", execute) == [a]
        assert not queue.has_pending("web1")


HANDLER_PLAY = """
- hosts: all
  tasks:
    - name: change config
      command: write config
      notify: restart
    - name: change again
      command: write more
      notify: restart
    - name: flush now
      meta: flush_handlers
    - name: after flush
      command: after
  handlers:
    - name: restart
      command: restart service
"""


class TestHandlerExecution:
    """Test handlers inside a running play."""

    @pytest.mark.asyncio
    async def test_handler_runs_once_at_flush(self, tmp_path: Path):
        """Two notifications run the handler once, at the explicit flush."""
        run = await run_playbook(tmp_path, HANDLER_PLAY)

        assert run.invoker.labels("web1") == [
            "write config", "write more", "restart service", "after",
        ]

    @pytest.mark.asyncio
    async def test_unchanged_task_does_not_notify(self, tmp_path: Path):
        """Only changed results notify."""
        def responder(host, module, args):
            if args.get("_raw_params") == "write config":
                return ModuleOutcome(changed=False)
            return None

        run = await run_playbook(tmp_path, """
- hosts: all
  tasks:
    - name: change config
      command: write config
      notify: restart
  handlers:
    - name: restart
      command: restart service
""", invoker=FakeInvoker(responder))

        assert run.invoker.labels("web1") == ["write config"]

    @pytest.mark.asyncio
    async def test_only_notified_hosts_run_handler(self, tmp_path: Path):
        """Handlers run per host, only where notified."""
        def responder(host, module, args):
            if host == "web2" and args.get("_raw_params") == "write config":
                return ModuleOutcome(changed=False)
            return None

        run = await run_playbook(tmp_path, """
- hosts: all
  tasks:
    - name: change config
      command: write config
      notify: restart
  handlers:
    - name: restart
      command: restart service
""", hosts=("web1", "web2"), invoker=FakeInvoker(responder))

        assert "restart service" in run.invoker.labels("web1")
        assert "restart service" not in run.invoker.labels("web2")

    @pytest.mark.asyncio
    async def test_failed_host_skips_handlers_unless_forced(self, tmp_path: Path):
        """A host that fails after notifying runs handlers only with force_handlers."""
        playbook = """
- hosts: all
  force_handlers: {force}
  tasks:
    - name: change config
      command: write config
      notify: restart
    - name: boom
      fail: msg=broken
  handlers:
    - name: restart
      command: restart service
"""
        plain = await run_playbook(tmp_path, playbook.format(force="false"))
        assert "restart service" not in plain.invoker.labels("web1")

        forced = await run_playbook(tmp_path, playbook.format(force="true"))
        assert "restart service" in forced.invoker.labels("web1")
        assert forced.result.exit_code == 2

    @pytest.mark.asyncio
    async def test_failing_handler_fails_host(self, tmp_path: Path):
        """A failing handler marks its host failed."""
        def responder(host, module, args):
            if args.get("_raw_params") == "restart service":
                return ModuleOutcome(failed=True, msg="no service")
            return None

        run = await run_playbook(tmp_path, HANDLER_PLAY, invoker=FakeInvoker(responder))

        assert run.result.play_results[0].failed_hosts == ["web1"]
        assert "after" not in run.invoker.labels("web1")
        assert run.result.exit_code == 2
