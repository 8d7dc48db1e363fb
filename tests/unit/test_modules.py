"""
Tests for the built-in modules and the registry invoker.
"""

from unittest.mock import AsyncMock

import pytest

from hostplay.connections.base import Connection, RunResult
from hostplay.engine.inventory import Host
from hostplay.modules.base import RegistryInvoker, get_module, list_modules
from hostplay.modules.builtin_setup import os_family, parse_os_release


class FakeConnection(Connection):
    """Connection double answering every command with ``result``."""

    def __init__(self, host: Host, result: RunResult = RunResult(0, "out\n", "")):
        super().__init__(host)
        self.run = AsyncMock(return_value=result)
        self.exists = AsyncMock(return_value=False)
        self.closed = False

    async def connect(self) -> None:
        pass

    async def close(self) -> None:
        self.closed = True

    async def run(self, command, shell=True, timeout=None, cwd=None, environment=None):
        raise NotImplementedError

    async def exists(self, path):
        raise NotImplementedError


def invoker_with(connection_result: RunResult = RunResult(0, "out\n", "")):
    opened = []

    async def factory(host: Host) -> Connection:
        connection = FakeConnection(host, connection_result)
        opened.append(connection)
        return connection

    return RegistryInvoker(factory), opened


HOST = Host("web1")


class TestRegistry:
    """Test module registration."""

    def test_builtins_registered(self):
        """The built-in modules are all registered."""
        assert {"assert", "command", "debug", "fail", "ping", "set_fact", "setup", "shell"} <= set(list_modules())

    def test_unknown(self):
        """Unknown names are not found."""
        assert get_module("no_such_module") is None


class TestRegistryInvoker:
    """Test dispatch through RegistryInvoker."""

    @pytest.mark.asyncio
    async def test_unknown_module_fails(self):
        """An unknown module is a failed outcome, not an exception."""
        invoker, _ = invoker_with()
        outcome = await invoker.invoke(HOST, "frobnicate", {}, {})
        assert outcome.failed
        assert "Unknown module" in outcome.msg

    @pytest.mark.asyncio
    async def test_connectionless_modules_open_nothing(self):
        """debug, fail, assert and set_fact never open a connection."""
        invoker, opened = invoker_with()
        await invoker.invoke(HOST, "debug", {"msg": "hi"}, {})
        await invoker.invoke(HOST, "set_fact", {"a": 1}, {})
        assert opened == []

    @pytest.mark.asyncio
    async def test_connection_cached_and_closed(self):
        """One connection per host, built from the effective connection vars."""
        invoker, opened = invoker_with()
        variables = {"ansible_host": "10.0.0.5", "ansible_user": "deploy", "unrelated": 1}

        await invoker.invoke(HOST, "command", {"_raw_params": "uptime"}, variables)
        await invoker.invoke(HOST, "command", {"_raw_params": "id"}, variables)

        assert len(opened) == 1
        assert opened[0].host.address == "10.0.0.5"
        assert opened[0].host.user == "deploy"
        assert "unrelated" not in opened[0].host.vars

        await invoker.close()
        assert opened[0].closed

    @pytest.mark.asyncio
    async def test_missing_required_arg(self):
        """Argument validation failures are failed outcomes."""
        invoker, _ = invoker_with()
        outcome = await invoker.invoke(HOST, "assert", {}, {})
        assert outcome.failed
        assert outcome.msg == "Missing required argument: that"


class TestCommandModule:
    """Test command and shell."""

    @pytest.mark.asyncio
    async def test_runs_and_reports_changed(self):
        """A successful command is changed with stripped output."""
        invoker, opened = invoker_with()
        outcome = await invoker.invoke(HOST, "command", {"_raw_params": "uptime"}, {})

        assert outcome.changed and not outcome.failed
        assert outcome.stdout == "out"
        opened[0].run.assert_awaited_once_with("uptime", shell=False, cwd=None, environment=None)

    @pytest.mark.asyncio
    async def test_nonzero_rc_fails(self):
        """A non-zero exit code fails the task."""
        invoker, _ = invoker_with(RunResult(2, "", "bad\n"))
        outcome = await invoker.invoke(HOST, "shell", {"cmd": "false"}, {})
        assert outcome.failed
        assert outcome.rc == 2
        assert outcome.stderr == "bad"

    @pytest.mark.asyncio
    async def test_become_and_environment(self):
        """become wraps the command; the task environment is passed through."""
        invoker, opened = invoker_with()
        variables = {"ansible_become": True, "hostplay_environment": {"LANG": "C"}}

        await invoker.invoke(HOST, "shell", {"_raw_params": "whoami"}, variables)

        opened[0].run.assert_awaited_once_with(
            "sudo -u root whoami", shell=True, cwd=None, environment={"LANG": "C"},
        )

    @pytest.mark.asyncio
    async def test_check_mode_does_not_run(self):
        """In check mode the command is reported, not executed."""
        invoker, opened = invoker_with()
        outcome = await invoker.invoke(HOST, "command", {"_raw_params": "rm -rf /tmp/x"}, {}, check_mode=True)

        assert outcome.skipped
        opened[0].run.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_check_and_diff_mode_describe_the_command(self):
        """With diff mode on, a simulated command reports what it would run."""
        invoker, _ = invoker_with()
        quiet = await invoker.invoke(HOST, "command", {"_raw_params": "reboot"}, {}, check_mode=True)
        shown = await invoker.invoke(HOST, "command", {"_raw_params": "reboot"}, {}, check_mode=True, diff_mode=True)

        assert quiet.diff is None
        assert shown.diff == {"before": "", "after": "Would run: reboot"}
        assert shown.to_task_result("web1", "reboot").results["diff"] == shown.diff

    @pytest.mark.asyncio
    async def test_creates(self):
        """creates= skips when the path exists."""
        invoker, opened = invoker_with()

        async def factory(host):
            connection = FakeConnection(host)
            connection.exists = AsyncMock(return_value=True)
            opened.append(connection)
            return connection

        invoker.connection_factory = factory
        outcome = await invoker.invoke(HOST, "command", {"_raw_params": "make", "creates": "/opt/app"}, {})

        assert not outcome.changed
        assert "exists" in outcome.msg
        opened[0].run.assert_not_awaited()


class TestLocalModules:
    """Test modules that never touch the host."""

    @pytest.mark.asyncio
    async def test_debug_var(self):
        """debug var= evaluates an expression."""
        invoker, _ = invoker_with()
        outcome = await invoker.invoke(HOST, "debug", {"var": "conf.port"}, {"conf": {"port": 80}})
        assert outcome.msg == "conf.port: 80"
        assert outcome.data == {"conf.port": 80}

    @pytest.mark.asyncio
    async def test_debug_undefined_var(self):
        """An undefined var is reported, not raised."""
        invoker, _ = invoker_with()
        outcome = await invoker.invoke(HOST, "debug", {"var": "nope"}, {})
        assert outcome.msg == "nope: VARIABLE IS NOT DEFINED!"

    @pytest.mark.asyncio
    async def test_fail(self):
        """fail always fails with its message."""
        invoker, _ = invoker_with()
        outcome = await invoker.invoke(HOST, "fail", {"msg": "stop"}, {})
        assert outcome.failed and outcome.msg == "stop"

    @pytest.mark.asyncio
    async def test_assert(self):
        """assert checks each condition and reports fail_msg."""
        invoker, _ = invoker_with()
        passed = await invoker.invoke(HOST, "assert", {"that": ["x > 1", "x < 5"]}, {"x": 3})
        failed = await invoker.invoke(HOST, "assert", {"that": "x > 10", "fail_msg": "too small"}, {"x": 3})

        assert not passed.failed
        assert failed.failed and failed.msg == "too small"
        assert failed.data["assertion"] == "x > 10"

    @pytest.mark.asyncio
    async def test_set_fact(self):
        """set_fact reports its values under ansible_facts and is never changed."""
        invoker, _ = invoker_with()
        outcome = await invoker.invoke(HOST, "set_fact", {"a": 1, "cacheable": True}, {})
        assert outcome.data == {"ansible_facts": {"a": 1}}
        assert not outcome.changed

    @pytest.mark.asyncio
    async def test_set_fact_diff(self):
        """In diff mode set_fact reports the previous and new values."""
        invoker, _ = invoker_with()
        outcome = await invoker.invoke(HOST, "set_fact", {"a": 2, "b": 3}, {"a": 1}, diff_mode=True)
        assert outcome.diff == {"before": {"a": 1}, "after": {"a": 2, "b": 3}}

    @pytest.mark.asyncio
    async def test_set_fact_requires_values(self):
        """set_fact with no variables fails."""
        invoker, _ = invoker_with()
        outcome = await invoker.invoke(HOST, "set_fact", {}, {})
        assert outcome.failed


class TestSetupModule:
    """Test fact gathering helpers."""

    def test_parse_os_release(self):
        """ID, VERSION_ID and PRETTY_NAME are extracted."""
        facts = parse_os_release('ID=ubuntu\nVERSION_ID="22.04"\nPRETTY_NAME="Ubuntu 22.04 LTS"\n')
        assert facts == {
            "ansible_distribution": "Ubuntu",
            "ansible_distribution_version": "22.04",
            "ansible_distribution_pretty": "Ubuntu 22.04 LTS",
        }

    def test_os_family(self):
        """Distributions map to families, unknown ones to Linux."""
        assert os_family("Ubuntu") == "Debian"
        assert os_family("Rocky") == "RedHat"
        assert os_family("Plan9") == "Linux"

    @pytest.mark.asyncio
    async def test_setup_gathers_and_filters(self):
        """setup collects command facts and honours filter."""
        invoker, _ = invoker_with(RunResult(0, "Linux\n", ""))
        outcome = await invoker.invoke(HOST, "setup", {"filter": "ansible_sys*"}, {})
        assert outcome.data == {"ansible_facts": {"ansible_system": "Linux"}}
