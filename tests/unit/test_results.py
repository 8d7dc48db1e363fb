"""
Tests for result objects, stats and exit codes.
"""

import json

from hostplay.engine.errors import ExitCode
from hostplay.engine.results import PlaybookResult, PlayResult, TaskResult, TaskStatus


def result(host, status, **kwargs):
    return TaskResult(host=host, task_name="t", status=status, **kwargs)


class TestTaskResult:
    """Test TaskResult."""

    def test_registered_value(self):
        """The registered mapping carries status flags, output and module data."""
        value = result("web1", TaskStatus.CHANGED, changed=True, stdout="a\nb",
                       results={"cmd": "ls"}).registered_value()
        assert value["changed"] is True
        assert value["failed"] is False
        assert value["stdout_lines"] == ["a", "b"]
        assert value["cmd"] == "ls"

    def test_loop_results_registered(self):
        """Loop items appear under results."""
        items = (result("web1", TaskStatus.OK, results={"item": 1}),)
        value = result("web1", TaskStatus.OK, loop_results=items).registered_value()
        assert value["results"][0]["item"] == 1

    def test_evolve_is_a_copy(self):
        """evolve() leaves the original untouched."""
        original = result("web1", TaskStatus.FAILED)
        evolved = original.evolve(ignored=True)
        assert evolved.ignored and not original.ignored

    def test_failed_includes_unreachable(self):
        """Unreachable counts as failed, not ok."""
        assert result("web1", TaskStatus.UNREACHABLE).failed
        assert result("web1", TaskStatus.CHANGED).ok


class TestPlayResult:
    """Test stats bookkeeping."""

    def test_stats_counting(self):
        """Each status lands in its own counter; ignored failures count as ignored."""
        play = PlayResult("p", ["web1"])
        play.add_result(result("web1", TaskStatus.OK))
        play.add_result(result("web1", TaskStatus.CHANGED))
        play.add_result(result("web1", TaskStatus.FAILED, ignored=True))
        play.add_result(result("web1", TaskStatus.SKIPPED))

        stats = play.host_stats["web1"].to_dict()
        assert stats == {
            "host": "web1", "ok": 1, "changed": 1, "failed": 0, "skipped": 1,
            "unreachable": 0, "rescued": 0, "ignored": 1,
        }

    def test_record_rescue(self):
        """A rescued failure moves from failed to rescued."""
        play = PlayResult("p", ["web1"])
        play.add_result(result("web1", TaskStatus.FAILED))
        play.record_rescue("web1")
        stats = play.host_stats["web1"]
        assert (stats.failed, stats.rescued) == (0, 1)

    def test_all_hosts_failed(self):
        """all_hosts_failed needs every host down."""
        play = PlayResult("p", ["a", "b"])
        play.failed_hosts.append("a")
        assert not play.all_hosts_failed
        play.unreachable_hosts.append("b")
        assert play.all_hosts_failed


class TestExitCodes:
    """Test PlaybookResult exit codes."""

    def test_success(self):
        """No failures exits 0."""
        playbook = PlaybookResult("site.yml", [PlayResult("p", ["a"])])
        assert playbook.exit_code == ExitCode.SUCCESS
        assert playbook.success

    def test_failed_beats_unreachable(self):
        """Failed hosts exit 2 even when others were unreachable."""
        play = PlayResult("p", ["a", "b"], failed_hosts=["a"], unreachable_hosts=["b"])
        assert PlaybookResult("site.yml", [play]).exit_code == ExitCode.HOST_FAILED

    def test_unreachable_only(self):
        """Only unreachable hosts exits 4."""
        play = PlayResult("p", ["a"], unreachable_hosts=["a"])
        assert PlaybookResult("site.yml", [play]).exit_code == ExitCode.HOST_UNREACHABLE

    def test_json_output(self):
        """to_json includes plays and aggregated stats."""
        first = PlayResult("one", ["a"])
        first.add_result(result("a", TaskStatus.CHANGED))
        second = PlayResult("two", ["a"])
        second.add_result(result("a", TaskStatus.CHANGED))

        data = json.loads(PlaybookResult("site.yml", [first, second]).to_json())

        assert [p["play"] for p in data["plays"]] == ["one", "two"]
        assert data["stats"]["a"]["changed"] == 2
