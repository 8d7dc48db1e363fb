"""
End-to-end tests for PlaybookRunner: loading, building, running and exit codes.
"""

import json
from pathlib import Path

from conftest import FakeInvoker

from hostplay.config import RunConfig
from hostplay.engine.runner import PlaybookRunner
from hostplay.modules.base import ModuleOutcome


def write_inventory(tmp_path: Path, text: str = "[web]\nweb1\nweb2\n") -> str:
    inventory = tmp_path / "hosts.ini"
    inventory.write_text(text)
    return str(inventory)


def write_playbook(tmp_path: Path, text: str, name: str = "site.yml") -> str:
    playbook = tmp_path / name
    playbook.write_text(text)
    return str(playbook)


SIMPLE = """
- hosts: web
  tasks:
    - name: hello
      command: echo hello
"""


class TestPlaybookRunner:
    """Test the runner around the scheduler."""

    def test_success(self, tmp_path: Path, capsys):
        """A clean run exits 0 and prints JSON results."""
        invoker = FakeInvoker()
        runner = PlaybookRunner(
            write_inventory(tmp_path), [write_playbook(tmp_path, SIMPLE)],
            config=RunConfig(), json_output=True, invoker=invoker,
        )

        assert runner.run() == 0
        data = json.loads(capsys.readouterr().out)
        assert data["stats"]["web1"]["changed"] == 1
        assert invoker.closed

    def test_build_error_contacts_no_host(self, tmp_path: Path, capsys):
        """A missing static import exits 3 before any task runs."""
        invoker = FakeInvoker()
        playbook = write_playbook(tmp_path, """
- hosts: web
  tasks:
    - command: first
- hosts: web
  tasks:
    - import_tasks: missing.yml
""")
        runner = PlaybookRunner(write_inventory(tmp_path), [playbook], config=RunConfig(),
                                json_output=True, invoker=invoker)

        assert runner.run() == 3
        assert invoker.calls == []
        error = json.loads(capsys.readouterr().out)
        assert error["error_type"] == "parse_error"
        assert error["exit_code"] == 3

    def test_bad_play_settings_contact_no_host(self, tmp_path: Path, capsys):
        """An unknown strategy or a non-numeric retries exits 3 before earlier plays run."""
        for bad in ("  strategy: sideways\n  tasks: []\n",
                    "  tasks:\n    - command: again\n      retries: many\n"):
            invoker = FakeInvoker()
            playbook = write_playbook(tmp_path, "- hosts: web\n  tasks:\n    - command: first\n"
                                                "- hosts: web\n  gather_facts: true\n" + bad)
            runner = PlaybookRunner(write_inventory(tmp_path), [playbook], config=RunConfig(),
                                    json_output=True, invoker=invoker)

            assert runner.run() == 3
            assert invoker.calls == []
            assert json.loads(capsys.readouterr().out)["exit_code"] == 3

    def test_diff_mode_reaches_modules(self, tmp_path: Path):
        """--diff on the run config reaches every invocation."""
        invoker = FakeInvoker()
        runner = PlaybookRunner(write_inventory(tmp_path), [write_playbook(tmp_path, SIMPLE)],
                                config=RunConfig(diff_mode=True), invoker=invoker)

        assert runner.run() == 0
        assert invoker.calls and all(c.diff_mode for c in invoker.calls)

    def test_inventory_error(self, tmp_path: Path):
        """A missing inventory exits 3."""
        runner = PlaybookRunner(str(tmp_path / "nope.ini"), [write_playbook(tmp_path, SIMPLE)],
                                config=RunConfig(), invoker=FakeInvoker())
        assert runner.run() == 3

    def test_failed_host_exit_code(self, tmp_path: Path):
        """A failed host exits 2."""
        def responder(host, module, args):
            if host == "web2":
                return ModuleOutcome(failed=True, msg="boom")
            return None

        runner = PlaybookRunner(write_inventory(tmp_path), [write_playbook(tmp_path, SIMPLE)],
                                config=RunConfig(), invoker=FakeInvoker(responder))
        assert runner.run() == 2

    def test_unreachable_only_exit_code(self, tmp_path: Path):
        """Only unreachable hosts exits 4."""
        invoker = FakeInvoker(lambda host, module, args: ModuleOutcome(unreachable=True, msg="down"))
        runner = PlaybookRunner(write_inventory(tmp_path), [write_playbook(tmp_path, SIMPLE)],
                                config=RunConfig(), invoker=invoker)
        assert runner.run() == 4

    def test_limit(self, tmp_path: Path):
        """--limit restricts each play's hosts."""
        invoker = FakeInvoker()
        runner = PlaybookRunner(write_inventory(tmp_path), [write_playbook(tmp_path, SIMPLE)],
                                config=RunConfig(), limit="web2", invoker=invoker)
        assert runner.run() == 0
        assert {c.host for c in invoker.calls} == {"web2"}

    def test_tags_and_extra_vars(self, tmp_path: Path):
        """Tags select tasks; extra vars beat play vars."""
        invoker = FakeInvoker()
        playbook = write_playbook(tmp_path, """
- hosts: web1
  vars:
    greeting: play
  tasks:
    - name: tagged
      command: "say {{ greeting }}"
      tags: [greet]
    - name: untagged
      command: never
""")
        runner = PlaybookRunner(write_inventory(tmp_path), [playbook], config=RunConfig(),
                                tags=["greet"], extra_vars={"greeting": "extra"}, invoker=invoker)

        assert runner.run() == 0
        assert invoker.labels() == ["say extra"]

    def test_multiple_playbooks(self, tmp_path: Path, capsys):
        """Playbooks run in order and share host state."""
        invoker = FakeInvoker()
        first = write_playbook(tmp_path, """
- hosts: web1
  tasks:
    - set_fact:
        marker: from first
""", "first.yml")
        second = write_playbook(tmp_path, """
- hosts: web1
  tasks:
    - command: "echo {{ marker }}"
""", "second.yml")
        runner = PlaybookRunner(write_inventory(tmp_path), [first, second], config=RunConfig(),
                                json_output=True, invoker=invoker)

        assert runner.run() == 0
        assert invoker.labels() == ["set_fact", "echo from first"]
        assert len(json.loads(capsys.readouterr().out)["plays"]) == 2

    def test_fact_cache_persisted(self, tmp_path: Path):
        """Gathered facts are flushed to the fact cache directory."""
        cache_dir = tmp_path / "facts"
        config = RunConfig(gather_facts=True, fact_cache_path=str(cache_dir))
        playbook = write_playbook(tmp_path, SIMPLE.replace("hosts: web", "hosts: all"))
        runner = PlaybookRunner(write_inventory(tmp_path, "web1\n"), [playbook],
                                config=config, invoker=FakeInvoker())

        assert runner.run() == 0
        entry = json.loads((cache_dir / "web1.json").read_text())
        assert entry["facts"] == {"ansible_system": "Linux"}
