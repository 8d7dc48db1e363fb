"""
Tests for inventory parsing, host patterns and the group hierarchy.
"""

import json
import stat
import sys
from pathlib import Path

import pytest

from hostplay.engine.errors import GroupCycleError, InventoryError
from hostplay.engine.inventory import Host, InventoryManager


class TestINIInventoryParser:
    """Test INI inventory file parsing."""

    def test_parse_simple_host(self, tmp_path: Path):
        """Test parsing a simple host."""
        inventory_file = tmp_path / "inventory.ini"
        inventory_file.write_text("localhost\n")

        mgr = InventoryManager().parse(inventory_file)

        hosts = mgr.get_hosts("all")
        assert [h.name for h in hosts] == ["localhost"]
        assert hosts[0].connection == "local"

    def test_parse_host_with_vars(self, tmp_path: Path):
        """Inline host variables are typed and exposed through properties."""
        inventory_file = tmp_path / "inventory.ini"
        inventory_file.write_text(
            "web1 ansible_host=192.168.1.10 ansible_user=admin ansible_port=2222\n"
        )

        mgr = InventoryManager().parse(inventory_file)

        host = mgr.hosts["web1"]
        assert host.address == "192.168.1.10"
        assert host.user == "admin"
        assert host.port == 2222
        assert host.connection == "ssh"

    def test_parse_groups_children_and_vars(self, tmp_path: Path):
        """Group sections, :children and :vars are all understood."""
        inventory_file = tmp_path / "inventory.ini"
        inventory_file.write_text("""
[webservers]
web1
web2

[dbservers]
db1

[prod:children]
webservers
dbservers

[webservers:vars]
http_port=80
app_env="production"
""")

        mgr = InventoryManager().parse(inventory_file)

        assert {h.name for h in mgr.get_hosts("prod")} == {"web1", "web2", "db1"}
        assert mgr.variables_for("group:webservers") == {"http_port": 80, "app_env": "production"}
        assert mgr.groups["webservers"].parents == ["prod"]

    def test_host_ranges(self, tmp_path: Path):
        """web[01:03] expands to three zero-padded hosts."""
        inventory_file = tmp_path / "inventory.ini"
        inventory_file.write_text("[web]\nweb[01:03].example.com\n")

        mgr = InventoryManager().parse(inventory_file)

        assert list(mgr.hosts) == [
            "web01.example.com", "web02.example.com", "web03.example.com",
        ]

    def test_ungrouped_hosts(self, tmp_path: Path):
        """Hosts without a group land in ungrouped."""
        inventory_file = tmp_path / "inventory.ini"
        inventory_file.write_text("lonely\n[g]\nsocial\n")

        mgr = InventoryManager().parse(inventory_file)

        assert [h.name for h in mgr.get_hosts("ungrouped")] == ["lonely"]

    def test_missing_source(self, tmp_path: Path):
        """A missing inventory path is an InventoryError."""
        with pytest.raises(InventoryError):
            InventoryManager().parse(tmp_path / "nope")


class TestYAMLInventory:
    """Test YAML and JSON inventories."""

    def test_yaml_inventory(self, tmp_path: Path):
        """YAML hosts, vars and children load into the same model."""
        inventory_file = tmp_path / "hosts.yml"
        inventory_file.write_text("""
all:
  vars:
    ntp: pool.example.com
  children:
    web:
      hosts:
        web1:
          http_port: 8080
        web2:
""")

        mgr = InventoryManager().parse(inventory_file)

        assert {h.name for h in mgr.get_hosts("web")} == {"web1", "web2"}
        assert mgr.variables_for("host:web1") == {"http_port": 8080}
        assert mgr.variables_for("group:all") == {"ntp": "pool.example.com"}

    def test_vars_directories_next_to_inventory(self, tmp_path: Path):
        """group_vars/ and host_vars/ next to the inventory are separate scopes."""
        (tmp_path / "hosts.ini").write_text("[web]\nweb1\n")
        (tmp_path / "group_vars").mkdir()
        (tmp_path / "group_vars" / "all.yml").write_text("tier: base\n")
        (tmp_path / "group_vars" / "web.yml").write_text("tier: web\n")
        (tmp_path / "host_vars").mkdir()
        (tmp_path / "host_vars" / "web1.yml").write_text("tier: host\n")

        mgr = InventoryManager().parse(tmp_path / "hosts.ini")

        assert mgr.variables_for("group_vars/all") == {"tier": "base"}
        assert mgr.variables_for("group_vars/web") == {"tier": "web"}
        assert mgr.variables_for("host_vars/web1") == {"tier": "host"}

    def test_unknown_scope_key(self):
        """An unknown scope key is rejected."""
        with pytest.raises(InventoryError):
            InventoryManager().variables_for("planet:mars")


@pytest.mark.skipif(sys.platform == 'win32', reason="Executable bit model required")
class TestDynamicInventory:
    """Tests for dynamic inventory scripts."""

    def write_script(self, path: Path, payload: dict, rc: int = 0) -> Path:
        path.write_text(
            "#!/bin/sh\n"
            f"cat <<'EOF'\n{json.dumps(payload)}\nEOF\n"
            f"exit {rc}\n"
        )
        path.chmod(path.stat().st_mode | stat.S_IEXEC)
        return path

    def test_list_output_is_loaded(self, tmp_path: Path):
        """Groups, group vars, children and _meta hostvars are read from --list."""
        script = self.write_script(tmp_path / "inventory.sh", {
            "webservers": {"hosts": ["web1", "web2"], "vars": {"http_port": 80}},
            "dbservers": ["db1"],
            "prod": {"children": ["webservers", "dbservers"]},
            "_meta": {"hostvars": {"web1": {"ansible_user": "admin"}}},
        })

        mgr = InventoryManager().parse(script)

        assert set(mgr.hosts) == {"web1", "web2", "db1"}
        assert mgr.groups["webservers"].vars == {"http_port": 80}
        assert mgr.hosts["web1"].user == "admin"
        assert {h.name for h in mgr.get_hosts("prod")} == {"web1", "web2", "db1"}

    def test_failing_script(self, tmp_path: Path):
        """A non-zero exit is an InventoryError."""
        script = self.write_script(tmp_path / "broken.sh", {}, rc=3)
        with pytest.raises(InventoryError):
            InventoryManager().parse(script)


class TestGroupHierarchy:
    """Test cycle detection, depth and precedence order."""

    def test_cycle_is_detected(self, tmp_path: Path):
        """A group that is its own ancestor raises GroupCycleError."""
        inventory_file = tmp_path / "inventory.ini"
        inventory_file.write_text("""
[a:children]
b

[b:children]
a
""")

        with pytest.raises(GroupCycleError) as exc_info:
            InventoryManager().parse(inventory_file)
        assert exc_info.value.exit_code == 3

    def test_precedence_order_depth_then_reverse_name(self, tmp_path: Path):
        """Shallow groups apply first; at equal depth, reverse-alphabetical order."""
        inventory_file = tmp_path / "inventory.ini"
        inventory_file.write_text("""
[a]
h1
[b]
h1
[parent:children]
b
""")

        mgr = InventoryManager().parse(inventory_file)

        assert mgr.group_depth("parent") == 1
        assert mgr.group_depth("b") == 2
        assert mgr.group_precedence_order("h1") == ["parent", "a", "b"]
        assert mgr.host_group_names("h1") == ["a", "all", "b", "parent"]


class TestHostPatterns:
    """Test host pattern matching used by plays and --limit."""

    @pytest.fixture
    def mgr(self, tmp_path: Path) -> InventoryManager:
        inventory_file = tmp_path / "inventory.ini"
        inventory_file.write_text("""
[web]
web1
web2
[db]
db1
web2
[staging]
web1
""")
        return InventoryManager().parse(inventory_file)

    def names(self, hosts):
        return [h.name for h in hosts]

    def test_all_and_star(self, mgr):
        """'all' and '*' return every host in inventory order."""
        assert self.names(mgr.get_hosts("all")) == ["web1", "web2", "db1"]
        assert self.names(mgr.get_hosts("*")) == ["web1", "web2", "db1"]

    def test_union(self, mgr):
        """Comma and colon both union."""
        assert self.names(mgr.get_hosts("web,db")) == ["web1", "web2", "db1"]
        assert self.names(mgr.get_hosts("web1:db1")) == ["web1", "db1"]

    def test_intersection_and_exclusion(self, mgr):
        """& intersects and ! excludes."""
        assert self.names(mgr.get_hosts("web:&db")) == ["web2"]
        assert self.names(mgr.get_hosts("web:!staging")) == ["web2"]

    def test_glob(self, mgr):
        """Globs match host names."""
        assert self.names(mgr.get_hosts("web*")) == ["web1", "web2"]

    def test_no_match(self, mgr):
        """Unknown names match nothing."""
        assert mgr.get_hosts("nothing") == []

    def test_provider_listing(self, mgr):
        """list_hosts and list_groups expose the parsed inventory."""
        assert self.names(mgr.list_hosts()) == ["web1", "web2", "db1"]
        groups = {g.name: g for g in mgr.list_groups()}
        assert {"all", "web", "db", "staging"} <= set(groups)
        assert groups["db"].hosts == ["db1", "web2"]


class TestHostModel:
    """Test Host model."""

    def test_host_defaults(self):
        """Test Host default values."""
        host = Host(name="test")
        assert host.address == "test"
        assert host.user is None
        assert host.port is None
        assert host.connection == "ssh"
        assert host.vars == {}

    def test_hostplay_connection_alias(self):
        """hostplay_connection takes priority over ansible_connection."""
        host = Host("box", {"ansible_connection": "ssh", "hostplay_connection": "local"})
        assert host.connection == "local"

    def test_host_get_variable(self):
        """Test Host.get_variable method."""
        host = Host(name="test", variables={"foo": "bar"})
        assert host.get_variable("foo") == "bar"
        assert host.get_variable("missing") is None
        assert host.get_variable("missing", "default") == "default"
