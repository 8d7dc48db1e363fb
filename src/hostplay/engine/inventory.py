"""
Hostplay Inventory Manager

Parses and manages inventory from INI, YAML and JSON files, executable
dynamic-inventory scripts, and host_vars/group_vars directories.

Variables are kept per source so the variable engine can layer them by
precedence: inline inventory variables live on Host/Group objects, while
``group_vars/`` and ``host_vars/`` files are kept in separate mappings.
"""

import fnmatch
import json
import logging
import os
import re
import subprocess
import sys
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Protocol, Set, Tuple, Union

import yaml

from hostplay.engine.errors import GroupCycleError, InventoryError

logger = logging.getLogger(__name__)

VARS_EXTENSIONS = ('.yml', '.yaml', '.json', '')


class Host:
    """Represents a single host in the inventory."""

    def __init__(self, name: str, variables: Optional[Dict[str, Any]] = None):
        self.name = name
        self.vars: Dict[str, Any] = dict(variables) if variables else {}
        self._groups: List[str] = []

    @property
    def address(self) -> str:
        """Get the actual address to connect to."""
        return self.vars.get('ansible_host', self.name)

    @property
    def port(self) -> Optional[int]:
        """Get the port number, if one was configured."""
        port = self.vars.get('ansible_port')
        return int(port) if port is not None else None

    @property
    def user(self) -> Optional[str]:
        """Get the user to connect as."""
        return self.vars.get('ansible_user')

    @property
    def connection(self) -> str:
        """Get the connection type (ssh, local)."""
        default = 'local' if self.name in ('localhost', '127.0.0.1') else 'ssh'
        return self.vars.get('hostplay_connection', self.vars.get('ansible_connection', default))

    @property
    def groups(self) -> List[str]:
        """Return list of group names this host belongs to directly."""
        return list(self._groups)

    def add_group(self, group_name: str) -> None:
        """Add this host to a group."""
        if group_name not in self._groups:
            self._groups.append(group_name)

    def get_variable(self, key: str, default: Any = None) -> Any:
        """Get an inline host variable."""
        return self.vars.get(key, default)

    def __repr__(self) -> str:
        return f"Host({self.name!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Host):
            return NotImplemented
        return self.name == other.name

    def __hash__(self) -> int:
        return hash(self.name)


class Group:
    """Represents a group of hosts."""

    def __init__(self, name: str, variables: Optional[Dict[str, Any]] = None):
        self.name = name
        self.vars: Dict[str, Any] = dict(variables) if variables else {}
        self._hosts: List[str] = []
        self._children: List[str] = []
        self._parents: List[str] = []

    @property
    def hosts(self) -> List[str]:
        """Return list of host names directly in this group."""
        return list(self._hosts)

    @property
    def children(self) -> List[str]:
        """Return list of child group names."""
        return list(self._children)

    @property
    def parents(self) -> List[str]:
        """Return list of parent group names."""
        return list(self._parents)

    def add_host(self, host_name: str) -> None:
        """Add a host to this group."""
        if host_name not in self._hosts:
            self._hosts.append(host_name)

    def add_child(self, group_name: str) -> None:
        """Add a child group."""
        if group_name not in self._children:
            self._children.append(group_name)

    def add_parent(self, group_name: str) -> None:
        """Record a parent group."""
        if group_name not in self._parents:
            self._parents.append(group_name)

    def set_variable(self, key: str, value: Any) -> None:
        """Set an inline group variable."""
        self.vars[key] = value

    def __repr__(self) -> str:
        return f"Group({self.name!r}, hosts={len(self._hosts)})"


class InventoryProvider(Protocol):
    """
    Contract the engine consumes from an inventory source.

    ``variables_for`` accepts scope keys of the form ``host:<name>`` and
    ``group:<name>`` (inline inventory variables) and ``host_vars/<name>``
    and ``group_vars/<name>`` (variable files next to the inventory).
    """

    def list_hosts(self) -> List[Host]: ...

    def list_groups(self) -> List[Group]: ...

    def variables_for(self, scope_key: str) -> Mapping[str, Any]: ...


def load_vars_file(path: Path) -> Dict[str, Any]:
    """Load a YAML/JSON variables file; an empty file yields an empty mapping."""
    try:
        data = yaml.safe_load(path.read_text(encoding='utf-8'))
    except yaml.YAMLError as e:
        raise InventoryError(f"Invalid variables file: {e}", file_path=str(path))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise InventoryError(
            f"Variables file must contain a mapping, got {type(data).__name__}",
            file_path=str(path),
        )
    return data


def load_vars_directory(path: Path) -> Dict[str, Dict[str, Any]]:
    """
    Load a ``group_vars/`` or ``host_vars/`` style directory.

    Each entry is either ``<name>.yml`` (or .yaml/.json/no extension) or a
    ``<name>/`` directory whose files are merged in sorted order.

    Returns:
        Mapping of group/host name to its variables
    """
    result: Dict[str, Dict[str, Any]] = {}
    if not path.is_dir():
        return result

    for item in sorted(path.iterdir()):
        if item.name.startswith('.'):
            continue
        if item.is_file() and item.suffix in VARS_EXTENSIONS:
            name = item.stem if item.suffix else item.name
            result.setdefault(name, {}).update(load_vars_file(item))
        elif item.is_dir():
            merged = result.setdefault(item.name, {})
            for sub in sorted(item.iterdir()):
                if sub.is_file() and sub.suffix in ('.yml', '.yaml', '.json'):
                    merged.update(load_vars_file(sub))
    return result


class InventoryManager:
    """
    Manages inventory parsing and host resolution.

    Supports:
    - INI, YAML and JSON inventory files
    - Executable dynamic inventory scripts (``--list`` JSON)
    - host_vars/ and group_vars/ directories next to the inventory
    - Host patterns for plays and --limit
    """

    # Pattern for host range expansion: web[01:10].example.com
    RANGE_PATTERN = re.compile(r'\[(\d+):(\d+)\]')
    # Pattern for INI variable assignment: key=value
    VAR_PATTERN = re.compile(r'(\w+)=(?:"([^"]*)"|\'([^\']*)\'|(\S+))')

    def __init__(self) -> None:
        self.hosts: Dict[str, Host] = {}
        self.groups: Dict[str, Group] = {}
        self.group_vars_files: Dict[str, Dict[str, Any]] = {}
        self.host_vars_files: Dict[str, Dict[str, Any]] = {}
        self._inventory_dir: Optional[Path] = None
        self._depth_cache: Dict[str, int] = {}

        # Always create 'all' and 'ungrouped' groups
        self.groups['all'] = Group('all')
        self.groups['ungrouped'] = Group('ungrouped')

    @property
    def inventory_dir(self) -> Optional[Path]:
        return self._inventory_dir

    def parse(self, source: Union[str, Path]) -> 'InventoryManager':
        """
        Parse an inventory source.

        Args:
            source: Path to inventory file, script or directory

        Returns:
            self for chaining

        Raises:
            InventoryError: On unreadable sources
            GroupCycleError: If the group hierarchy contains a cycle
        """
        source_path = Path(source)

        if not source_path.exists():
            raise InventoryError(f"Inventory path does not exist: {source_path}")

        if source_path.is_file():
            self._inventory_dir = source_path.parent
            self._parse_file(source_path)
        elif source_path.is_dir():
            self._inventory_dir = source_path
            self._parse_directory(source_path)
        else:
            raise InventoryError(f"Invalid inventory source: {source_path}")

        if self._inventory_dir:
            self.group_vars_files.update(load_vars_directory(self._inventory_dir / 'group_vars'))
            self.host_vars_files.update(load_vars_directory(self._inventory_dir / 'host_vars'))

        self.finalize()
        logger.info("Loaded inventory %s: %d hosts, %d groups",
                    source_path, len(self.hosts), len(self.groups))
        return self

    def finalize(self) -> None:
        """Attach implicit groups and validate the group hierarchy."""
        for name, group in self.groups.items():
            if name != 'all' and not group.parents:
                group.add_parent('all')
                self.groups['all'].add_child(name)

        for host_name, host in self.hosts.items():
            self.groups['all'].add_host(host_name)
            host.add_group('all')

            # If host isn't in any other explicit group, add to 'ungrouped'
            if not [g for g in host.groups if g not in ('all', 'ungrouped')]:
                self.groups['ungrouped'].add_host(host_name)
                host.add_group('ungrouped')

        self.validate()
        self._depth_cache.clear()

    def validate(self) -> None:
        """
        Reject cycles in the group hierarchy.

        Raises:
            GroupCycleError: With the offending path, e.g. ["a", "b", "a"]
        """
        visiting: List[str] = []
        done: Set[str] = set()

        def visit(name: str) -> None:
            if name in done:
                return
            if name in visiting:
                start = visiting.index(name)
                raise GroupCycleError(visiting[start:] + [name])
            visiting.append(name)
            for child in self.groups[name].children:
                if child in self.groups:
                    visit(child)
            visiting.pop()
            done.add(name)

        for name in sorted(self.groups):
            visit(name)

    # InventoryProvider contract

    def list_hosts(self) -> List[Host]:
        return list(self.hosts.values())

    def list_groups(self) -> List[Group]:
        return list(self.groups.values())

    def variables_for(self, scope_key: str) -> Mapping[str, Any]:
        kind, sep, name = scope_key.partition(':')
        if sep:
            if kind == 'host' and name in self.hosts:
                return self.hosts[name].vars
            if kind == 'group' and name in self.groups:
                return self.groups[name].vars
            return {}
        kind, sep, name = scope_key.partition('/')
        if kind == 'host_vars':
            return self.host_vars_files.get(name, {})
        if kind == 'group_vars':
            return self.group_vars_files.get(name, {})
        raise InventoryError(f"Unknown variable scope: {scope_key}")

    # Group hierarchy

    def ancestors(self, group_name: str) -> Set[str]:
        """All groups above ``group_name`` (transitively), excluding itself."""
        result: Set[str] = set()
        stack = list(self.groups[group_name].parents) if group_name in self.groups else []
        while stack:
            parent = stack.pop()
            if parent in result or parent not in self.groups:
                continue
            result.add(parent)
            stack.extend(self.groups[parent].parents)
        return result

    def group_depth(self, group_name: str) -> int:
        """Length of the longest parent chain from ``all`` down to the group."""
        if group_name == 'all':
            return 0
        if group_name not in self._depth_cache:
            parents = [p for p in self.groups[group_name].parents if p in self.groups]
            self._depth_cache[group_name] = 1 + max(
                (self.group_depth(p) for p in parents), default=0
            )
        return self._depth_cache[group_name]

    def host_group_names(self, host_name: str) -> List[str]:
        """Every group a host belongs to, directly or through a child group."""
        host = self.hosts[host_name]
        names: Set[str] = set()
        for group in host.groups:
            names.add(group)
            names.update(self.ancestors(group))
        return sorted(names)

    def group_precedence_order(self, host_name: str) -> List[str]:
        """
        Order in which a host's group variables are applied.

        Groups are sorted by depth below ``all`` (shallow first), then by
        name in reverse-alphabetical order. Later groups override earlier
        ones, so a child group beats its ancestors and, at equal depth,
        the alphabetically-first group wins. ``all`` is excluded.
        """
        groups = [g for g in self.host_group_names(host_name) if g != 'all']
        by_name = sorted(groups, reverse=True)
        return sorted(by_name, key=self.group_depth)

    # Host patterns

    def get_hosts(self, pattern: str = "all") -> List[Host]:
        """
        Get hosts matching a pattern, in inventory order.

        Supported patterns:
        - "all" or "*" - all hosts
        - "group_name" - all hosts in a group (including children)
        - "host_name" - single host
        - "web*" - glob over host and group names
        - "a,b" or "a:b" - union
        - "&group" / ":&group" - intersection
        - "!group" / ":!group" - exclusion
        """
        if not pattern:
            return []

        normalized = pattern.replace(':&', ',&').replace(':!', ',!').replace(':', ',')
        parts = [p.strip() for p in normalized.split(',')]
        include: Set[str] = set()
        intersect: List[Set[str]] = []
        exclude: Set[str] = set()
        for part in parts:
            if not part:
                continue
            if part.startswith('!'):
                exclude |= self._match_single(part[1:])
            elif part.startswith('&'):
                intersect.append(self._match_single(part[1:]))
            else:
                include |= self._match_single(part)

        for names in intersect:
            include &= names
        include -= exclude
        return [h for name, h in self.hosts.items() if name in include]

    def _match_single(self, pattern: str) -> Set[str]:
        if pattern in ('all', '*'):
            return set(self.hosts)
        if pattern in self.groups:
            return self._get_group_host_names(pattern)
        if pattern in self.hosts:
            return {pattern}
        if any(c in pattern for c in '*?['):
            matched = {n for n in self.hosts if fnmatch.fnmatch(n, pattern)}
            for group_name in self.groups:
                if fnmatch.fnmatch(group_name, pattern):
                    matched |= self._get_group_host_names(group_name)
            return matched
        return set()

    def _get_group_host_names(self, group_name: str) -> Set[str]:
        """Get all host names in a group, including from child groups."""
        result: Set[str] = set()
        stack = [group_name]
        seen: Set[str] = set()
        while stack:
            name = stack.pop()
            if name in seen or name not in self.groups:
                continue
            seen.add(name)
            result.update(h for h in self.groups[name].hosts if h in self.hosts)
            stack.extend(self.groups[name].children)
        return result

    def groups_dict(self) -> Dict[str, List[str]]:
        """Group name -> member host names (the ``groups`` magic variable)."""
        return {
            name: [h for h in self.hosts if h in self._get_group_host_names(name)]
            for name in self.groups
        }

    # Parsing

    def add_host(self, name: str, group: Optional[str] = None,
                 variables: Optional[Dict[str, Any]] = None) -> Host:
        """Add or update a host, optionally placing it in a group."""
        host = self.hosts.get(name)
        if host is None:
            host = Host(name, variables)
            self.hosts[name] = host
        elif variables:
            host.vars.update(variables)
        if group:
            self._ensure_group(group).add_host(name)
            host.add_group(group)
        return host

    def _ensure_group(self, name: str) -> Group:
        if name not in self.groups:
            self.groups[name] = Group(name)
        return self.groups[name]

    def _link(self, parent: str, child: str) -> None:
        self._ensure_group(parent).add_child(child)
        self._ensure_group(child).add_parent(parent)

    def _parse_file(self, path: Path) -> None:
        """Parse a single inventory file."""
        if self._is_script(path):
            self._parse_script(path)
            return

        content = path.read_text(encoding='utf-8')

        # Detect format by extension or content
        if path.suffix in ('.yml', '.yaml'):
            self._parse_yaml_string(content, path)
        elif path.suffix == '.json':
            try:
                data = json.loads(content)
            except json.JSONDecodeError as e:
                raise InventoryError(f"Invalid JSON inventory: {e}", file_path=str(path))
            self._parse_yaml_data(data, path)
        else:
            if content.strip().startswith(('---', 'all:', 'ungrouped:')):
                self._parse_yaml_string(content, path)
            else:
                self._parse_ini_string(content, path)

    def _is_script(self, path: Path) -> bool:
        if sys.platform == 'win32' or path.suffix in ('.yml', '.yaml', '.json', '.ini'):
            return False
        return os.access(path, os.X_OK)

    def _parse_directory(self, path: Path) -> None:
        """Parse all inventory files in a directory."""
        for item in sorted(path.iterdir()):
            if not item.is_file() or item.name.startswith('.'):
                continue
            # Skip backup files and non-inventory files
            if item.suffix in ('.bak', '.orig', '.pyc', '.pyo', '.retry', '.md'):
                continue
            self._parse_file(item)

    def _parse_script(self, path: Path) -> None:
        """Run a dynamic inventory script with ``--list`` and load its JSON."""
        logger.debug("Running dynamic inventory script %s", path)
        try:
            proc = subprocess.run(
                [str(path), '--list'],
                capture_output=True,
                text=True,
                timeout=120,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise InventoryError(f"Dynamic inventory script failed: {e}", file_path=str(path))
        if proc.returncode != 0:
            raise InventoryError(
                f"Dynamic inventory script exited with rc={proc.returncode}: {proc.stderr.strip()}",
                file_path=str(path),
            )
        try:
            data = json.loads(proc.stdout)
        except json.JSONDecodeError as e:
            raise InventoryError(f"Dynamic inventory returned invalid JSON: {e}", file_path=str(path))
        self._parse_script_data(data)

    def _parse_script_data(self, data: Dict[str, Any]) -> None:
        """Load the ``--list`` JSON format used by dynamic inventory scripts."""
        hostvars = data.get('_meta', {}).get('hostvars', {})
        for group_name, group_data in data.items():
            if group_name == '_meta':
                continue
            self._ensure_group(group_name)
            if isinstance(group_data, list):
                for host_name in group_data:
                    self.add_host(host_name, group_name)
                continue
            for host_name in group_data.get('hosts', []):
                self.add_host(host_name, group_name)
            for key, value in group_data.get('vars', {}).items():
                self.groups[group_name].set_variable(key, value)
            for child in group_data.get('children', []):
                self._link(group_name, child)
        for host_name, host_vars in hostvars.items():
            self.add_host(host_name, variables=host_vars)

    def _parse_ini_string(self, content: str, source_path: Optional[Path] = None) -> None:
        """Parse INI format inventory."""
        current_group: Optional[str] = None
        current_section: Optional[str] = None  # 'hosts', 'vars', 'children'

        for line in content.splitlines():
            line = line.strip()

            # Skip empty lines and comments
            if not line or line.startswith('#') or line.startswith(';'):
                continue

            # Check for group header
            if line.startswith('[') and line.endswith(']'):
                header = line[1:-1].strip()

                if header.endswith(':vars'):
                    current_group = header[:-len(':vars')].strip()
                    current_section = 'vars'
                elif header.endswith(':children'):
                    current_group = header[:-len(':children')].strip()
                    current_section = 'children'
                else:
                    current_group = header
                    current_section = 'hosts'
                self._ensure_group(current_group)
                continue

            if current_section == 'vars':
                if '=' in line and current_group:
                    key, value = self._parse_variable_line(line)
                    self.groups[current_group].set_variable(key, value)

            elif current_section == 'children':
                if current_group:
                    self._link(current_group, line)

            else:
                # Parse host entry (hosts section or no section)
                for name, variables in self._parse_host_line(line):
                    self.add_host(name, current_group, variables)

    def _parse_host_line(self, line: str) -> List[Tuple[str, Dict[str, Any]]]:
        """Parse a single host line, handling ranges and variables."""
        parts = line.split(None, 1)
        host_pattern = parts[0]
        var_string = parts[1] if len(parts) > 1 else ''

        variables: Dict[str, Any] = {}
        for match in self.VAR_PATTERN.finditer(var_string):
            key = match.group(1)
            value = match.group(2) or match.group(3) or match.group(4)
            variables[key] = self._convert_value(value)

        return [(name, dict(variables)) for name in self._expand_host_pattern(host_pattern)]

    def _expand_host_pattern(self, pattern: str) -> List[str]:
        """Expand host patterns like web[01:03].example.com."""
        match = self.RANGE_PATTERN.search(pattern)
        if not match:
            return [pattern]

        start = int(match.group(1))
        end = int(match.group(2))
        width = len(match.group(1))

        results = []
        for i in range(start, end + 1):
            num_str = str(i).zfill(width)
            expanded = pattern[:match.start()] + num_str + pattern[match.end():]
            results.extend(self._expand_host_pattern(expanded))

        return results

    def _parse_variable_line(self, line: str) -> Tuple[str, Any]:
        """Parse a variable assignment line."""
        key, _, value = line.partition('=')
        key = key.strip()
        value = value.strip()

        # Handle quoted values
        if (value.startswith('"') and value.endswith('"')) or \
           (value.startswith("'") and value.endswith("'")):
            return key, value[1:-1]

        return key, self._convert_value(value)

    def _convert_value(self, value: str) -> Any:
        """Convert string value to appropriate Python type."""
        if value.lower() in ('true', 'yes'):
            return True
        if value.lower() in ('false', 'no'):
            return False
        if value.lower() in ('null', 'none', '~'):
            return None

        try:
            return int(value)
        except ValueError:
            pass

        try:
            return float(value)
        except ValueError:
            pass

        return value

    def _parse_yaml_string(self, content: str, source_path: Optional[Path] = None) -> None:
        """Parse YAML format inventory."""
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise InventoryError(
                f"YAML syntax error: {e}",
                file_path=str(source_path) if source_path else None,
            )
        if data:
            self._parse_yaml_data(data, source_path)

    def _parse_yaml_data(self, data: Any, source_path: Optional[Path] = None) -> None:
        """Parse YAML inventory data structure."""
        if not isinstance(data, dict):
            raise InventoryError(
                "Inventory must be a mapping of groups",
                file_path=str(source_path) if source_path else None,
            )

        for group_name, group_data in data.items():
            self._parse_yaml_group(group_name, group_data or {})

    def _parse_yaml_group(self, name: str, data: Dict[str, Any]) -> None:
        """Parse a single group from YAML inventory."""
        group = self._ensure_group(name)

        if not isinstance(data, dict):
            return

        hosts_data = data.get('hosts') or {}
        if isinstance(hosts_data, dict):
            for host_name, host_vars in hosts_data.items():
                self.add_host(str(host_name), name, host_vars or {})

        vars_data = data.get('vars') or {}
        if isinstance(vars_data, dict):
            for key, value in vars_data.items():
                group.set_variable(key, value)

        children_data = data.get('children') or {}
        if isinstance(children_data, dict):
            for child_name, child_data in children_data.items():
                self._link(name, child_name)
                self._parse_yaml_group(child_name, child_data or {})
