"""
Inventory CLI entrypoint for hostplay-inventory.

Usage:
    hostplay-inventory --version
    hostplay-inventory -i inventory --list
    hostplay-inventory -i inventory --host <hostname>
    hostplay-inventory -i inventory --graph
"""

import argparse
import json
import platform
import sys
from typing import Any, Dict, List

import yaml

from hostplay import __version__
from hostplay.engine.errors import ExitCode, HostplayError
from hostplay.engine.inventory import InventoryManager
from hostplay.engine.variables import VariableManager, VariableScopes
from hostplay.log import configure_logging


def get_version_string() -> str:
    """Generate a detailed version string."""
    python_version = platform.python_version()
    os_info = f"{platform.system()} {platform.release()}"
    return (
        f"hostplay-inventory {__version__}\n"
        f"  python: {python_version}\n"
        f"  platform: {os_info}"
    )


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for hostplay-inventory."""
    parser = argparse.ArgumentParser(
        prog="hostplay-inventory",
        description="Show inventory information",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  hostplay-inventory -i inventory.ini --list
  hostplay-inventory -i hosts --host webserver1
  hostplay-inventory -i inventory/ --graph
        """,
    )

    parser.add_argument(
        "--version",
        action="version",
        version=get_version_string(),
    )

    parser.add_argument(
        "-i", "--inventory",
        dest="inventory",
        default=None,
        help="Inventory file, script or directory",
    )

    parser.add_argument(
        "--list",
        action="store_true",
        dest="list_hosts",
        help="Output all hosts info (JSON)",
    )

    parser.add_argument(
        "--host",
        dest="host",
        default=None,
        help="Output specific host info (JSON)",
    )

    parser.add_argument(
        "--graph",
        action="store_true",
        help="Output inventory graph",
    )

    parser.add_argument(
        "-y", "--yaml",
        action="store_true",
        help="Output in YAML format",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase verbosity",
    )

    return parser


def host_variables(inventory: InventoryManager, host: str) -> Dict[str, Any]:
    """Inventory-level variables of a host, with group tie-breaks applied."""
    manager = VariableManager(VariableScopes(inventory))
    return manager.layer_stack(host).merged()


def list_inventory(inventory: InventoryManager) -> Dict[str, Any]:
    """Dynamic-inventory style dump (the format ``--list`` scripts produce)."""
    data: Dict[str, Any] = {
        "_meta": {
            "hostvars": {name: host_variables(inventory, name) for name in sorted(inventory.hosts)},
        },
    }
    for name in sorted(inventory.groups):
        group = inventory.groups[name]
        entry: Dict[str, Any] = {}
        if group.hosts:
            entry["hosts"] = sorted(group.hosts)
        if group.children:
            entry["children"] = sorted(group.children)
        if group.vars:
            entry["vars"] = dict(group.vars)
        data[name] = entry
    return data


def graph_lines(inventory: InventoryManager, name: str = "all", depth: int = 0) -> List[str]:
    """Tree of groups and hosts, ``@group:`` / ``|--host`` style."""
    indent = "  " * depth
    lines = [f"{indent}{'|--' if depth else ''}@{name}:"]
    group = inventory.groups.get(name)
    if group is None:
        return lines
    for child in sorted(group.children):
        lines.extend(graph_lines(inventory, child, depth + 1))
    for host in sorted(group.hosts):
        lines.append(f"{'  ' * (depth + 1)}|--{host}")
    return lines


def _dump(data: Any, as_yaml: bool) -> str:
    if as_yaml:
        return yaml.safe_dump(data, default_flow_style=False, sort_keys=True)
    return json.dumps(data, indent=2, sort_keys=True, default=str)


def main(args: list[str] | None = None) -> int:
    """Main entrypoint for hostplay-inventory CLI."""
    parser = create_parser()
    parsed = parser.parse_args(args)

    # If no action specified, show help
    if not parsed.list_hosts and not parsed.host and not parsed.graph:
        parser.print_help()
        return ExitCode.SUCCESS

    if not parsed.inventory:
        print("ERROR: Inventory (-i/--inventory) is required", file=sys.stderr)
        return ExitCode.PARSE_ERROR

    configure_logging(parsed.verbose)

    try:
        inventory = InventoryManager().parse(parsed.inventory)
    except HostplayError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return e.exit_code

    if parsed.host:
        if parsed.host not in inventory.hosts:
            print(f"ERROR: Host not found: {parsed.host}", file=sys.stderr)
            return ExitCode.GENERIC_ERROR
        print(_dump(host_variables(inventory, parsed.host), parsed.yaml))
        return ExitCode.SUCCESS

    if parsed.graph:
        print("\n".join(graph_lines(inventory)))
        return ExitCode.SUCCESS

    print(_dump(list_inventory(inventory), parsed.yaml))
    return ExitCode.SUCCESS


if __name__ == "__main__":
    sys.exit(main())
