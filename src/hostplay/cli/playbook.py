"""
Playbook CLI entrypoint for hostplay-playbook.

Usage:
    hostplay-playbook --version
    hostplay-playbook --help
    hostplay-playbook -i inventory playbook.yml
"""

import argparse
import json
import platform
import sys
from pathlib import Path

import yaml

from hostplay import __version__
from hostplay.config import load_config
from hostplay.engine.errors import ExitCode, HostplayError
from hostplay.log import configure_logging


def get_version_string() -> str:
    """Generate a detailed version string."""
    python_version = platform.python_version()
    os_info = f"{platform.system()} {platform.release()}"
    return (
        f"hostplay-playbook {__version__}\n"
        f"  python: {python_version}\n"
        f"  platform: {os_info}"
    )


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for hostplay-playbook."""
    parser = argparse.ArgumentParser(
        prog="hostplay-playbook",
        description="Run declarative playbooks against an inventory of hosts",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  hostplay-playbook -i inventory.ini site.yml
  hostplay-playbook -i hosts playbook.yml --check
  hostplay-playbook -i inventory/ deploy.yml -t web --strategy free -v
        """,
    )

    parser.add_argument(
        "--version",
        action="version",
        version=get_version_string(),
    )

    parser.add_argument(
        "playbook",
        nargs="*",
        help="Playbook file(s) to run",
    )

    parser.add_argument(
        "-i", "--inventory",
        dest="inventory",
        default=None,
        help="Inventory file, script or directory",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (-v, -vv, -vvv)",
    )

    parser.add_argument(
        "-C", "--check",
        action="store_true",
        default=None,
        help="Run in check mode (dry run)",
    )

    parser.add_argument(
        "--diff",
        action="store_true",
        default=None,
        help="Show differences when changing files",
    )

    parser.add_argument(
        "-l", "--limit",
        dest="limit",
        default=None,
        help="Limit to specific hosts/groups (same syntax as play hosts)",
    )

    parser.add_argument(
        "-t", "--tags",
        dest="tags",
        action="append",
        default=[],
        help="Only run tasks tagged with these values (comma separated, repeatable)",
    )

    parser.add_argument(
        "--skip-tags",
        dest="skip_tags",
        action="append",
        default=[],
        help="Skip tasks tagged with these values (comma separated, repeatable)",
    )

    parser.add_argument(
        "-f", "--forks",
        dest="forks",
        default=None,
        help="Number of concurrent task invocations (default: 5)",
    )

    parser.add_argument(
        "--strategy",
        choices=["linear", "free"],
        default=None,
        help="Default strategy for plays that don't set one",
    )

    parser.add_argument(
        "--timeout",
        dest="timeout",
        default=None,
        help="Per-task timeout in seconds; a timed out task counts as unreachable",
    )

    parser.add_argument(
        "-e", "--extra-vars",
        dest="extra_vars",
        action="append",
        default=[],
        help="Extra variables as key=value, JSON or @file (can be repeated)",
    )

    parser.add_argument(
        "--log-file",
        dest="log_file",
        default=None,
        help="Write engine logs to a file instead of stderr",
    )

    parser.add_argument(
        "--json",
        action="store_true",
        help="Output results in JSON format",
    )

    return parser


def _split_tags(values: list[str]) -> list[str]:
    return [t.strip() for value in values for t in value.split(',') if t.strip()]


def _parse_extra_vars(extra_vars_list: list[str]) -> dict:
    """
    Parse extra vars from command line.

    Raises:
        HostplayError: If an @file is missing or not a mapping
    """
    result = {}
    for item in extra_vars_list:
        item = item.strip()

        if item.startswith('@'):
            path = Path(item[1:])
            if not path.is_file():
                raise HostplayError(f"Extra vars file not found: {path}")
            try:
                file_vars = yaml.safe_load(path.read_text(encoding='utf-8'))
            except yaml.YAMLError as e:
                raise HostplayError(f"Invalid extra vars file {path}: {e}")
            if file_vars is None:
                continue
            if not isinstance(file_vars, dict):
                raise HostplayError(f"Extra vars file {path} must contain a mapping")
            result.update(file_vars)
            continue

        # Try JSON first
        if item.startswith('{'):
            try:
                result.update(json.loads(item))
                continue
            except json.JSONDecodeError:
                pass

        # key=value pairs, space separated
        for pair in item.split():
            key, sep, value = pair.partition('=')
            if not sep:
                raise HostplayError(f"Invalid extra var (expected key=value): {pair}")
            try:
                # Numbers, booleans and lists keep their type
                result[key.strip()] = json.loads(value)
            except json.JSONDecodeError:
                result[key.strip()] = value

    return result


def main(args: list[str] | None = None) -> int:
    """Main entrypoint for hostplay-playbook CLI."""
    parser = create_parser()
    parsed = parser.parse_args(args)

    # If no playbook provided, show help
    if not parsed.playbook:
        parser.print_help()
        return ExitCode.SUCCESS

    if not parsed.inventory:
        print("ERROR: Inventory (-i/--inventory) is required", file=sys.stderr)
        return ExitCode.PARSE_ERROR

    configure_logging(parsed.verbose, parsed.log_file)

    try:
        extra_vars = _parse_extra_vars(parsed.extra_vars)
        config = load_config().override(
            forks=parsed.forks,
            strategy=parsed.strategy,
            task_timeout=parsed.timeout,
            check_mode=parsed.check,
            diff_mode=parsed.diff,
            verbosity=parsed.verbose or None,
        )
    except HostplayError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return e.exit_code

    from hostplay.engine.runner import PlaybookRunner

    runner = PlaybookRunner(
        inventory_source=parsed.inventory,
        playbook_paths=parsed.playbook,
        config=config,
        limit=parsed.limit,
        tags=_split_tags(parsed.tags),
        skip_tags=_split_tags(parsed.skip_tags),
        extra_vars=extra_vars,
        json_output=parsed.json,
    )

    return runner.run()


if __name__ == "__main__":
    sys.exit(main())
