"""
Hostplay Playbook Runner

High-level runner that coordinates configuration, inventory, playbook
parsing, graph building, scheduling and output.
"""

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from hostplay.config import RunConfig, load_config
from hostplay.engine.callbacks import CallbackBase, DisplayCallback
from hostplay.engine.errors import ExitCode, HostplayError, ParseError
from hostplay.engine.facts import FactCache
from hostplay.engine.inventory import Host, InventoryManager
from hostplay.engine.playbook import Play, PlaybookParser
from hostplay.engine.results import PlaybookResult
from hostplay.engine.scheduler import Scheduler, Sleep
from hostplay.engine.taskgraph import TaskGraph, TaskGraphBuilder
from hostplay.engine.variables import VariableManager, VariableScopes
from hostplay.modules.base import ModuleInvoker, RegistryInvoker

logger = logging.getLogger(__name__)


class PlaybookRunner:
    """
    High-level playbook runner.

    Coordinates:
    - Configuration and inventory loading
    - Playbook parsing and task graph building (all before any execution)
    - Scheduling plays across hosts
    - Output formatting and the exit code
    """

    def __init__(
        self,
        inventory_source: str,
        playbook_paths: List[str],
        config: Optional[RunConfig] = None,
        limit: Optional[str] = None,
        tags: Optional[Iterable[str]] = None,
        skip_tags: Optional[Iterable[str]] = None,
        extra_vars: Optional[Dict[str, Any]] = None,
        json_output: bool = False,
        invoker: Optional[ModuleInvoker] = None,
        callback: Optional[CallbackBase] = None,
        sleep: Optional[Sleep] = None,
    ):
        self.inventory_source = inventory_source
        self.playbook_paths = playbook_paths
        self.config = config or load_config()
        self.limit = limit
        self.tags = list(tags or [])
        self.skip_tags = list(skip_tags or [])
        self.extra_vars = extra_vars or {}
        self.json_output = json_output
        self.invoker = invoker or RegistryInvoker()
        if callback is None:
            callback = CallbackBase() if json_output else DisplayCallback(verbosity=self.config.verbosity)
        self.callback = callback
        self.sleep = sleep or asyncio.sleep

        # Components
        self.inventory: Optional[InventoryManager] = None
        self.fact_cache = FactCache(self.config.fact_cache_path)

    def run(self) -> int:
        """
        Run playbooks synchronously.

        Returns:
            Exit code (0 ok, 1 error, 2 host failures, 3 parse/build error,
            4 unreachable hosts only, 130 interrupted)
        """
        try:
            result = asyncio.run(self.run_async())

            if self.json_output:
                print(result.to_json())

            return result.exit_code
        except ParseError as e:
            logger.error("Build failed: %s", e)
            self._report_error("parse_error", f"Parse error: {e}", e.exit_code)
            return e.exit_code
        except HostplayError as e:
            self._report_error("error", f"Error: {e}", e.exit_code)
            return e.exit_code
        except KeyboardInterrupt:
            self._report_error("interrupted", "\nInterrupted", ExitCode.KEYBOARD_INTERRUPT)
            return ExitCode.KEYBOARD_INTERRUPT

    def _report_error(self, error_type: str, message: str, exit_code: int) -> None:
        if self.json_output:
            error_obj = {
                "error": True,
                "error_type": error_type,
                "message": message.strip(),
                "exit_code": int(exit_code),
            }
            print(json.dumps(error_obj, indent=2))
        else:
            print(f"ERROR: {message.strip()}", file=sys.stderr)

    async def run_async(self) -> PlaybookResult:
        """Load everything, build every play, then execute."""
        self.inventory = InventoryManager().parse(self.inventory_source)

        loaded = self.fact_cache.load()
        if loaded:
            logger.info("Loaded cached facts for %d host(s)", loaded)

        # Parse and build up front so build errors abort before any host is touched
        built = [self._build(path) for path in self.playbook_paths]

        scheduler = Scheduler(
            variables=VariableManager(built[0][1], self.fact_cache),
            invoker=self.invoker,
            forks=self.config.forks,
            strategy=self.config.strategy,
            task_timeout=self.config.task_timeout,
            check_mode=self.config.check_mode,
            diff_mode=self.config.diff_mode,
            gather_facts=self.config.gather_facts,
            any_errors_fatal=self.config.any_errors_fatal,
            callback=self.callback,
            sleep=self.sleep,
        )

        combined = PlaybookResult(playbook_path=self.playbook_paths[0])
        try:
            for path, scopes, graphs in built:
                self.callback.playbook_start(path)
                scheduler.variables = VariableManager(scopes, self.fact_cache)
                result = await scheduler.run_playbook(graphs, self._hosts_for, path)
                combined.play_results.extend(result.play_results)
                if scheduler.halted or (result.play_results and result.play_results[-1].all_hosts_failed):
                    break
        finally:
            await self.invoker.close()
            self.fact_cache.flush()

        self.callback.playbook_end(combined)
        return combined

    def _build(self, path: str):
        parser = PlaybookParser(path, roles_path=self.config.roles_path)
        plays = parser.parse()
        scopes = VariableScopes.load(self.inventory, Path(path).parent, self.extra_vars)
        builder = TaskGraphBuilder(parser, static_vars=self.extra_vars)

        graphs: List[TaskGraph] = []
        for play in plays:
            hosts = [h.name for h in self._hosts_for(play)]
            graphs.append(builder.build(play, self.tags, self.skip_tags, hosts))
        logger.info("Built %d play(s) from %s", len(graphs), path)
        return path, scopes, graphs

    def _hosts_for(self, play: Play) -> List[Host]:
        """Resolve a play's host pattern, restricted by --limit."""
        hosts = self.inventory.get_hosts(play.hosts)
        if self.limit:
            allowed = {h.name for h in self.inventory.get_hosts(self.limit)}
            hosts = [h for h in hosts if h.name in allowed]
        return hosts
