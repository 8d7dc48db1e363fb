"""
Hostplay Variable Resolution

Merges variables from every scope into one effective mapping per
(host, task) pair. Scopes are layered by a fixed precedence rank, lowest
first; mappings are merged key-wise (deep merge) and any other value
overwrites. Registered results and set_fact values live in a per-host
overlay that sits above every rank.
"""

import copy
import enum
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from hostplay.engine.facts import FactCache
from hostplay.engine.inventory import InventoryManager, load_vars_directory
from hostplay.engine.playbook import Block, Include, Play, Task

logger = logging.getLogger(__name__)


class Precedence(enum.IntEnum):
    """Variable scope ranks, lowest to highest."""

    ROLE_DEFAULTS = 1
    INVENTORY_VARS = 2
    INVENTORY_GROUP_VARS_ALL = 3
    PLAYBOOK_GROUP_VARS_ALL = 4
    INVENTORY_GROUP_VARS = 5
    PLAYBOOK_GROUP_VARS = 6
    INVENTORY_HOST_VARS = 7
    PLAYBOOK_HOST_VARS = 8
    FACTS = 9
    PLAY_VARS = 10
    TASK_VARS = 11
    ROLE_VARS = 12
    BLOCK_VARS = 13
    EXTRA_VARS = 14
    # Registered results and set_fact, per host
    HOST_OVERLAY = 15


def deep_merge(base: Mapping[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Merge ``override`` into ``base`` without mutating either.

    Nested mappings are merged key-wise; any other value in ``override``
    replaces the value in ``base``.
    """
    result = dict(base)
    for key, value in override.items():
        current = result.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            result[key] = deep_merge(current, value)
        else:
            result[key] = value
    return result


@dataclass
class Layer:
    rank: Precedence
    source: str
    values: Mapping[str, Any]


class LayerStack:
    """
    Collects scope layers in any order and merges them by rank.

    Layers of equal rank keep the order in which they were added, which is
    how same-rank group variables get their deterministic tie-break.
    """

    def __init__(self) -> None:
        self._layers: List[Tuple[int, int, Layer]] = []

    def add(self, rank: Precedence, values: Optional[Mapping[str, Any]], source: str = "") -> None:
        if values:
            self._layers.append((int(rank), len(self._layers), Layer(rank, source, values)))

    def layers(self) -> List[Layer]:
        return [layer for _, _, layer in sorted(self._layers, key=lambda e: (e[0], e[1]))]

    def merged(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        for layer in self.layers():
            result = deep_merge(result, layer.values)
        return copy.deepcopy(result)

    def origin(self, name: str) -> Optional[Layer]:
        """The highest-precedence layer defining ``name``."""
        found = None
        for layer in self.layers():
            if name in layer.values:
                found = layer
        return found


@dataclass
class VariableScopes:
    """
    The immutable, pre-loaded variable scopes of one run.

    Inventory-side scopes come from the inventory; play-collateral
    ``group_vars/`` and ``host_vars/`` come from the playbook directory.
    """

    inventory: InventoryManager
    playbook_group_vars: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    playbook_host_vars: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    extra_vars: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def load(
        cls,
        inventory: InventoryManager,
        playbook_dir: Optional[Union[str, Path]] = None,
        extra_vars: Optional[Dict[str, Any]] = None,
    ) -> 'VariableScopes':
        """Load play-collateral vars directories next to the playbook."""
        group_vars: Dict[str, Dict[str, Any]] = {}
        host_vars: Dict[str, Dict[str, Any]] = {}
        if playbook_dir is not None:
            base = Path(playbook_dir)
            # Same directory as the inventory: those files are inventory scopes already
            if inventory.inventory_dir is None or base.resolve() != inventory.inventory_dir.resolve():
                group_vars = load_vars_directory(base / 'group_vars')
                host_vars = load_vars_directory(base / 'host_vars')
        return cls(
            inventory=inventory,
            playbook_group_vars=group_vars,
            playbook_host_vars=host_vars,
            extra_vars=dict(extra_vars or {}),
        )


class VariableManager:
    """
    Resolves the effective variables for a host and task.

    Precedence, lowest to highest:
     1 role defaults            8 playbook host_vars/<host>
     2 inline inventory vars    9 gathered facts
     3 inventory group_vars/all 10 play vars
     4 playbook group_vars/all  11 task vars
     5 inventory group_vars/*   12 role vars/main
     6 playbook group_vars/*    13 block vars
     7 inventory host_vars/*    14 extra vars
    followed by the host's registered-result overlay.
    """

    def __init__(self, scopes: VariableScopes, fact_cache: Optional[FactCache] = None):
        self.scopes = scopes
        self.inventory = scopes.inventory
        self.fact_cache = fact_cache or FactCache()

    def layer_stack(
        self,
        host: str,
        task: Optional[Union[Task, Block, Include]] = None,
        play: Optional[Play] = None,
        overlay: Optional[Mapping[str, Any]] = None,
    ) -> LayerStack:
        """Collect every scope layer that applies to ``host`` and ``task``."""
        stack = LayerStack()
        inv = self.inventory
        group_order = inv.group_precedence_order(host) if host in inv.hosts else []

        role = task.role if task is not None else None
        if role is not None:
            stack.add(Precedence.ROLE_DEFAULTS, role.defaults, f"role {role.name} defaults")

        # Inline inventory vars: 'all', then groups in tie-break order, then the host
        stack.add(Precedence.INVENTORY_VARS, inv.variables_for('group:all'), "inventory all")
        for group in group_order:
            stack.add(Precedence.INVENTORY_VARS, inv.variables_for(f'group:{group}'), f"inventory group {group}")
        stack.add(Precedence.INVENTORY_VARS, inv.variables_for(f'host:{host}'), f"inventory host {host}")

        stack.add(Precedence.INVENTORY_GROUP_VARS_ALL, inv.variables_for('group_vars/all'),
                  "inventory group_vars/all")
        stack.add(Precedence.PLAYBOOK_GROUP_VARS_ALL, self.scopes.playbook_group_vars.get('all'),
                  "playbook group_vars/all")
        for group in group_order:
            stack.add(Precedence.INVENTORY_GROUP_VARS, inv.variables_for(f'group_vars/{group}'),
                      f"inventory group_vars/{group}")
            stack.add(Precedence.PLAYBOOK_GROUP_VARS, self.scopes.playbook_group_vars.get(group),
                      f"playbook group_vars/{group}")
        stack.add(Precedence.INVENTORY_HOST_VARS, inv.variables_for(f'host_vars/{host}'),
                  f"inventory host_vars/{host}")
        stack.add(Precedence.PLAYBOOK_HOST_VARS, self.scopes.playbook_host_vars.get(host),
                  f"playbook host_vars/{host}")

        facts = self.fact_cache.get(host)
        if facts:
            stack.add(Precedence.FACTS, {**facts, 'ansible_facts': facts}, "facts")

        if play is not None:
            stack.add(Precedence.PLAY_VARS, play.vars, f"play {play.name}")

        if isinstance(task, (Task, Include)):
            stack.add(Precedence.TASK_VARS, task.vars, f"task {task.name}")

        if role is not None:
            stack.add(Precedence.ROLE_VARS, role.vars, f"role {role.name} vars")

        # Outer blocks first so the innermost block wins
        for block in reversed(list(self._enclosing_blocks(task))):
            stack.add(Precedence.BLOCK_VARS, block.vars, f"block {block.name}")

        stack.add(Precedence.EXTRA_VARS, self.scopes.extra_vars, "extra vars")
        stack.add(Precedence.HOST_OVERLAY, overlay, f"registered vars for {host}")
        return stack

    def resolve(
        self,
        host: str,
        task: Optional[Union[Task, Block, Include]] = None,
        play: Optional[Play] = None,
        overlay: Optional[Mapping[str, Any]] = None,
        magic: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Compute the effective variable mapping for ``host`` running ``task``.

        Args:
            host: Inventory host name
            task: Task or Block being evaluated (supplies task/role/block scopes)
            play: Play being run (supplies play vars)
            overlay: The host's registered-result overlay
            magic: Context values merged last (inventory_hostname etc.)

        Returns:
            A fresh mapping; callers may mutate it freely
        """
        merged = self.layer_stack(host, task, play, overlay).merged()
        merged.update(self.magic_vars(host))
        if magic:
            merged.update(magic)
        return merged

    def magic_vars(self, host: str) -> Dict[str, Any]:
        inv = self.inventory
        group_names = [g for g in inv.host_group_names(host) if g != 'all'] if host in inv.hosts else []
        return {
            'inventory_hostname': host,
            'inventory_hostname_short': host.split('.')[0],
            'group_names': group_names,
            'groups': inv.groups_dict(),
        }

    @staticmethod
    def _enclosing_blocks(node: Optional[Union[Task, Block, Include]]):
        """Yield the node itself if it is a block, then each ancestor block."""
        current = node if isinstance(node, Block) else (node.parent if node is not None else None)
        while current is not None:
            yield current
            current = current.parent
