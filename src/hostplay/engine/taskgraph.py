"""
Hostplay Task Graph Builder

Turns a parsed Play into the ordered task tree each targeted host walks:

- static ``import_tasks``/``import_role`` are expanded in place; the imported
  nodes inherit the import's ``when`` (ANDed), ``tags`` (unioned) and ``vars``
- blocks stay nested; the scheduler interprets block/rescue/always
- ``include_tasks``/``include_role`` stay as Include nodes and are expanded
  per host at execution time by ``TaskGraph.expand_include``
- tag filtering runs last, after tags have been inherited
- a handler flush is appended after pre_tasks, roles + tasks, and post_tasks

``when`` is never evaluated here.
"""

import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from hostplay.engine.errors import BuildError, IncludeError, ParseError
from hostplay.engine.playbook import (
    Block,
    Import,
    Include,
    Play,
    PlaybookParser,
    Role,
    Task,
    TaskNode,
    ensure_list,
)
from hostplay.engine.templating import TemplateEngine, get_template_engine

logger = logging.getLogger(__name__)

ALWAYS = 'always'
NEVER = 'never'


def should_run(tags: Iterable[str], run_tags: Set[str], skip_tags: Set[str]) -> bool:
    """
    Decide whether a node with ``tags`` is selected.

    Skip tags win over run tags. ``always`` runs unless skipped by name,
    ``never`` runs only when one of the node's tags is requested explicitly.
    ``all``, ``tagged`` and ``untagged`` are accepted on both sides.
    """
    tags = set(tags)

    if skip_tags:
        if tags & skip_tags:
            return False
        if 'tagged' in skip_tags and tags:
            return False
        if 'untagged' in skip_tags and not tags:
            return False
        if 'all' in skip_tags and ALWAYS not in tags:
            return False

    if NEVER in tags:
        return bool(tags & (run_tags - {'all'}))

    if not run_tags or 'all' in run_tags:
        return True
    if ALWAYS in tags:
        return True
    if 'tagged' in run_tags and tags:
        return True
    if 'untagged' in run_tags and not tags:
        return True
    return bool(tags & run_tags)


def filter_nodes(nodes: List[TaskNode], run_tags: Set[str], skip_tags: Set[str]) -> List[TaskNode]:
    """Drop unselected tasks; blocks with nothing left disappear."""
    kept: List[TaskNode] = []
    for node in nodes:
        if isinstance(node, Block):
            node.block = filter_nodes(node.block, run_tags, skip_tags)
            node.rescue = filter_nodes(node.rescue, run_tags, skip_tags)
            node.always = filter_nodes(node.always, run_tags, skip_tags)
            if node.block or node.always:
                kept.append(node)
        elif isinstance(node, Task) and node.implicit:
            kept.append(node)
        elif should_run(node.tags, run_tags, skip_tags):
            kept.append(node)
    return kept


def flush_task() -> Task:
    return Task(
        name='flush_handlers',
        module='meta',
        args={'_raw_params': 'flush_handlers'},
        implicit=True,
    )


def _union(first: Iterable[str], second: Iterable[str]) -> List[str]:
    merged = list(first)
    merged.extend(t for t in second if t not in merged)
    return merged


def _conditions(inherited: List[Any], own: Any) -> Any:
    combined = list(inherited) + ensure_list(own)
    return combined or None


@dataclass
class _Inherited:
    """Keywords passed down from imports and blocks to their children."""

    when: List[Any] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    vars: Dict[str, Any] = field(default_factory=dict)
    ignore_errors: bool = False

    def nested(self, when: Any = None, tags: Iterable[str] = (),
               variables: Optional[Mapping[str, Any]] = None,
               ignore_errors: bool = False) -> '_Inherited':
        return _Inherited(
            when=list(self.when) + ensure_list(when),
            tags=_union(self.tags, tags),
            vars={**self.vars, **(variables or {})},
            ignore_errors=self.ignore_errors or ignore_errors,
        )


@dataclass
class _BuildState:
    handlers: List[Task] = field(default_factory=list)
    # (role name, params) already applied in this play
    roles: Set[Tuple[str, str]] = field(default_factory=set)
    import_stack: List[str] = field(default_factory=list)


@dataclass
class TaskGraph:
    """The built task tree of one play, plus its handlers."""

    play: Play
    tasks: List[TaskNode]
    handlers: List[Task]
    run_tags: Set[str] = field(default_factory=set)
    skip_tags: Set[str] = field(default_factory=set)
    builder: Optional['TaskGraphBuilder'] = field(default=None, repr=False)

    def for_host(self, host: str) -> List[TaskNode]:
        """
        Ordered node list for ``host``.

        Every host of a play starts from the same tree; conditions and
        includes make the walked sequences diverge at execution time.
        """
        return list(self.tasks)

    def expand_include(
        self,
        include: Include,
        variables: Dict[str, Any],
        extra: Optional[Dict[str, Any]] = None,
    ) -> Tuple[List[TaskNode], List[Task]]:
        """
        Resolve a dynamic include for one host.

        Returns:
            The filtered node list to run inline and any handlers it brings

        Raises:
            IncludeError: If the target cannot be templated, found or parsed
        """
        if self.builder is None:
            raise IncludeError(include.target, "no loader available")
        return self.builder.expand_include(include, variables, self.run_tags, self.skip_tags, extra)


class TaskGraphBuilder:
    """
    Builds TaskGraphs from plays.

    The loader is the PlaybookParser that parsed the play; it is used to
    read imported task files and roles.
    """

    def __init__(
        self,
        loader: PlaybookParser,
        templar: Optional[TemplateEngine] = None,
        static_vars: Optional[Dict[str, Any]] = None,
    ):
        self.loader = loader
        self.templar = templar or get_template_engine()
        # Variables available to templated static import paths (extra vars)
        self.static_vars = dict(static_vars or {})

    def build(
        self,
        play: Play,
        run_tags: Optional[Iterable[str]] = None,
        skip_tags: Optional[Iterable[str]] = None,
        hosts: Optional[Iterable[str]] = None,
    ) -> TaskGraph:
        """
        Expand and filter a play.

        Args:
            play: Parsed play
            run_tags: Tags to select (empty selects everything but ``never``)
            skip_tags: Tags to exclude
            hosts: Host names the graph is built for (informational)

        Raises:
            BuildError: Unresolved static import, unknown role, recursive import
        """
        run = set(run_tags or [])
        skip = set(skip_tags or [])
        state = _BuildState()
        base = _Inherited(tags=list(play.tags))
        static = {**play.vars, **self.static_vars}

        for handler in play.handlers:
            state.handlers.append(replace(handler))

        pre = self._expand(play.pre_tasks, base, None, None, state, static)
        main: List[TaskNode] = []
        for role_import in play.roles:
            main.extend(self._expand_role(role_import, base, None, state, static))
        main.extend(self._expand(play.tasks, base, None, None, state, static))
        post = self._expand(play.post_tasks, base, None, None, state, static)

        tasks: List[TaskNode] = []
        for section in (pre, main, post):
            tasks.extend(filter_nodes(section, run, skip))
            tasks.append(flush_task())

        host_list = list(hosts or [])
        logger.debug(
            "Built play %r: %d top-level nodes, %d handlers%s",
            play.name, len(tasks), len(state.handlers),
            f" for {len(host_list)} hosts" if host_list else "",
        )
        return TaskGraph(
            play=play,
            tasks=tasks,
            handlers=state.handlers,
            run_tags=run,
            skip_tags=skip,
            builder=self,
        )

    def expand_include(
        self,
        include: Include,
        variables: Dict[str, Any],
        run_tags: Set[str],
        skip_tags: Set[str],
        extra: Optional[Dict[str, Any]] = None,
    ) -> Tuple[List[TaskNode], List[Task]]:
        """Load, expand and filter the target of a dynamic include."""
        evaluation = self.templar.template(include.target, variables)
        if not evaluation.ok:
            raise IncludeError(include.target, str(evaluation.error))
        target = str(evaluation.value)

        state = _BuildState()
        inherited = _Inherited(tags=list(include.tags), vars={**include.vars, **(extra or {})})
        try:
            if include.what == 'role':
                role_import = Import(target=target, what='role', name=target,
                                     base_dir=include.base_dir)
                nodes = self._expand_role(role_import, inherited, include.parent, state, variables,
                                          dedupe=False)
            else:
                loaded = self.loader.load_task_file(target, include.base_dir)
                nodes = self._expand(loaded, inherited, include.role, include.parent, state, variables)
        except ParseError as e:
            raise IncludeError(target, e.message) from e

        logger.debug("Included %s %s: %d nodes", include.what, target, len(nodes))
        return filter_nodes(nodes, run_tags, skip_tags), state.handlers

    def _expand(
        self,
        nodes: List[TaskNode],
        ctx: _Inherited,
        role: Optional[Role],
        parent: Optional[Block],
        state: _BuildState,
        static: Dict[str, Any],
    ) -> List[TaskNode]:
        """Copy a node list, applying inherited keywords and expanding imports."""
        expanded: List[TaskNode] = []
        for node in nodes:
            if isinstance(node, Import):
                expanded.extend(self._expand_import(node, ctx, role, parent, state, static))
            elif isinstance(node, Block):
                expanded.append(self._expand_block(node, ctx, role, parent, state, static))
            elif isinstance(node, Include):
                expanded.append(replace(
                    node,
                    when=_conditions(ctx.when, node.when),
                    tags=_union(ctx.tags, node.tags),
                    vars={**ctx.vars, **node.vars},
                    role=role or node.role,
                    parent=parent,
                ))
            else:
                expanded.append(replace(
                    node,
                    when=_conditions(ctx.when, node.when),
                    tags=_union(ctx.tags, node.tags),
                    vars={**ctx.vars, **node.vars},
                    ignore_errors=node.ignore_errors or ctx.ignore_errors,
                    role=role or node.role,
                    parent=parent,
                ))
        return expanded

    def _expand_block(
        self,
        node: Block,
        ctx: _Inherited,
        role: Optional[Role],
        parent: Optional[Block],
        state: _BuildState,
        static: Dict[str, Any],
    ) -> Block:
        block = replace(
            node,
            block=[],
            rescue=[],
            always=[],
            when=_conditions(ctx.when, node.when),
            tags=_union(ctx.tags, node.tags),
            role=role or node.role,
            parent=parent,
        )
        # The block gates its children on its own condition
        inner = _Inherited(
            tags=block.tags,
            vars=dict(ctx.vars),
            ignore_errors=ctx.ignore_errors or node.ignore_errors,
        )
        block.block = self._expand(node.block, inner, block.role, block, state, static)
        block.rescue = self._expand(node.rescue, inner, block.role, block, state, static)
        block.always = self._expand(node.always, inner, block.role, block, state, static)
        return block

    def _expand_import(
        self,
        node: Import,
        ctx: _Inherited,
        role: Optional[Role],
        parent: Optional[Block],
        state: _BuildState,
        static: Dict[str, Any],
    ) -> List[TaskNode]:
        if node.what == 'role':
            return self._expand_role(node, ctx, parent, state, static)

        target = self._static_target(node, static)
        key = f"tasks:{(node.base_dir or self.loader.base_dir) / target}"
        if key in state.import_stack:
            raise BuildError(f"Recursive import of {target}", file_path=str(self.loader.playbook_path))

        state.import_stack.append(key)
        try:
            loaded = self.loader.load_task_file(target, node.base_dir)
            inner = ctx.nested(when=node.when, tags=node.tags, variables=node.vars)
            return self._expand(loaded, inner, role, parent, state, static)
        finally:
            state.import_stack.pop()

    def _expand_role(
        self,
        node: Import,
        ctx: _Inherited,
        parent: Optional[Block],
        state: _BuildState,
        static: Dict[str, Any],
        dedupe: bool = True,
    ) -> List[TaskNode]:
        role_name = self._static_target(node, static)
        key = (role_name, repr(sorted(node.vars.items())))
        if dedupe and key in state.roles:
            logger.debug("Role %s already applied in this play", role_name)
            return []
        if f"role:{role_name}" in state.import_stack:
            raise BuildError(f"Recursive role dependency on {role_name}",
                             file_path=str(self.loader.playbook_path))

        role = self.loader.load_role(role_name, node.base_dir)
        state.roles.add(key)
        inner = ctx.nested(when=node.when, tags=node.tags, variables=node.vars)

        expanded: List[TaskNode] = []
        state.import_stack.append(f"role:{role_name}")
        try:
            for dependency in role.dependencies:
                dep_import = self._dependency_import(dependency, role)
                expanded.extend(self._expand_role(dep_import, inner, parent, state, static, dedupe))
            expanded.extend(self._expand(role.tasks, inner, role, parent, state, static))
        finally:
            state.import_stack.pop()

        for handler in role.handlers:
            state.handlers.append(replace(handler, vars={**node.vars, **handler.vars}, role=role))
        return expanded

    def _dependency_import(self, dependency: Any, role: Role) -> Import:
        if isinstance(dependency, str):
            return Import(target=dependency, what='role', name=dependency, base_dir=self._roles_dir(role))
        if isinstance(dependency, dict) and (dependency.get('role') or dependency.get('name')):
            name = dependency.get('role') or dependency.get('name')
            params = {k: v for k, v in dependency.items() if k not in ('role', 'name', 'tags', 'when', 'vars')}
            params.update(dependency.get('vars') or {})
            return Import(
                target=str(name),
                what='role',
                name=str(name),
                when=dependency.get('when'),
                tags=[str(t) for t in ensure_list(dependency.get('tags'))],
                vars=params,
                base_dir=self._roles_dir(role),
            )
        raise BuildError(f"Invalid dependency in role {role.name}: {dependency!r}",
                         file_path=str(role.path) if role.path else None)

    @staticmethod
    def _roles_dir(role: Role) -> Optional[Path]:
        # Sibling roles live next to the depending role: <roles>/<dep>
        return role.path.parent.parent if role.path else None

    def _static_target(self, node: Import, static: Dict[str, Any]) -> str:
        if '{{' not in node.target:
            return node.target
        evaluation = self.templar.template(node.target, static)
        if not evaluation.ok:
            raise BuildError(
                f"Cannot resolve static import '{node.target}': {evaluation.error}",
                file_path=str(self.loader.playbook_path),
            )
        return str(evaluation.value)
