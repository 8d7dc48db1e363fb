"""
Hostplay Playbook Parser

Parses YAML playbooks into a tree of task nodes. A node is one of:

- ``Task``: a module invocation (also used for handlers)
- ``Block``: nested task list with ``rescue`` and ``always`` lists
- ``Import``: static import_tasks/import_role, expanded by the task graph builder
- ``Include``: dynamic include_tasks/include_role, expanded at execution time
"""

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import yaml

from hostplay.config import STRATEGIES
from hostplay.engine.errors import BuildError, ParseError


# Keys of a task mapping that are NOT module names
TASK_KEYWORDS = {
    'name', 'vars', 'tags', 'when', 'register', 'loop', 'loop_control',
    'with_items', 'with_list', 'until', 'retries', 'delay', 'changed_when',
    'failed_when', 'notify', 'listen', 'run_once', 'block', 'rescue', 'always',
    'args', 'timeout', 'no_log', 'diff', 'check_mode', 'ignore_errors',
    'ignore_unreachable', 'become', 'become_user', 'become_method',
    'environment', 'any_errors_fatal', 'action', 'collections', 'throttle',
}

# Keys we refuse rather than silently ignore
UNSUPPORTED_TASK_KEYS = {
    'async', 'poll', 'delegate_to', 'delegate_facts', 'local_action', 'include',
}

PLAY_KEYWORDS = {
    'name', 'hosts', 'vars', 'vars_files', 'tasks', 'pre_tasks', 'post_tasks',
    'handlers', 'roles', 'gather_facts', 'strategy', 'serial',
    'max_fail_percentage', 'any_errors_fatal', 'force_handlers', 'tags',
    'become', 'become_user', 'become_method', 'connection', 'environment',
    'ignore_errors', 'check_mode', 'no_log', 'collections', 'order', 'timeout',
}

# Modules whose string argument is always free-form text
FREE_FORM_MODULES = {'command', 'shell', 'raw', 'script', 'meta'}

INCLUDE_KEYS = {
    'import_tasks': ('import', 'tasks'),
    'include_tasks': ('include', 'tasks'),
    'import_role': ('import', 'role'),
    'include_role': ('include', 'role'),
}

FQCN_PREFIXES = ('ansible.builtin.', 'ansible.legacy.', 'hostplay.builtin.')

_KV_PATTERN = re.compile(r'(\w+)=(?:"([^"]*)"|\'([^\']*)\'|(\S+))')


@dataclass
class Role:
    """A loaded role: its variables, task tree and handlers."""

    name: str
    path: Optional[Path] = None
    defaults: Dict[str, Any] = field(default_factory=dict)
    vars: Dict[str, Any] = field(default_factory=dict)
    tasks: List['TaskNode'] = field(default_factory=list)
    handlers: List['Task'] = field(default_factory=list)
    dependencies: List[Any] = field(default_factory=list)

    def __repr__(self) -> str:
        return f"Role(name={self.name!r})"


@dataclass
class Task:
    """Represents a single module invocation in a playbook."""

    name: str
    module: str
    args: Dict[str, Any] = field(default_factory=dict)
    register: Optional[str] = None
    when: Any = None
    loop: Any = None
    loop_var: str = "item"
    loop_extended: bool = False
    ignore_errors: bool = False
    changed_when: Any = None
    failed_when: Any = None
    until: Any = None
    retries: Optional[int] = None
    delay: Optional[float] = None
    tags: List[str] = field(default_factory=list)
    vars: Dict[str, Any] = field(default_factory=dict)
    notify: List[str] = field(default_factory=list)
    # Handler triggers
    listen: List[str] = field(default_factory=list)
    run_once: bool = False
    check_mode: Optional[bool] = None
    diff: Optional[bool] = None
    timeout: Optional[float] = None
    become: Optional[bool] = None
    environment: Dict[str, Any] = field(default_factory=dict)
    any_errors_fatal: Optional[bool] = None
    # Handler flush inserted between play sections, not written by the user
    implicit: bool = False

    # Set by the task graph builder
    role: Optional[Role] = field(default=None, repr=False, compare=False)
    parent: Optional['Block'] = field(default=None, repr=False, compare=False)

    # Original position for error reporting
    _source: Optional[str] = field(default=None, repr=False, compare=False)

    kind = 'task'

    def __repr__(self) -> str:
        return f"Task(name={self.name!r}, module={self.module!r})"


@dataclass
class Block:
    """Represents a block of tasks with error handling."""

    name: str = ""
    block: List['TaskNode'] = field(default_factory=list)
    rescue: List['TaskNode'] = field(default_factory=list)
    always: List['TaskNode'] = field(default_factory=list)
    when: Any = None
    tags: List[str] = field(default_factory=list)
    vars: Dict[str, Any] = field(default_factory=dict)
    ignore_errors: bool = False
    become: Optional[bool] = None

    role: Optional[Role] = field(default=None, repr=False, compare=False)
    parent: Optional['Block'] = field(default=None, repr=False, compare=False)

    kind = 'block'

    def __repr__(self) -> str:
        return f"Block(name={self.name!r}, tasks={len(self.block)})"


@dataclass
class Import:
    """Static import of a task file or role, expanded at build time."""

    target: str
    what: str = 'tasks'  # 'tasks' or 'role'
    name: str = ""
    when: Any = None
    tags: List[str] = field(default_factory=list)
    vars: Dict[str, Any] = field(default_factory=dict)
    base_dir: Optional[Path] = None

    role: Optional[Role] = field(default=None, repr=False, compare=False)
    parent: Optional['Block'] = field(default=None, repr=False, compare=False)

    kind = 'import'


@dataclass
class Include:
    """Dynamic include of a task file or role, expanded at execution time."""

    target: str
    what: str = 'tasks'
    name: str = ""
    when: Any = None
    tags: List[str] = field(default_factory=list)
    vars: Dict[str, Any] = field(default_factory=dict)
    loop: Any = None
    loop_var: str = "item"
    base_dir: Optional[Path] = None

    role: Optional[Role] = field(default=None, repr=False, compare=False)
    parent: Optional['Block'] = field(default=None, repr=False, compare=False)

    kind = 'include'


TaskNode = Union[Task, Block, Import, Include]


@dataclass
class Play:
    """Represents a single play in a playbook."""

    name: str
    hosts: str
    pre_tasks: List[TaskNode] = field(default_factory=list)
    roles: List[Import] = field(default_factory=list)
    tasks: List[TaskNode] = field(default_factory=list)
    post_tasks: List[TaskNode] = field(default_factory=list)
    handlers: List[Task] = field(default_factory=list)
    vars: Dict[str, Any] = field(default_factory=dict)
    vars_files: List[str] = field(default_factory=list)
    gather_facts: Optional[bool] = None  # None = use run configuration
    strategy: Optional[str] = None  # None = use run configuration
    serial: Any = None
    max_fail_percentage: Optional[float] = None
    any_errors_fatal: bool = False
    force_handlers: bool = False
    tags: List[str] = field(default_factory=list)
    become: bool = False
    base_dir: Optional[Path] = None

    def __repr__(self) -> str:
        return f"Play(name={self.name!r}, hosts={self.hosts!r}, tasks={len(self.tasks)})"


def ensure_list(value: Any) -> List[Any]:
    """Ensure a value is a list."""
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def batch_size(value: Any, total: int) -> int:
    """Resolve one ``serial`` entry to a host count out of ``total``."""
    text = str(value).strip()
    try:
        if text.endswith('%'):
            size = int(total * float(text[:-1]) / 100)
            return max(1, size)
        size = int(text)
    except ValueError:
        raise BuildError(f"Invalid serial value: {value!r}")
    if size <= 0:
        raise BuildError(f"Invalid serial value: {value!r}")
    return size


def iter_tasks(nodes: Iterable[TaskNode]) -> Iterable[Task]:
    """Yield every Task in a node tree, depth first in declaration order."""
    for node in nodes:
        if isinstance(node, Block):
            yield from iter_tasks(node.block)
            yield from iter_tasks(node.rescue)
            yield from iter_tasks(node.always)
        elif isinstance(node, Task):
            yield node


class PlaybookParser:
    """
    Parse YAML playbooks into Play objects and task node trees.

    Also acts as the loader the task graph builder uses for static imports,
    dynamic includes, and roles.
    """

    def __init__(
        self,
        playbook_path: Union[str, Path],
        roles_path: Optional[List[Union[str, Path]]] = None,
    ):
        self.playbook_path = Path(playbook_path)
        self.plays: List[Play] = []
        self._base_dir = self.playbook_path.parent
        self.roles_path = [Path(p) for p in (roles_path or [])]

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    def parse(self) -> List[Play]:
        """
        Parse the playbook file.

        Returns:
            List of Play objects

        Raises:
            ParseError: If the playbook has syntax errors
            BuildError: If a task is malformed
        """
        for play_data in self._load_plays(self.playbook_path):
            if 'import_playbook' in play_data:
                nested = PlaybookParser(self._base_dir / play_data['import_playbook'], self.roles_path)
                self.plays.extend(nested.parse())
                continue
            self.plays.append(self._parse_play(play_data))
        return self.plays

    def _load_plays(self, path: Path) -> List[Dict[str, Any]]:
        if not path.exists():
            raise ParseError(f"Playbook not found: {path}", file_path=str(path))

        try:
            documents = list(yaml.safe_load_all(path.read_text(encoding='utf-8')))
        except yaml.YAMLError as e:
            raise ParseError(f"YAML syntax error: {e}", file_path=str(path))

        plays: List[Dict[str, Any]] = []
        for doc in documents:
            if doc is None:
                continue
            for item in ensure_list(doc):
                if not isinstance(item, dict):
                    raise ParseError(
                        f"Play must be a mapping, got {type(item).__name__}",
                        file_path=str(path),
                    )
                plays.append(item)
        return plays

    def _parse_play(self, data: Dict[str, Any]) -> Play:
        """Parse a single play from YAML data."""
        if 'hosts' not in data:
            raise ParseError(
                "Play missing required 'hosts' field",
                file_path=str(self.playbook_path)
            )

        unknown = set(data) - PLAY_KEYWORDS
        if unknown:
            raise ParseError(
                f"Unknown play keyword(s): {', '.join(sorted(unknown))}",
                file_path=str(self.playbook_path)
            )

        hosts = data['hosts']
        if isinstance(hosts, list):
            hosts = ','.join(str(h) for h in hosts)

        strategy = data.get('strategy')
        if strategy is not None and strategy not in STRATEGIES:
            raise BuildError(
                f"Unknown strategy: {strategy} (expected one of {', '.join(STRATEGIES)})",
                file_path=str(self.playbook_path)
            )
        serial = data.get('serial')
        if serial not in (None, 0, []):
            try:
                for size in ensure_list(serial):
                    batch_size(size, 100)
            except BuildError:
                raise BuildError(f"Invalid serial value: {serial!r}", file_path=str(self.playbook_path))

        play = Play(
            name=data.get('name') or str(hosts),
            hosts=str(hosts),
            gather_facts=data.get('gather_facts'),
            strategy=strategy,
            serial=serial,
            max_fail_percentage=self._number(data, 'max_fail_percentage', float),
            any_errors_fatal=bool(data.get('any_errors_fatal', False)),
            force_handlers=bool(data.get('force_handlers', False)),
            tags=[str(t) for t in ensure_list(data.get('tags'))],
            become=bool(data.get('become', False)),
            base_dir=self._base_dir,
        )

        if 'vars' in data:
            if not isinstance(data['vars'] or {}, dict):
                raise ParseError(
                    f"'vars' must be a dictionary, got {type(data['vars']).__name__}",
                    file_path=str(self.playbook_path)
                )
            play.vars = dict(data['vars'] or {})

        # vars_files are loaded into play vars, later files winning
        play.vars_files = [str(v) for v in ensure_list(data.get('vars_files'))]
        for vars_file in play.vars_files:
            vars_path = self._base_dir / vars_file
            if not vars_path.exists():
                raise ParseError(
                    f"vars_file not found: {vars_file}",
                    file_path=str(self.playbook_path)
                )
            vars_data = yaml.safe_load(vars_path.read_text(encoding='utf-8')) or {}
            if not isinstance(vars_data, dict):
                raise ParseError(f"vars_file must contain a mapping: {vars_file}",
                                 file_path=str(self.playbook_path))
            play.vars.update(vars_data)

        play.pre_tasks = self.parse_task_list(data.get('pre_tasks'), self._base_dir)
        play.roles = [self._parse_role_entry(entry) for entry in ensure_list(data.get('roles'))]
        play.tasks = self.parse_task_list(data.get('tasks'), self._base_dir)
        play.post_tasks = self.parse_task_list(data.get('post_tasks'), self._base_dir)
        play.handlers = self.parse_handlers(data.get('handlers'))

        return play

    def _parse_role_entry(self, entry: Any) -> Import:
        """Turn a play's ``roles:`` entry into a static role import."""
        if isinstance(entry, str):
            return Import(target=entry, what='role', name=entry, base_dir=self._base_dir)
        if not isinstance(entry, dict):
            raise BuildError(
                f"Invalid role entry type: {type(entry).__name__}",
                file_path=str(self.playbook_path)
            )
        role_name = entry.get('role') or entry.get('name')
        if not role_name:
            raise BuildError(
                "Role entry must have 'role' or 'name' key",
                file_path=str(self.playbook_path)
            )
        params = {k: v for k, v in entry.items() if k not in ('role', 'name', 'tags', 'when', 'vars')}
        params.update(entry.get('vars') or {})
        return Import(
            target=role_name,
            what='role',
            name=role_name,
            when=entry.get('when'),
            tags=[str(t) for t in ensure_list(entry.get('tags'))],
            vars=params,
            base_dir=self._base_dir,
        )

    def parse_handlers(self, data: Any) -> List[Task]:
        """Parse a handlers list; handler entries must be plain tasks."""
        handlers: List[Task] = []
        for handler_data in ensure_list(data):
            node = self.parse_node(handler_data, self._base_dir)
            if not isinstance(node, Task):
                raise BuildError(
                    "Handlers must be plain tasks",
                    file_path=str(self.playbook_path)
                )
            handlers.append(node)
        return handlers

    def parse_task_list(self, data: Any, base_dir: Path) -> List[TaskNode]:
        """Parse a list of task mappings into nodes."""
        if data is None:
            return []
        if not isinstance(data, list):
            raise BuildError(
                f"Task list must be a list, got {type(data).__name__}",
                file_path=str(self.playbook_path)
            )
        return [self.parse_node(item, base_dir) for item in data]

    def parse_node(self, data: Any, base_dir: Path) -> TaskNode:
        """Parse a task, block, import or include."""
        if not isinstance(data, dict):
            raise BuildError(
                f"Task must be a mapping, got {type(data).__name__}",
                file_path=str(self.playbook_path)
            )
        if 'block' in data:
            return self._parse_block(data, base_dir)
        for key, (mode, what) in INCLUDE_KEYS.items():
            if key in data or f"ansible.builtin.{key}" in data:
                return self._parse_include(data, key, mode, what, base_dir)
        return self._parse_task(data)

    def _parse_include(
        self,
        data: Dict[str, Any],
        key: str,
        mode: str,
        what: str,
        base_dir: Path,
    ) -> Union[Import, Include]:
        spec = data.get(key, data.get(f"ansible.builtin.{key}"))
        params: Dict[str, Any] = {}
        if isinstance(spec, dict):
            params = {k: v for k, v in spec.items() if k not in ('file', 'name')}
            target = spec.get('file') or spec.get('name')
        else:
            target = spec
        if not target:
            raise BuildError(f"{key} requires a file or role name", file_path=str(self.playbook_path))

        node_vars = dict(data.get('vars') or {})
        if what == 'role':
            node_vars = {**params, **node_vars}
        common = dict(
            target=str(target),
            what=what,
            name=data.get('name', f"{key} {target}"),
            when=data.get('when'),
            tags=[str(t) for t in ensure_list(data.get('tags'))],
            vars=node_vars,
            base_dir=base_dir,
        )
        if mode == 'import':
            for forbidden in ('loop', 'with_items', 'with_list'):
                if forbidden in data:
                    raise BuildError(f"'{forbidden}' cannot be used with {key}",
                                     file_path=str(self.playbook_path))
            return Import(**common)

        loop, loop_var, _ = self._parse_loop(data)
        return Include(loop=loop, loop_var=loop_var, **common)

    def _parse_block(self, data: Dict[str, Any], base_dir: Path) -> Block:
        """Parse a block with its rescue and always sections."""
        for key in data:
            if key in UNSUPPORTED_TASK_KEYS:
                raise BuildError(f"'{key}' is not supported", file_path=str(self.playbook_path))
        return Block(
            name=data.get('name', ''),
            block=self.parse_task_list(data.get('block'), base_dir),
            rescue=self.parse_task_list(data.get('rescue'), base_dir),
            always=self.parse_task_list(data.get('always'), base_dir),
            when=data.get('when'),
            tags=[str(t) for t in ensure_list(data.get('tags'))],
            vars=dict(data.get('vars') or {}),
            ignore_errors=bool(data.get('ignore_errors', False)),
            become=data.get('become'),
        )

    def _parse_loop(self, data: Dict[str, Any]) -> tuple:
        loop = None
        for key in ('loop', 'with_items', 'with_list'):
            if key in data:
                loop = data[key]
                break
        loop_control = data.get('loop_control') or {}
        if not isinstance(loop_control, dict):
            raise BuildError("'loop_control' must be a mapping", file_path=str(self.playbook_path))
        return loop, loop_control.get('loop_var', 'item'), bool(loop_control.get('extended', False))

    def _parse_task(self, data: Dict[str, Any]) -> Task:
        """Parse a single task from YAML data."""
        for key in data:
            if key in UNSUPPORTED_TASK_KEYS:
                raise BuildError(
                    f"'{key}' is not supported",
                    file_path=str(self.playbook_path)
                )

        candidates = [k for k in data if k not in TASK_KEYWORDS]
        if 'action' in data:
            candidates.append('action')
        if len(candidates) > 1:
            raise BuildError(
                f"Conflicting action statements: {', '.join(candidates)}",
                file_path=str(self.playbook_path)
            )
        if not candidates:
            raise BuildError(
                f"Task has no module: {list(data.keys())}",
                file_path=str(self.playbook_path)
            )

        key = candidates[0]
        if key == 'action':
            module_name, module_args = self._split_action(data['action'])
        else:
            module_name, module_args = key, data[key]
        for prefix in FQCN_PREFIXES:
            if module_name.startswith(prefix):
                module_name = module_name[len(prefix):]

        args = self._normalize_args(module_name, module_args)
        if isinstance(data.get('args'), dict):
            args = {**data['args'], **args}

        loop, loop_var, loop_extended = self._parse_loop(data)

        return Task(
            name=data.get('name') or f'{module_name}',
            module=module_name,
            args=args,
            register=data.get('register'),
            when=data.get('when'),
            loop=loop,
            loop_var=loop_var,
            loop_extended=loop_extended,
            ignore_errors=bool(data.get('ignore_errors', False)),
            changed_when=data.get('changed_when'),
            failed_when=data.get('failed_when'),
            until=data.get('until'),
            retries=self._number(data, 'retries', int),
            delay=self._number(data, 'delay', float),
            tags=[str(t) for t in ensure_list(data.get('tags'))],
            vars=dict(data.get('vars') or {}),
            notify=[str(n) for n in ensure_list(data.get('notify'))],
            listen=[str(n) for n in ensure_list(data.get('listen'))],
            run_once=bool(data.get('run_once', False)),
            check_mode=data.get('check_mode'),
            diff=data.get('diff'),
            timeout=self._number(data, 'timeout', float),
            become=data.get('become'),
            environment=dict(data.get('environment') or {}),
            any_errors_fatal=data.get('any_errors_fatal'),
            _source=str(self.playbook_path),
        )

    def _number(self, data: Dict[str, Any], key: str, kind: type) -> Any:
        """Convert an optional numeric keyword, rejecting values that aren't numbers."""
        value = data.get(key)
        if value is None:
            return None
        try:
            return kind(value)
        except (TypeError, ValueError):
            raise BuildError(f"'{key}' must be a number, got {value!r}", file_path=str(self.playbook_path))

    def _split_action(self, action: Any) -> tuple:
        """Split ``action: module args`` or ``action: {module: x, ...}``."""
        if isinstance(action, dict):
            action = dict(action)
            module = action.pop('module', None)
            if not module:
                raise BuildError("'action' mapping requires 'module'", file_path=str(self.playbook_path))
            return str(module), action
        module, _, rest = str(action).strip().partition(' ')
        return module, rest or None

    def _normalize_args(self, module_name: str, args: Any) -> Dict[str, Any]:
        """Normalize module arguments to a dictionary."""
        if args is None:
            return {}

        if isinstance(args, dict):
            return dict(args)

        if isinstance(args, str):
            if module_name in FREE_FORM_MODULES:
                return {'_raw_params': args}

            # Inline args: "src=foo dest=bar"
            parsed = {}
            for match in _KV_PATTERN.finditer(args):
                parsed[match.group(1)] = match.group(2) or match.group(3) or match.group(4)
            if not parsed:
                parsed['_raw_params'] = args
            return parsed

        return {'_raw_params': args}

    # Loader interface used by the task graph builder

    def load_task_file(self, target: str, base_dir: Optional[Path] = None) -> List[TaskNode]:
        """
        Load and parse a task file.

        Raises:
            BuildError: If the file does not exist or is not a task list
        """
        base = base_dir or self._base_dir
        path = Path(target)
        candidates = [path] if path.is_absolute() else [base / path, base / 'tasks' / path, self._base_dir / path]
        tasks_path = next((p for p in candidates if p.is_file()), None)
        if tasks_path is None:
            raise BuildError(f"Tasks file not found: {target}", file_path=str(self.playbook_path))

        try:
            tasks_data = yaml.safe_load(tasks_path.read_text(encoding='utf-8')) or []
        except yaml.YAMLError as e:
            raise BuildError(f"YAML syntax error in {tasks_path}: {e}", file_path=str(tasks_path))
        if not isinstance(tasks_data, list):
            raise BuildError(f"Tasks file must contain a list: {target}", file_path=str(tasks_path))
        return self.parse_task_list(tasks_data, tasks_path.parent)

    def find_role_path(self, role_name: str, base_dir: Optional[Path] = None) -> Optional[Path]:
        """
        Find the path to a role.

        Searches in:
        1. <base_dir>/roles/<role_name>, then <playbook_dir>/roles/<role_name>
        2. each configured roles path
        3. ./roles/<role_name>
        """
        search_paths = [self._base_dir / "roles" / role_name]
        if base_dir:
            search_paths.insert(0, base_dir / "roles" / role_name)
        search_paths += [p / role_name for p in self.roles_path]
        search_paths.append(Path.cwd() / "roles" / role_name)

        for path in search_paths:
            if path.is_dir():
                return path
        return None

    def load_role(self, role_name: str, base_dir: Optional[Path] = None) -> Role:
        """
        Load a role's defaults, vars, tasks, handlers and dependencies.

        Raises:
            BuildError: If the role cannot be found
        """
        role_path = self.find_role_path(role_name, base_dir)
        if not role_path:
            raise BuildError(f"Role not found: {role_name}", file_path=str(self.playbook_path))

        role = Role(name=role_name, path=role_path)
        role.defaults = self._load_role_mapping(role_path / "defaults")
        role.vars = self._load_role_mapping(role_path / "vars")

        tasks_file = self._main_file(role_path / "tasks")
        if tasks_file:
            role.tasks = self.load_task_file(str(tasks_file), role_path)

        handlers_file = self._main_file(role_path / "handlers")
        if handlers_file:
            data = yaml.safe_load(handlers_file.read_text(encoding='utf-8')) or []
            role.handlers = self.parse_handlers(data)

        meta_file = self._main_file(role_path / "meta")
        if meta_file:
            meta = yaml.safe_load(meta_file.read_text(encoding='utf-8')) or {}
            role.dependencies = ensure_list(meta.get('dependencies'))

        return role

    def _main_file(self, directory: Path) -> Optional[Path]:
        for name in ('main.yml', 'main.yaml'):
            if (directory / name).is_file():
                return directory / name
        return None

    def _load_role_mapping(self, directory: Path) -> Dict[str, Any]:
        main = self._main_file(directory)
        if not main:
            return {}
        data = yaml.safe_load(main.read_text(encoding='utf-8')) or {}
        if not isinstance(data, dict):
            raise BuildError(f"{main} must contain a mapping", file_path=str(main))
        return data
