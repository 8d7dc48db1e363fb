"""
Hostplay Scheduler

Async execution engine with fork-style parallelism using asyncio.

Each host walks its task tree through a ``HostIterator``: an explicit
stack of frames that implements block/rescue/always without relying on
exception propagation. Two strategies drive the iterators:

- linear: every active host runs its next task, then all hosts wait for
  each other before anyone starts the following task
- free: every host runs through its own tasks as fast as it can

Both are bounded by one semaphore of ``forks`` slots. A host never runs
two tasks at once.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from hostplay.engine.callbacks import CallbackBase, summary_line
from hostplay.engine.errors import BuildError, ConnectionError, IncludeError
from hostplay.engine.facts import FactCache
from hostplay.engine.handlers import NotificationQueue
from hostplay.engine.inventory import Host
from hostplay.engine.playbook import Block, Include, Play, Task, TaskNode, batch_size, ensure_list
from hostplay.engine.results import PlaybookResult, PlayResult, TaskResult, TaskStatus
from hostplay.engine.taskgraph import TaskGraph
from hostplay.engine.templating import TemplateEngine, get_template_engine
from hostplay.engine.variables import VariableManager
from hostplay.modules.base import ModuleInvoker

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]

DEFAULT_RETRIES = 3
DEFAULT_DELAY = 5.0

# Outcomes of HostIterator.fail()
RESCUED = 'rescued'
ALWAYS = 'always'
FAILED = 'failed'


@dataclass
class _Frame:
    """One task list being walked: the play's tasks, a block section, or an include."""

    nodes: List[TaskNode]
    block: Optional[Block] = None
    section: str = 'tasks'  # tasks, block, rescue, always, include
    index: int = 0
    skipping: bool = False
    # Set on an always frame entered because of a failure
    pending_failure: bool = False


class HostIterator:
    """
    Walks one host's task tree with an explicit frame stack.

    A failure unwinds frames up to the nearest enclosing block that has a
    rescue (or an always) section; a failure that escapes every block
    marks the iterator failed. An always section entered because of a
    failure re-raises that failure when it completes.
    """

    def __init__(self, nodes: List[TaskNode]):
        self.stack: List[_Frame] = [_Frame(list(nodes))]
        self.failed = False
        # Failures re-raised by an always section and caught by an outer rescue
        self.late_rescues = 0

    def next_node(self) -> Optional[Tuple[TaskNode, bool]]:
        """Return the next node and whether it is being skipped, or None when done."""
        while self.stack and not self.failed:
            frame = self.stack[-1]
            if frame.index < len(frame.nodes):
                node = frame.nodes[frame.index]
                frame.index += 1
                return node, frame.skipping
            if len(self.stack) == 1:
                return None
            self._complete(self.stack.pop())
        return None

    def enter_block(self, block: Block, skipping: bool = False) -> None:
        self.stack.append(_Frame(list(block.block), block, 'block', skipping=skipping))

    def insert(self, nodes: List[TaskNode]) -> None:
        """Run ``nodes`` next, inline (dynamic includes)."""
        if nodes:
            self.stack.append(_Frame(list(nodes), section='include', skipping=self.stack[-1].skipping))

    def _complete(self, frame: _Frame) -> None:
        if frame.section in ('block', 'rescue') and frame.block.always and not frame.skipping:
            self.stack.append(_Frame(list(frame.block.always), frame.block, 'always'))
        elif frame.section == 'always' and frame.pending_failure:
            if self.fail() == RESCUED:
                self.late_rescues += 1

    def fail(self) -> str:
        """
        Handle a failure at the current position.

        Returns:
            RESCUED if a rescue section is next, ALWAYS if only an always
            section stands between the failure and the host, else FAILED
        """
        while len(self.stack) > 1:
            frame = self.stack.pop()
            block = frame.block
            if frame.section == 'block' and block.rescue:
                self.stack.append(_Frame(list(block.rescue), block, 'rescue'))
                return RESCUED
            if frame.section in ('block', 'rescue') and block.always:
                self.stack.append(_Frame(list(block.always), block, 'always', pending_failure=True))
                return ALWAYS
        self.failed = True
        return FAILED

    def clear_failure(self) -> None:
        """Resume after the failing point (meta: clear_host_errors)."""
        self.failed = False


@dataclass
class HostState:
    """Runtime state of one host during a play."""

    host: Host
    overlay: Dict[str, Any]
    iterator: HostIterator
    failed: bool = False
    unreachable: bool = False
    ended: bool = False

    @property
    def name(self) -> str:
        return self.host.name

    @property
    def active(self) -> bool:
        return not (self.failed or self.unreachable or self.ended or self.iterator.failed)


@dataclass
class _PlayContext:
    play: Play
    graph: TaskGraph
    result: PlayResult
    queue: NotificationQueue
    states: Dict[str, HostState]
    batch: List[str] = field(default_factory=list)
    any_errors_fatal: bool = False
    aborted: bool = False
    run_once: Dict[int, 'asyncio.Future[TaskResult]'] = field(default_factory=dict)


class Scheduler:
    """
    Async scheduler for playbook execution.

    Uses asyncio with a semaphore to limit concurrency (like Ansible's forks).
    """

    def __init__(
        self,
        variables: VariableManager,
        invoker: ModuleInvoker,
        forks: int = 5,
        strategy: str = 'linear',
        task_timeout: Optional[float] = None,
        check_mode: bool = False,
        diff_mode: bool = False,
        gather_facts: bool = False,
        any_errors_fatal: bool = False,
        callback: Optional[CallbackBase] = None,
        sleep: Sleep = asyncio.sleep,
        templar: Optional[TemplateEngine] = None,
    ):
        """
        Initialize the scheduler.

        Args:
            variables: Variable engine backed by the run's scopes and fact cache
            invoker: Module invoker used for every task
            forks: Maximum number of concurrent task invocations
            strategy: Default strategy for plays that don't choose one
            task_timeout: Seconds before a task invocation counts as unreachable
            check_mode: Run-wide simulate-only flag passed to the invoker
            diff_mode: Run-wide flag asking modules to report before/after diffs
            gather_facts: Default for plays without ``gather_facts``
            any_errors_fatal: Default for plays without ``any_errors_fatal``
            callback: Receives run events for display
            sleep: Coroutine used for retry delays
        """
        self.variables = variables
        self.invoker = invoker
        self.forks = max(1, forks)
        self.strategy = strategy
        self.task_timeout = task_timeout
        self.check_mode = check_mode
        self.diff_mode = diff_mode
        self.gather_facts = gather_facts
        self.any_errors_fatal = any_errors_fatal
        self.callback = callback or CallbackBase()
        self.sleep = sleep
        self.templar = templar or get_template_engine()
        self._semaphore: Optional[asyncio.Semaphore] = None
        # Registered results and set_fact values, per host, for the whole run
        self.overlays: Dict[str, Dict[str, Any]] = {}
        # Set when max_fail_percentage or any_errors_fatal stops the run
        self.halted = False

    @property
    def fact_cache(self) -> FactCache:
        return self.variables.fact_cache

    @property
    def semaphore(self) -> asyncio.Semaphore:
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.forks)
        return self._semaphore

    async def run_playbook(
        self,
        graphs: List[TaskGraph],
        hosts_for: Callable[[Play], List[Host]],
        playbook_path: str,
    ) -> PlaybookResult:
        """
        Run built plays in order.

        Args:
            graphs: One TaskGraph per play
            hosts_for: Resolves the hosts a play targets (pattern + limit)
            playbook_path: Path to playbook (for result reporting)

        Returns:
            PlaybookResult with all execution results
        """
        result = PlaybookResult(playbook_path=playbook_path)

        for graph in graphs:
            play_result = await self.run_play(graph, hosts_for(graph.play))
            result.add_play_result(play_result)

            if self.halted:
                logger.info("Run halted after play %r", graph.play.name)
                break
            if play_result.all_hosts_failed:
                logger.info("All hosts failed in play %r, stopping", graph.play.name)
                break

        return result

    async def run_play(self, graph: TaskGraph, hosts: List[Host]) -> PlayResult:
        """Run one play across its target hosts, batch by batch."""
        play = graph.play
        play_result = PlayResult(play_name=play.name, hosts=[h.name for h in hosts])
        self.callback.play_start(play, play_result.hosts)
        logger.info("Play %r starting on %d host(s)", play.name, len(hosts))

        if not hosts:
            self.callback.play_end(play_result)
            return play_result

        batches = serial_batches(hosts, play.serial)
        queue = NotificationQueue(graph.handlers)
        ctx = _PlayContext(
            play=play,
            graph=graph,
            result=play_result,
            queue=queue,
            states={},
            any_errors_fatal=play.any_errors_fatal or self.any_errors_fatal,
        )

        for number, batch in enumerate(batches, 1):
            names = [h.name for h in batch]
            logger.info("Play %r batch %d/%d: %s", play.name, number, len(batches), ', '.join(names))
            self.callback.batch_start(names, number, len(batches))

            await self._run_batch(ctx, batch)

            if ctx.aborted:
                break
            if play.max_fail_percentage is not None:
                down = [n for n in names if ctx.states[n].failed or ctx.states[n].unreachable]
                percentage = 100.0 * len(down) / len(names)
                if percentage > float(play.max_fail_percentage):
                    logger.info(
                        "Batch %d failure rate %.1f%% exceeds max_fail_percentage %s",
                        number, percentage, play.max_fail_percentage,
                    )
                    ctx.aborted = True
                    break

        if ctx.aborted:
            play_result.aborted = True
            self.halted = True

        self.callback.play_end(play_result)
        logger.info("Play %r finished", play.name)
        return play_result

    async def _run_batch(self, ctx: _PlayContext, batch: List[Host]) -> None:
        ctx.batch = [h.name for h in batch]
        ctx.run_once = {}
        for host in batch:
            ctx.states[host.name] = HostState(
                host=host,
                overlay=self.overlays.setdefault(host.name, {}),
                iterator=HostIterator(ctx.graph.for_host(host.name)),
            )
        states = [ctx.states[h.name] for h in batch]

        gather = ctx.play.gather_facts if ctx.play.gather_facts is not None else self.gather_facts
        if gather:
            await self._gather_facts(ctx, states)

        strategy = ctx.play.strategy or self.strategy
        if strategy == 'free':
            await self._run_free(ctx, states)
        elif strategy == 'linear':
            await self._run_linear(ctx, states)
        else:
            raise BuildError(f"Unknown strategy: {strategy}")

        for state in states:
            if ctx.play.force_handlers and state.failed and not state.unreachable:
                await self._flush_handlers(ctx, state, force=True)
            ctx.queue.clear(state.name)

    async def _run_linear(self, ctx: _PlayContext, states: List[HostState]) -> None:
        """Lock-step: all hosts finish step N before any host starts step N+1."""
        while not ctx.aborted:
            steps = []
            for state in states:
                if not state.active:
                    continue
                item = await self._next_task(ctx, state)
                if item is not None:
                    steps.append((state, item))
            if not steps:
                break
            outcomes = await asyncio.gather(
                *(self._execute(ctx, state, task, skipping) for state, (task, skipping) in steps),
                return_exceptions=True,
            )
            for (state, (task, _)), outcome in zip(steps, outcomes):
                if isinstance(outcome, BaseException):
                    self._internal_error(ctx, state, task, outcome)

    async def _run_free(self, ctx: _PlayContext, states: List[HostState]) -> None:
        """Each host advances on its own."""

        async def host_loop(state: HostState) -> None:
            while state.active and not ctx.aborted:
                item = await self._next_task(ctx, state)
                if item is None:
                    return
                task, skipping = item
                try:
                    await self._execute(ctx, state, task, skipping)
                except Exception as e:
                    self._internal_error(ctx, state, task, e)

        await asyncio.gather(*(host_loop(state) for state in states))

    def _internal_error(self, ctx: _PlayContext, state: HostState, task: Task, error: BaseException) -> None:
        if isinstance(error, (asyncio.CancelledError, KeyboardInterrupt)):
            raise error
        logger.error("Unexpected error running %r on %s: %s", task.name, state.name, error)
        result = TaskResult(host=state.name, task_name=task.name, status=TaskStatus.FAILED,
                            msg=f"Internal error: {error}")
        self._record(ctx, state, task, result)

    # Walking the tree

    async def _next_task(self, ctx: _PlayContext, state: HostState) -> Optional[Tuple[Task, bool]]:
        """
        Advance a host to its next Task, entering blocks and expanding
        includes on the way.
        """
        while state.active:
            item = state.iterator.next_node()
            while state.iterator.late_rescues:
                state.iterator.late_rescues -= 1
                ctx.result.record_rescue(state.name)
            if item is None:
                if state.iterator.failed:
                    self._host_failed(ctx, state)
                return None

            node, skipping = item
            if isinstance(node, Block):
                self._enter_block(ctx, state, node, skipping)
            elif isinstance(node, Include):
                await self._include(ctx, state, node, skipping)
            else:
                return node, skipping
        return None

    def _enter_block(self, ctx: _PlayContext, state: HostState, block: Block, skipping: bool) -> None:
        if skipping:
            state.iterator.enter_block(block, skipping=True)
            return
        variables = self._variables(ctx, state, block)
        evaluation = self.templar.evaluate_condition(block.when, variables)
        if not evaluation.ok:
            self._fail_node(ctx, state, block.name or 'block', str(evaluation.error))
            return
        state.iterator.enter_block(block, skipping=not evaluation.value)

    async def _include(self, ctx: _PlayContext, state: HostState, include: Include, skipping: bool) -> None:
        name = include.name or f"include {include.target}"
        if skipping:
            self._record(ctx, state, None, TaskResult(
                host=state.name, task_name=name, status=TaskStatus.SKIPPED,
                msg="Conditional result was False"))
            return

        variables = self._variables(ctx, state, include)
        evaluation = self.templar.evaluate_condition(include.when, variables)
        if not evaluation.ok:
            self._fail_node(ctx, state, name, str(evaluation.error))
            return
        if not evaluation.value:
            self._record(ctx, state, None, TaskResult(
                host=state.name, task_name=name, status=TaskStatus.SKIPPED,
                msg="Conditional result was False"))
            return

        if include.loop is None:
            items: List[Any] = [None]
        else:
            loop_eval = self.templar.evaluate(include.loop, variables)
            if not loop_eval.ok:
                self._fail_node(ctx, state, name, str(loop_eval.error))
                return
            if not isinstance(loop_eval.value, list):
                self._fail_node(ctx, state, name, "evaluation error: loop requires a list")
                return
            items = loop_eval.value

        nodes: List[TaskNode] = []
        for item in items:
            extra = {} if include.loop is None else {include.loop_var: item}
            try:
                included, handlers = ctx.graph.expand_include(include, {**variables, **extra}, extra)
            except IncludeError as e:
                self._fail_node(ctx, state, name, str(e))
                return
            for handler in handlers:
                ctx.queue.register(handler)
            nodes.extend(included)
            self.callback.include_loaded(state.name, include.target)

        state.iterator.insert(nodes)

    # Running one task on one host

    async def _execute(self, ctx: _PlayContext, state: HostState, task: Task, skipping: bool) -> None:
        if skipping:
            self.callback.task_start(task)
            self._record(ctx, state, task, TaskResult(
                host=state.name, task_name=task.name, status=TaskStatus.SKIPPED,
                msg="Conditional result was False"))
            return

        if task.module == 'meta':
            await self._meta(ctx, state, task)
            return

        self.callback.task_start(task)
        if task.run_once:
            result = await self._run_once(ctx, state, task)
        else:
            result = await self.run_task(ctx, state, task)
        self._record(ctx, state, task, result)

    async def _run_once(self, ctx: _PlayContext, state: HostState, task: Task) -> TaskResult:
        """First host to arrive runs the task; the others reuse its result."""
        key = id(task)
        future = ctx.run_once.get(key)
        if future is None:
            future = asyncio.get_running_loop().create_future()
            ctx.run_once[key] = future
            try:
                result = await self.run_task(ctx, state, task)
            except BaseException as e:
                future.set_exception(e)
                raise
            future.set_result(result)
            return result
        shared = await asyncio.shield(future)
        return shared.evolve(host=state.name)

    async def run_task(
        self,
        ctx: _PlayContext,
        state: HostState,
        task: Task,
    ) -> TaskResult:
        """
        Evaluate and invoke one task for one host.

        Does not touch host state; the caller records the result.
        """
        async with self.semaphore:
            started = time.monotonic()
            variables = self._variables(ctx, state, task)
            if task.loop is None:
                result = await self._run_single(ctx, state, task, variables)
            else:
                result = await self._run_loop(ctx, state, task, variables)
            return result.evolve(elapsed=time.monotonic() - started)

    async def _run_single(
        self,
        ctx: _PlayContext,
        state: HostState,
        task: Task,
        variables: Dict[str, Any],
    ) -> TaskResult:
        evaluation = self.templar.evaluate_condition(task.when, variables)
        if not evaluation.ok:
            return self._failed(state, task, str(evaluation.error))
        if not evaluation.value:
            return TaskResult(host=state.name, task_name=task.name, status=TaskStatus.SKIPPED,
                              msg="Conditional result was False")
        return await self._attempts(ctx, state, task, variables)

    async def _run_loop(
        self,
        ctx: _PlayContext,
        state: HostState,
        task: Task,
        variables: Dict[str, Any],
    ) -> TaskResult:
        """Run the task once per loop item; each item is evaluated on its own."""
        evaluation = self.templar.evaluate(task.loop, variables)
        if not evaluation.ok:
            return self._failed(state, task, str(evaluation.error))
        items = evaluation.value
        if not isinstance(items, list):
            return self._failed(
                state, task,
                f"evaluation error: loop requires a list, got {type(items).__name__}",
            )

        item_results: List[TaskResult] = []
        for index, item in enumerate(items):
            item_vars = {**variables, task.loop_var: item, 'ansible_loop_var': task.loop_var}
            if task.loop_extended:
                item_vars['ansible_loop'] = {
                    'index': index + 1,
                    'index0': index,
                    'first': index == 0,
                    'last': index == len(items) - 1,
                    'length': len(items),
                }

            result = await self._run_single(ctx, state, task, item_vars)
            item_data = {**result.results, 'item': item, 'ansible_loop_var': task.loop_var}
            if task.loop_var != 'item':
                item_data[task.loop_var] = item
            item_results.append(result.evolve(results=item_data))

        return aggregate_loop(state.name, task.name, item_results)

    async def _attempts(
        self,
        ctx: _PlayContext,
        state: HostState,
        task: Task,
        variables: Dict[str, Any],
    ) -> TaskResult:
        """Invoke once, or until the ``until`` condition holds."""
        if task.until is None:
            return await self._invoke(ctx, state, task, variables)

        retries = task.retries if task.retries is not None else DEFAULT_RETRIES
        delay = task.delay if task.delay is not None else DEFAULT_DELAY
        max_attempts = 1 + max(0, retries)
        register = task.register or 'result'

        result = None
        for attempt in range(1, max_attempts + 1):
            result = (await self._invoke(ctx, state, task, variables)).evolve(attempts=attempt)
            if result.status == TaskStatus.UNREACHABLE:
                return result
            check = self.templar.evaluate_condition(
                task.until, {**variables, register: result.registered_value()})
            if not check.ok:
                return self._failed(state, task, str(check.error)).evolve(attempts=attempt)
            if check.value:
                return result
            if attempt < max_attempts:
                logger.debug("Retrying %r on %s (attempt %d/%d)", task.name, state.name, attempt, max_attempts)
                self.callback.task_retry(result, max_attempts - attempt)
                await self.sleep(delay)

        return result.evolve(
            status=TaskStatus.FAILED,
            msg=result.msg or f"Retry limit of {retries} reached",
        )

    async def _invoke(
        self,
        ctx: _PlayContext,
        state: HostState,
        task: Task,
        variables: Dict[str, Any],
    ) -> TaskResult:
        """Template the arguments and run the module once."""
        rendered = self.templar.template(task.args, variables)
        if not rendered.ok:
            return self._failed(state, task, str(rendered.error))

        invoke_vars = dict(variables)
        become = task.become if task.become is not None else ctx.play.become
        if become:
            invoke_vars['ansible_become'] = True
        if task.environment:
            environment = self.templar.template(task.environment, variables)
            if not environment.ok:
                return self._failed(state, task, str(environment.error))
            invoke_vars['hostplay_environment'] = environment.value

        timeout = task.timeout or self.task_timeout

        try:
            outcome = await asyncio.wait_for(
                self.invoker.invoke(
                    state.host, task.module, rendered.value, invoke_vars,
                    check_mode=self._check_mode(task), diff_mode=self._diff_mode(task),
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Task %r timed out on %s after %ss", task.name, state.name, timeout)
            return TaskResult(host=state.name, task_name=task.name, status=TaskStatus.UNREACHABLE,
                              msg=f"Task timed out after {timeout} seconds")
        except ConnectionError as e:
            return TaskResult(host=state.name, task_name=task.name, status=TaskStatus.UNREACHABLE,
                              msg=str(e))
        except Exception as e:
            logger.debug("Module %s raised on %s", task.module, state.name, exc_info=True)
            return self._failed(state, task, f"{type(e).__name__}: {e}")

        result = outcome.to_task_result(state.name, task.name)
        return self._apply_overrides(state, task, result, variables)

    def _apply_overrides(
        self,
        state: HostState,
        task: Task,
        result: TaskResult,
        variables: Dict[str, Any],
    ) -> TaskResult:
        """Apply changed_when / failed_when to the raw module result."""
        if result.status in (TaskStatus.UNREACHABLE, TaskStatus.SKIPPED):
            return result
        if task.changed_when is None and task.failed_when is None:
            return result

        scope = {**variables, task.register or 'result': result.registered_value()}

        if task.changed_when is not None:
            check = self.templar.evaluate_condition(task.changed_when, scope)
            if not check.ok:
                return self._failed(state, task, str(check.error))
            result = result.evolve(changed=bool(check.value))
            if result.status != TaskStatus.FAILED:
                result = result.evolve(status=TaskStatus.CHANGED if result.changed else TaskStatus.OK)
            scope[task.register or 'result'] = result.registered_value()

        if task.failed_when is not None:
            check = self.templar.evaluate_condition(task.failed_when, scope)
            if not check.ok:
                return self._failed(state, task, str(check.error))
            if check.value:
                result = result.evolve(status=TaskStatus.FAILED, msg=result.msg or "failed_when condition met")
            elif result.status == TaskStatus.FAILED:
                result = result.evolve(status=TaskStatus.CHANGED if result.changed else TaskStatus.OK)

        return result

    # Recording results

    def _record(
        self,
        ctx: _PlayContext,
        state: HostState,
        task: Optional[Task],
        result: TaskResult,
    ) -> None:
        """Apply a result to host state: stats, register, facts, notify, failure."""
        if task is not None and result.status == TaskStatus.FAILED and task.ignore_errors:
            result = result.evolve(ignored=True)

        ctx.result.add_result(result)
        self.callback.task_result(result)
        logger.debug(summary_line(result))

        if task is not None:
            if task.register:
                state.overlay[task.register] = result.registered_value()
            self._store_facts(state, task, result)
            if result.status == TaskStatus.CHANGED:
                for name in task.notify:
                    ctx.queue.notify(state.name, name)

        if result.status == TaskStatus.UNREACHABLE:
            self._host_unreachable(ctx, state)
        elif result.status == TaskStatus.FAILED and not result.ignored:
            outcome = state.iterator.fail()
            if outcome == RESCUED:
                ctx.result.record_rescue(state.name)
            elif outcome == FAILED:
                self._host_failed(ctx, state, task)

    def _store_facts(self, state: HostState, task: Task, result: TaskResult) -> None:
        for item in (result.loop_results or (result,)):
            facts = item.results.get('ansible_facts')
            if not facts or not item.ok:
                continue
            if task.module == 'set_fact':
                state.overlay.update(facts)
            else:
                self.fact_cache.update(state.name, facts)

    def _fail_node(self, ctx: _PlayContext, state: HostState, name: str, msg: str) -> None:
        self._record(ctx, state, None, TaskResult(
            host=state.name, task_name=name, status=TaskStatus.FAILED, msg=msg))

    def _host_failed(self, ctx: _PlayContext, state: HostState, task: Optional[Task] = None) -> None:
        if state.name not in ctx.result.failed_hosts:
            ctx.result.failed_hosts.append(state.name)
            logger.info("Host %s failed, removed from active hosts", state.name)
        state.failed = True
        fatal = ctx.any_errors_fatal or bool(task is not None and task.any_errors_fatal)
        if fatal and not ctx.aborted:
            logger.info("any_errors_fatal: aborting play %r", ctx.play.name)
            ctx.aborted = True

    def _host_unreachable(self, ctx: _PlayContext, state: HostState) -> None:
        if state.name not in ctx.result.unreachable_hosts:
            ctx.result.unreachable_hosts.append(state.name)
            logger.info("Host %s unreachable, removed from active hosts", state.name)
        state.unreachable = True

    @staticmethod
    def _failed(state: HostState, task: Task, msg: str) -> TaskResult:
        return TaskResult(host=state.name, task_name=task.name, status=TaskStatus.FAILED, msg=msg)

    def _check_mode(self, node: Union[Task, Block, Include]) -> bool:
        """Run-wide check mode unless the task overrides it."""
        if isinstance(node, Task) and node.check_mode is not None:
            return bool(node.check_mode)
        return self.check_mode

    def _diff_mode(self, node: Union[Task, Block, Include]) -> bool:
        if isinstance(node, Task) and node.diff is not None:
            return bool(node.diff)
        return self.diff_mode

    # Meta actions and handlers

    async def _meta(self, ctx: _PlayContext, state: HostState, task: Task) -> None:
        action = str(task.args.get('_raw_params', '')).strip()

        if task.when is not None:
            evaluation = self.templar.evaluate_condition(task.when, self._variables(ctx, state, task))
            if not evaluation.ok:
                self._fail_node(ctx, state, task.name, str(evaluation.error))
                return
            if not evaluation.value:
                return

        if action == 'flush_handlers':
            await self._flush_handlers(ctx, state)
        elif action == 'end_host':
            logger.info("Ending play for host %s", state.name)
            state.ended = True
        elif action == 'clear_host_errors':
            for other in ctx.states.values():
                if other.failed and not other.unreachable:
                    other.failed = False
                    other.iterator.clear_failure()
                    if other.name in ctx.result.failed_hosts:
                        ctx.result.failed_hosts.remove(other.name)
        elif action != 'noop':
            self._fail_node(ctx, state, task.name, f"Unknown meta action: {action}")

    async def _flush_handlers(self, ctx: _PlayContext, state: HostState, force: bool = False) -> None:
        async def execute(handler: Task) -> Optional[TaskResult]:
            if not force and not state.active:
                return None
            self.callback.task_start(handler, handler=True)
            result = await self.run_task(ctx, state, handler)
            self._record(ctx, state, handler, result)
            return result

        await ctx.queue.flush(state.name, execute)

    async def _gather_facts(self, ctx: _PlayContext, states: List[HostState]) -> None:
        setup = Task(name='Gathering Facts', module='setup')
        self.callback.task_start(setup)

        async def gather(state: HostState) -> None:
            result = await self.run_task(ctx, state, setup)
            self._record(ctx, state, setup, result)

        await asyncio.gather(*(gather(s) for s in states if s.active))

    def _variables(
        self,
        ctx: _PlayContext,
        state: HostState,
        node: Union[Task, Block, Include],
    ) -> Dict[str, Any]:
        batch = [n for n in ctx.batch if ctx.states[n].active]
        magic = {
            'play_hosts': batch,
            'ansible_play_batch': batch,
            'ansible_play_hosts_all': list(ctx.result.hosts),
            'ansible_check_mode': self._check_mode(node),
            'ansible_diff_mode': self._diff_mode(node),
        }
        return self.variables.resolve(state.name, node, ctx.play, state.overlay, magic)


def aggregate_loop(host: str, task_name: str, items: List[TaskResult]) -> TaskResult:
    """Combine per-item results into the task's result."""
    if not items:
        return TaskResult(host=host, task_name=task_name, status=TaskStatus.SKIPPED,
                          msg="No items in the list", loop_results=())

    statuses = [r.status for r in items]
    changed = any(r.changed for r in items)
    if TaskStatus.UNREACHABLE in statuses:
        status, msg = TaskStatus.UNREACHABLE, "One or more items were unreachable"
    elif TaskStatus.FAILED in statuses:
        status, msg = TaskStatus.FAILED, "One or more items failed"
    elif all(s == TaskStatus.SKIPPED for s in statuses):
        status, msg = TaskStatus.SKIPPED, "All items skipped"
    else:
        status = TaskStatus.CHANGED if changed else TaskStatus.OK
        msg = "All items completed"

    return TaskResult(
        host=host,
        task_name=task_name,
        status=status,
        changed=changed,
        msg=msg,
        loop_results=tuple(items),
    )


def serial_batches(hosts: List[Host], serial: Any) -> List[List[Host]]:
    """
    Split hosts into rolling batches.

    ``serial`` is an int, a percentage string ("30%"), or a list of those
    giving successive batch sizes (the last size repeats). Percentages are
    of the play's host count, rounded down, at least 1.

    Raises:
        BuildError: If a batch size is not a positive count or percentage
    """
    if serial is None or serial == 0 or serial == []:
        return [list(hosts)] if hosts else []

    sizes = [batch_size(s, len(hosts)) for s in ensure_list(serial)]
    batches: List[List[Host]] = []
    start = 0
    while start < len(hosts):
        size = sizes[min(len(batches), len(sizes) - 1)]
        batches.append(list(hosts[start:start + size]))
        start += size
    return batches
