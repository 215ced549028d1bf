"""
Workflow execution engine.

Runs a subset of a workflow document (a group's children, an explicit list
of node ids, or the whole graph) against the generation collaborators.

Key concepts:
- Validation happens before anything runs: an empty subset, executable nodes
  without prompts, or a subset with nothing executable all abort the run
  without invoking a single adapter.
- Ordering is a topological sort over the subset only; edges from outside the
  subset still feed inputs but never block scheduling.
- Execution is strictly sequential. Each node sees the outputs produced
  earlier in the same run, falling back to what upstream nodes have persisted.
- The first failing node stops the run (fail-fast, no rollback, no retries).
- One run at a time per executor; `cancel()` stops the in-flight run.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import time
from typing import Any, AsyncIterator, Callable, Coroutine

from storyboard.models.node_registry import is_executable_type
from storyboard.models.nodes import Node, get_display_name
from storyboard.models.workflow import (
    ExecutionEvent,
    ExecutionEventType,
    ExecutionOutput,
    ExecutionProgress,
    ExecutionSummary,
    NodeExecutionResult,
)
from storyboard.services.generation_client import GenerationClient
from storyboard.services.node_adapters import AdapterResult, get_adapter
from storyboard.services.workflow_document import WorkflowDocument
from storyboard.services.workflow_utils import (
    get_executable_nodes,
    get_group_children,
    get_node_inputs,
    get_relevant_edges,
    topological_order,
    validate_node_prompts,
)

logger = logging.getLogger(__name__)

MISSING_PROMPT_ERROR = "Missing prompt"
CANCELLED_ERROR = "Execution cancelled"

ProgressCallback = Callable[[ExecutionProgress], Any]
EventCallback = Callable[[ExecutionEvent], Any]


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class WorkflowExecutionError(Exception):
    """Base for every error that ends a run."""


class ExecutionValidationError(WorkflowExecutionError):
    """Preconditions failed; no node was executed."""


class NodeExecutionError(WorkflowExecutionError):
    """A node's collaborator call failed; the run stopped at that node."""

    def __init__(self, node_id: str, node_name: str, reason: str):
        self.node_id = node_id
        self.node_name = node_name
        self.reason = reason
        super().__init__(f"Node '{node_name}' failed: {reason}")


class ExecutionInProgressError(WorkflowExecutionError):
    """A second run was requested while one is still in flight."""


class ExecutionCancelledError(WorkflowExecutionError):
    """The run was cancelled before it finished."""


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def _dump_nodes(nodes: list[Node]) -> list[dict[str, Any]]:
    return [n.model_dump(mode="json", by_alias=True, exclude_none=True) for n in nodes]


class WorkflowExecutor:
    """
    Executes runs against one `WorkflowDocument`.

    Results are written back into the document as they happen, so observers
    subscribed to the document see status changes live.
    """

    def __init__(self, document: WorkflowDocument, client: GenerationClient):
        self.document = document
        self.client = client
        self._running = False
        self._cancel_event: asyncio.Event | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    def cancel(self) -> bool:
        """Request cancellation of the in-flight run. Returns False if idle."""
        if not self._running or self._cancel_event is None:
            return False
        logger.info("Cancellation requested")
        self._cancel_event.set()
        return True

    async def run_group(
        self,
        group_id: str,
        on_progress: ProgressCallback | None = None,
        on_event: EventCallback | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ExecutionSummary:
        """Run every executable child of a group."""

        def select() -> list[Node]:
            children = get_group_children(group_id, self.document.nodes)
            if not children:
                raise ExecutionValidationError("No nodes found in this group")
            return children

        return await self._guarded_run(
            select,
            "No executable nodes in this group (only source nodes)",
            on_progress,
            on_event,
            cancel_event,
        )

    async def run_nodes(
        self,
        node_ids: list[str] | None = None,
        on_progress: ProgressCallback | None = None,
        on_event: EventCallback | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ExecutionSummary:
        """Run the given nodes, or the whole graph when `node_ids` is None."""

        def select() -> list[Node]:
            nodes = self.document.nodes
            if node_ids is not None:
                wanted = set(node_ids)
                nodes = [n for n in nodes if n.id in wanted]
            if not nodes:
                raise ExecutionValidationError("No nodes to execute")
            return nodes

        return await self._guarded_run(
            select,
            "No executable nodes to run (only source nodes)",
            on_progress,
            on_event,
            cancel_event,
        )

    # ------------------------------------------------------------------

    async def _guarded_run(
        self,
        select: Callable[[], list[Node]],
        nothing_executable_message: str,
        on_progress: ProgressCallback | None,
        on_event: EventCallback | None,
        cancel_event: asyncio.Event | None,
    ) -> ExecutionSummary:
        if self._running:
            raise ExecutionInProgressError("A workflow run is already in progress")

        self._running = True
        self._cancel_event = cancel_event or asyncio.Event()
        emitter = _Emitter(on_progress, on_event)
        start_time = time.perf_counter()
        try:
            return await self._run(
                select(),
                nothing_executable_message,
                emitter,
                self._cancel_event,
                start_time,
            )
        except WorkflowExecutionError as e:
            logger.info("Workflow run stopped: %s", e)
            await emitter.event(
                "workflow_error",
                error=str(e),
                nodes=_dump_nodes(self.document.nodes),
            )
            raise
        finally:
            self._running = False
            self._cancel_event = None

    async def _run(
        self,
        subset: list[Node],
        nothing_executable_message: str,
        emitter: "_Emitter",
        cancel_event: asyncio.Event,
        start_time: float,
    ) -> ExecutionSummary:
        document = self.document
        subset_ids = [n.id for n in subset]
        relevant_edges = get_relevant_edges(subset_ids, document.edges)

        validation = validate_node_prompts(get_executable_nodes(subset))
        if not validation.valid:
            for node_id in validation.invalid_node_ids:
                document.update_node_data(node_id, status="error", error=MISSING_PROMPT_ERROR)
            raise ExecutionValidationError(
                f"Nodes without prompts: {', '.join(validation.invalid_nodes)}"
            )

        ordered, cyclic = topological_order(subset, relevant_edges)
        if cyclic:
            logger.warning("Running %d node(s) caught in a cycle in original order", len(cyclic))
        to_run = [n for n in ordered if is_executable_type(n.type)]
        if not to_run:
            raise ExecutionValidationError(nothing_executable_message)

        total = len(to_run)
        execution_order = [n.id for n in to_run]
        await emitter.progress(ExecutionProgress(completed=0, total=total))

        for node in to_run:
            document.update_node_data(node.id, status="idle", error=None)

        logger.info("Starting workflow run: %d node(s), order=%s", total, execution_order)
        await emitter.event(
            "workflow_start",
            execution_order=execution_order,
            progress=ExecutionProgress(completed=0, total=total),
        )

        outputs: dict[str, ExecutionOutput] = {}
        node_results: list[NodeExecutionResult] = []

        for index, planned in enumerate(to_run):
            if cancel_event.is_set():
                raise ExecutionCancelledError(CANCELLED_ERROR)

            node = document.get_node(planned.id)
            if node is None:
                name = get_display_name(planned)
                raise NodeExecutionError(planned.id, name, "Node no longer exists")

            name = get_display_name(node)
            progress = ExecutionProgress(completed=index, total=total, current_node=name)
            await emitter.progress(progress)

            inputs = get_node_inputs(node.id, relevant_edges, outputs, document.nodes)
            document.update_node_data(
                node.id,
                status="processing",
                connected_source_images=inputs.images,
                connected_source_texts=inputs.texts,
            )
            node = document.get_node(node.id) or node
            await emitter.event("node_start", node_id=node.id, node_name=name, progress=progress)
            logger.debug(
                "Executing node %s (%s) with %d image(s), %d text(s)",
                node.id,
                node.type,
                len(inputs.images),
                len(inputs.texts),
            )

            node_start = time.perf_counter()
            try:
                run_adapter = get_adapter(node.type)
                if run_adapter is None:
                    raise WorkflowExecutionError(f"No adapter for node type '{node.type}'")
                result = await _race_cancel(run_adapter(node, inputs, self.client), cancel_event)

            except (ExecutionCancelledError, asyncio.CancelledError):
                document.update_node_data(node.id, status="error", error=CANCELLED_ERROR)
                await emitter.event("node_error", node_id=node.id, node_name=name, error=CANCELLED_ERROR)
                raise

            except Exception as e:
                message = str(e) or type(e).__name__
                logger.exception("Node %s failed: %s", node.id, message)
                document.update_node_data(node.id, status="error", error=message)
                await emitter.progress(ExecutionProgress(completed=index + 1, total=total, current_node=name))
                await emitter.event("node_error", node_id=node.id, node_name=name, error=message)
                raise NodeExecutionError(node.id, name, message) from e

            self._apply(node.id, result)
            outputs[node.id] = result.output
            node_results.append(NodeExecutionResult(
                node_id=node.id,
                node_type=node.type,
                status="completed",
                output=result.output,
                execution_time_ms=_elapsed_ms(node_start),
            ))
            done = ExecutionProgress(completed=index + 1, total=total, current_node=name)
            await emitter.progress(done)
            await emitter.event(
                "node_complete",
                node_id=node.id,
                node_name=name,
                output=result.output,
                progress=done,
            )

        final = ExecutionProgress(completed=total, total=total)
        await emitter.progress(final)

        summary = ExecutionSummary(
            completed=total,
            total=total,
            outputs=outputs,
            node_results=node_results,
            total_execution_time_ms=_elapsed_ms(start_time),
        )
        logger.info("Workflow run completed: %d node(s) in %dms", total, summary.total_execution_time_ms)
        await emitter.event("workflow_complete", progress=final, nodes=_dump_nodes(document.nodes))
        return summary

    def _apply(self, node_id: str, result: AdapterResult) -> None:
        self.document.update_node_data(node_id, **result.patch, status="completed", error=None)


async def _race_cancel(coro: Coroutine[Any, Any, AdapterResult], cancel_event: asyncio.Event) -> AdapterResult:
    """Await `coro` unless `cancel_event` fires first, in which case the call is abandoned."""
    task = asyncio.ensure_future(coro)
    waiter = asyncio.ensure_future(cancel_event.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        waiter.cancel()

    if task in done:
        return task.result()

    task.cancel()
    await asyncio.gather(task, return_exceptions=True)
    raise ExecutionCancelledError(CANCELLED_ERROR)


class _Emitter:
    """Fans progress and events out to optional sync or async callbacks."""

    def __init__(self, on_progress: ProgressCallback | None, on_event: EventCallback | None):
        self._on_progress = on_progress
        self._on_event = on_event

    async def progress(self, progress: ExecutionProgress) -> None:
        if self._on_progress is not None:
            await _maybe_await(self._on_progress(progress))

    async def event(self, event: ExecutionEventType, **fields: Any) -> None:
        if self._on_event is not None:
            await _maybe_await(self._on_event(ExecutionEvent(event=event, **fields)))


async def _maybe_await(value: Any) -> None:
    if inspect.isawaitable(value):
        await value


# ---------------------------------------------------------------------------
# Streaming execution (SSE)
# ---------------------------------------------------------------------------


def format_sse(event: ExecutionEvent) -> str:
    payload = event.model_dump(mode="json", by_alias=True, exclude_none=True)
    return f"data: {json.dumps(payload)}\n\n"


async def execute_workflow_streaming(
    executor: WorkflowExecutor,
    group_id: str | None = None,
    node_ids: list[str] | None = None,
) -> AsyncIterator[str]:
    """
    Run a workflow and yield Server-Sent-Events lines as it progresses.

    Yields JSON events (camelCase keys):
    - {"event": "workflow_start", "executionOrder": [...], "progress": {...}}
    - {"event": "node_start", "nodeId": "...", "nodeName": "...", "progress": {...}}
    - {"event": "node_complete", "nodeId": "...", "output": {...}, "progress": {...}}
    - {"event": "node_error", "nodeId": "...", "error": "..."}
    - {"event": "workflow_complete", "progress": {...}, "nodes": [...]}
    - {"event": "workflow_error", "error": "...", "nodes": [...]}
    """
    event_queue: asyncio.Queue[ExecutionEvent | None] = asyncio.Queue()

    async def coordinator() -> None:
        try:
            if group_id is not None:
                await executor.run_group(group_id, on_event=event_queue.put)
            else:
                await executor.run_nodes(node_ids, on_event=event_queue.put)
        except WorkflowExecutionError:
            # already reported as a workflow_error event
            pass
        except Exception as e:
            logger.exception("Coordinator error: %s", e)
            await event_queue.put(ExecutionEvent(
                event="workflow_error",
                error=f"Internal error: {type(e).__name__}: {e}",
            ))
        finally:
            await event_queue.put(None)

    coordinator_task = asyncio.create_task(coordinator())

    try:
        while True:
            event = await event_queue.get()
            if event is None:
                break
            yield format_sse(event)
    finally:
        if not coordinator_task.done():
            executor.cancel()
            coordinator_task.cancel()
            await asyncio.gather(coordinator_task, return_exceptions=True)
