"""
Workflow execution engine module.

Runs an ordered node list one node at a time, threading the context envelope
through the dispatcher, recording results and errors on an ExecutionRecord and
emitting progress events.
"""

import asyncio
import inspect
import logging
import time
import uuid
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple, Union

from flow_mcp_server.pipeline.ai_adapter import AIInvocationAdapter
from flow_mcp_server.pipeline.definition import (
    NodeRole,
    WorkflowDefinition,
    get_node_role,
    is_known_node_type,
)
from flow_mcp_server.pipeline.dispatcher import NodeDispatcher, NodeResult
from flow_mcp_server.pipeline.envelope import (
    ContextEnvelope,
    create_initial,
    extend,
    finalize,
    utc_timestamp,
)
from flow_mcp_server.storage import ExecutionStore, InMemoryExecutionStore
from flow_mcp_server.utils.config import Settings
from flow_mcp_server.utils.errors import WorkflowError

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[Dict[str, Any]], Union[None, Awaitable[None]]]


class ExecutionStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"


FINISHED_STATUSES = (
    ExecutionStatus.COMPLETED,
    ExecutionStatus.FAILED,
    ExecutionStatus.CANCELED,
)


class ExecutionRecord:
    """
    Represents the state of one workflow execution.
    """

    def __init__(self, execution_id: str, workflow_id: str, workflow_name: str, total_nodes: int):
        self.execution_id = execution_id
        self.workflow_id = workflow_id
        self.workflow_name = workflow_name
        self.total_nodes = total_nodes
        self.start_time = utc_timestamp()
        self.end_time: Optional[str] = None
        self.status = ExecutionStatus.RUNNING
        self.results: List[NodeResult] = []
        self.errors: List[Dict[str, Any]] = []
        self.progress = 0.0
        self.current_node_index = 0
        self.final_output: Any = None
        self.workflow_summary: Optional[Dict[str, Any]] = None
        self.events: List[Dict[str, Any]] = []
        self.stop_requested = False

    @property
    def is_finished(self) -> bool:
        return self.status in FINISHED_STATUSES

    def finish(self, status: ExecutionStatus):
        self.status = status
        self.end_time = utc_timestamp()

    def add_error(self, error: WorkflowError):
        self.errors.append(
            {
                "node_id": error.node_id,
                "node_type": error.node_type,
                "error": error.message,
                "error_type": type(error).__name__,
                "timestamp": utc_timestamp(),
            }
        )

    def to_dict(self, include_events: bool = True) -> Dict[str, Any]:
        """
        Convert the execution record to a dictionary.

        Returns:
            Dict representation of the record
        """
        data = {
            "execution_id": self.execution_id,
            "workflow_id": self.workflow_id,
            "workflow_name": self.workflow_name,
            "status": self.status.value,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "progress": self.progress,
            "current_node_index": self.current_node_index,
            "total_nodes": self.total_nodes,
            "results": [result.to_dict() for result in self.results],
            "errors": list(self.errors),
            "final_output": self.final_output,
            "workflow_summary": self.workflow_summary,
            "stop_requested": self.stop_requested,
        }
        if include_events:
            data["events"] = list(self.events)
        return data

    def summary(self) -> Dict[str, Any]:
        """Short form for listings."""
        return {
            "execution_id": self.execution_id,
            "workflow_id": self.workflow_id,
            "workflow_name": self.workflow_name,
            "status": self.status.value,
            "progress": self.progress,
            "nodes_completed": len(self.results),
            "total_nodes": self.total_nodes,
            "start_time": self.start_time,
            "end_time": self.end_time,
        }


class NodeOutcome:
    """Result of executing one node: a result and next envelope, or an error."""

    def __init__(
        self,
        node: Mapping[str, Any],
        index: int,
        result: Optional[NodeResult] = None,
        envelope: Optional[ContextEnvelope] = None,
        error: Optional[WorkflowError] = None,
    ):
        self.node = node
        self.index = index
        self.result = result
        self.envelope = envelope
        self.error = error

    @property
    def ok(self) -> bool:
        return self.error is None


class RunContext:
    """
    Per-run collaborators handed to node handlers.

    Owns the progress callback for one execution; nothing here is shared
    between runs.
    """

    def __init__(
        self,
        record: ExecutionRecord,
        adapter: AIInvocationAdapter,
        store: ExecutionStore,
        settings: Settings,
        on_progress: Optional[ProgressCallback] = None,
    ):
        self.record = record
        self.adapter = adapter
        self.store = store
        self.settings = settings
        self.on_progress = on_progress
        self.index = 0

    @property
    def execution_id(self) -> str:
        return self.record.execution_id

    @property
    def total_nodes(self) -> int:
        return self.record.total_nodes

    def progress_at(self, position: float) -> float:
        """Overall progress (0..100) after `position` nodes."""
        if self.total_nodes == 0:
            return 100.0
        return round(position / self.total_nodes * 100, 2)

    async def emit(
        self,
        node: Mapping[str, Any],
        status: str,
        progress: Optional[float] = None,
        within_node: float = 1.0,
        **extra: Any,
    ):
        """
        Record and publish a progress event for a node.

        Without an explicit progress, the event sits `within_node` of the
        way through the current node.
        """
        if progress is None:
            progress = self.progress_at(self.index + within_node)

        event = {
            "executionId": self.execution_id,
            "nodeId": node.get("id"),
            "nodeName": node.get("data", {}).get("label") or node.get("type"),
            "status": status,
            "progress": progress,
            "nodeType": node.get("type"),
        }
        event.update({k: v for k, v in extra.items() if v is not None})

        self.record.events.append(event)
        self.record.progress = progress

        if self.on_progress is None:
            return
        try:
            result = self.on_progress(event)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning(f"Progress callback failed for execution {self.execution_id}: {str(e)}")


class WorkflowExecutionEngine:
    """
    Engine for executing workflows.

    Args:
        adapter: AI invocation adapter used by process nodes
        store: Store receiving final outputs (in-memory when omitted)
        settings: Runtime settings
        dispatcher: Node dispatcher (default handlers when omitted)
    """

    def __init__(
        self,
        adapter: AIInvocationAdapter,
        store: Optional[ExecutionStore] = None,
        settings: Optional[Settings] = None,
        dispatcher: Optional[NodeDispatcher] = None,
    ):
        self.adapter = adapter
        self.store = store or InMemoryExecutionStore()
        self.settings = settings or Settings()
        self.dispatcher = dispatcher or NodeDispatcher()

        self.executions: Dict[str, ExecutionRecord] = {}
        self.completion_timestamps: Dict[str, float] = {}  # execution_id -> completion time
        self._tasks: Dict[str, asyncio.Task] = {}

    def _coerce_definition(
        self, nodes: Union[WorkflowDefinition, Mapping[str, Any], List[Dict[str, Any]]]
    ) -> WorkflowDefinition:
        if isinstance(nodes, WorkflowDefinition):
            return nodes
        if isinstance(nodes, Mapping):
            return WorkflowDefinition(dict(nodes))
        return WorkflowDefinition.from_nodes(list(nodes))

    def _prepare(
        self,
        nodes,
        workflow_id: Optional[str],
        execution_id: Optional[str],
    ) -> Tuple[WorkflowDefinition, ExecutionRecord]:
        definition = self._coerce_definition(nodes)
        execution_id = execution_id or str(uuid.uuid4())
        if execution_id in self.executions:
            raise WorkflowError(f"Execution {execution_id} already exists")

        record = ExecutionRecord(
            execution_id=execution_id,
            workflow_id=workflow_id or str(uuid.uuid4()),
            workflow_name=definition.get_name(),
            total_nodes=len(definition.get_nodes()),
        )
        self.executions[execution_id] = record
        return definition, record

    async def run(
        self,
        nodes,
        initial_input: Optional[Mapping[str, Any]] = None,
        customer_context: Optional[Mapping[str, Any]] = None,
        on_progress: Optional[ProgressCallback] = None,
        workflow_id: Optional[str] = None,
        execution_id: Optional[str] = None,
    ) -> ExecutionRecord:
        """
        Execute a workflow to completion.

        Args:
            nodes: Ordered node list, workflow dict or WorkflowDefinition
            initial_input: Raw user input collected for the run
            customer_context: Tenant information for the run
            on_progress: Optional callback (sync or async) receiving progress events
            workflow_id: Optional workflow identifier
            execution_id: Optional execution identifier

        Returns:
            The ExecutionRecord of the run

        Raises:
            WorkflowValidationError: If the node list is malformed
            WorkflowError: The error of the failing node, with `record` attached
        """
        definition, record = self._prepare(nodes, workflow_id, execution_id)
        return await self._execute(definition, record, initial_input, customer_context, on_progress)

    async def start(
        self,
        nodes,
        initial_input: Optional[Mapping[str, Any]] = None,
        customer_context: Optional[Mapping[str, Any]] = None,
        on_progress: Optional[ProgressCallback] = None,
        workflow_id: Optional[str] = None,
        execution_id: Optional[str] = None,
    ) -> str:
        """
        Start a workflow in the background.

        Validation happens before the task is created, so a malformed node
        list raises here.

        Returns:
            The execution id
        """
        definition, record = self._prepare(nodes, workflow_id, execution_id)
        task = asyncio.create_task(
            self._run_in_background(definition, record, initial_input, customer_context, on_progress)
        )
        self._tasks[record.execution_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(record.execution_id, None))
        return record.execution_id

    async def _run_in_background(self, definition, record, initial_input, customer_context, on_progress):
        try:
            await self._execute(definition, record, initial_input, customer_context, on_progress)
        except WorkflowError as e:
            logger.info(f"Background execution {record.execution_id} failed: {e.message}")
        except Exception as e:
            logger.exception(f"Unexpected error in background execution {record.execution_id}: {str(e)}")

    async def wait(self, execution_id: str) -> Optional[ExecutionRecord]:
        """Wait for a background execution to finish."""
        task = self._tasks.get(execution_id)
        if task is not None:
            await asyncio.shield(task)
        return self.executions.get(execution_id)

    def _seed_envelope(
        self,
        definition: WorkflowDefinition,
        record: ExecutionRecord,
        initial_input: Optional[Mapping[str, Any]],
        customer_context: Optional[Mapping[str, Any]],
    ) -> ContextEnvelope:
        first = definition.get_nodes()[0]
        input_config = {}
        if is_known_node_type(first["type"]) and get_node_role(first["type"]) == NodeRole.INPUT:
            input_config = first.get("data", {})
        return create_initial(input_config, initial_input, customer_context, record.workflow_id)

    async def _execute_node(
        self,
        node: Mapping[str, Any],
        index: int,
        envelope: Optional[ContextEnvelope],
        run: RunContext,
        seed: Callable[[], ContextEnvelope],
    ) -> NodeOutcome:
        try:
            await run.emit(node, "executing", progress=run.progress_at(index))

            if envelope is None:
                # An unknown first node fails before the seed envelope exists
                self.dispatcher.resolve(node)
                envelope = seed()

            result = await self.dispatcher.dispatch(node, envelope, run)
            next_envelope = extend(
                envelope,
                node,
                result.output_data,
                usage=result.usage,
                extensions=result.extensions,
            )
            return NodeOutcome(node, index, result=result, envelope=next_envelope)
        except WorkflowError as e:
            return NodeOutcome(node, index, error=e)
        except Exception as e:
            logger.exception(f"Unexpected error in node {node.get('id')}: {str(e)}")
            error = WorkflowError(str(e))
            error.__cause__ = e
            return NodeOutcome(node, index, error=error)

    async def _fail(self, record: ExecutionRecord, outcome: NodeOutcome, run: RunContext) -> WorkflowError:
        """Turn an error outcome into the failed record."""
        node = outcome.node
        error = outcome.error.bind(node.get("id"), node.get("type"))
        error.record = record

        record.add_error(error)
        record.finish(ExecutionStatus.FAILED)
        logger.error(f"Execution {record.execution_id}: {error.message}")
        await run.emit(node, "error", progress=run.progress_at(outcome.index), error=error.message)
        return error

    async def _execute(
        self,
        definition: WorkflowDefinition,
        record: ExecutionRecord,
        initial_input: Optional[Mapping[str, Any]],
        customer_context: Optional[Mapping[str, Any]],
        on_progress: Optional[ProgressCallback],
    ) -> ExecutionRecord:
        nodes = definition.get_nodes()
        run = RunContext(record, self.adapter, self.store, self.settings, on_progress)
        logger.info(
            f"Starting execution {record.execution_id} of '{record.workflow_name}' ({len(nodes)} nodes)"
        )

        def seed() -> ContextEnvelope:
            return self._seed_envelope(definition, record, initial_input, customer_context)

        envelope: Optional[ContextEnvelope] = None
        last_result: Optional[NodeResult] = None
        try:
            for index, node in enumerate(nodes):
                if record.stop_requested:
                    record.finish(ExecutionStatus.CANCELED)
                    logger.info(
                        f"Execution {record.execution_id} canceled after {len(record.results)} nodes"
                    )
                    return record

                run.index = index
                record.current_node_index = index
                outcome = await self._execute_node(node, index, envelope, run, seed)
                if not outcome.ok:
                    raise await self._fail(record, outcome, run)

                envelope = outcome.envelope
                last_result = outcome.result
                record.results.append(outcome.result)
                logger.info(
                    f"Execution {record.execution_id}: node {node['id']} ({node['type']}) completed "
                    f"in {outcome.result.processing_time_ms}ms"
                )
                await run.emit(
                    node,
                    "completed",
                    progress=run.progress_at(index + 1),
                    output=outcome.result.output_data,
                )

            record.finish(ExecutionStatus.COMPLETED)
            last_node = nodes[-1]
            if get_node_role(last_node["type"]) == NodeRole.OUTPUT:
                final_output = last_result.output_data.get("final_output")
                final_envelope = finalize(envelope, final_output)
                record.final_output = final_output
                record.workflow_summary = final_envelope.workflow_summary.model_dump()

            logger.info(f"Execution {record.execution_id} completed")
            return record
        except asyncio.CancelledError:
            record.finish(ExecutionStatus.CANCELED)
            logger.info(f"Execution {record.execution_id} task was cancelled")
            raise
        finally:
            if record.is_finished:
                self.completion_timestamps[record.execution_id] = time.time()
                self._evict_old_executions()

    def cancel(self, execution_id: str) -> bool:
        """
        Request a running execution to stop at the next node boundary.

        Returns:
            True if the request was recorded, False if unknown or finished
        """
        record = self.executions.get(execution_id)
        if record is None or record.is_finished:
            return False
        record.stop_requested = True
        logger.info(f"Stop requested for execution {execution_id}")
        return True

    def get_execution(self, execution_id: str) -> Optional[ExecutionRecord]:
        return self.executions.get(execution_id)

    def list_executions(self, status: Optional[str] = None) -> List[ExecutionRecord]:
        records = list(self.executions.values())
        if status:
            records = [r for r in records if r.status.value == status]
        return records

    def _evict_old_executions(self):
        """
        Evict finished executions beyond the size limit, oldest first.
        """
        finished = len(self.completion_timestamps)
        if finished <= self.settings.max_executions:
            return

        num_to_remove = finished - self.settings.max_executions
        oldest = sorted(self.completion_timestamps.items(), key=lambda x: x[1])
        for execution_id, _ in oldest[:num_to_remove]:
            self.executions.pop(execution_id, None)
            self.completion_timestamps.pop(execution_id, None)
            logger.debug(f"Evicted old execution {execution_id}")

    def cleanup_by_ttl(self, now: Optional[float] = None) -> int:
        """
        Remove finished executions older than the configured TTL.

        Returns:
            Number of executions removed
        """
        now = time.time() if now is None else now
        ttl_seconds = self.settings.execution_ttl_hours * 3600
        expired = [
            execution_id
            for execution_id, finished_at in self.completion_timestamps.items()
            if (now - finished_at) > ttl_seconds
        ]
        for execution_id in expired:
            self.executions.pop(execution_id, None)
            self.completion_timestamps.pop(execution_id, None)
            logger.debug(f"Cleaned up execution {execution_id} due to TTL expiration")
        return len(expired)

    async def shutdown(self):
        """Cancel background executions still in flight."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
