#!/usr/bin/env python3
"""
Flow MCP Server - MCP server exposing the content workflow engine

Tools:
- execute_workflow: Run a workflow (node list plus edges) with user input
- get_execution_status: Get the execution record of a run
- cancel_execution: Stop a running workflow at the next node boundary
- list_executions: List known executions
- get_execution_output: Fetch the stored final output of a run
- save_workflow_template / list_workflow_templates / execute_workflow_from_template
- list_node_types: List the node types the engine can execute
"""

import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastmcp import Context, FastMCP

from flow_mcp_server.pipeline import (
    AIInvocationAdapter,
    WorkflowDefinition,
    WorkflowExecutionEngine,
    list_node_types as catalogue_node_types,
)
from flow_mcp_server.providers import HttpGenerationClient
from flow_mcp_server.storage import create_store
from flow_mcp_server.utils.config import Settings, load_settings
from flow_mcp_server.utils.context import make_progress_forwarder, safe_context_call
from flow_mcp_server.utils.errors import WorkflowError, WorkflowValidationError

settings = load_settings()

# Set up logging to stderr
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s",
    stream=sys.stderr,
)
logger = logging.getLogger(__name__)

CLEANUP_INTERVAL_SECONDS = 3600


class ServerState:
    """
    Process-wide state of the server: the engine, its collaborators and the
    saved workflow templates.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or Settings()
        self.workflow_templates: Dict[str, Dict[str, Any]] = {}
        self.engine: Optional[WorkflowExecutionEngine] = None
        self.client = None
        self.store = None
        self._cleanup_task = None

    def initialize(self):
        """Create the generation client, the store and the engine."""
        if self.engine is not None:
            return
        self.client = HttpGenerationClient(self.settings)
        self.store = create_store(self.settings)
        adapter = AIInvocationAdapter(self.client, self.settings)
        self.engine = WorkflowExecutionEngine(adapter, self.store, self.settings)
        logger.info(f"Workflow engine initialized with settings: {self.settings.to_dict()}")

    def require_engine(self) -> WorkflowExecutionEngine:
        if self.engine is None:
            self.initialize()
        return self.engine

    async def start_background_tasks(self):
        """Start the periodic cleanup task."""
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.create_task(self._periodic_cleanup())
            logger.info("Periodic cleanup task started.")
        else:
            logger.info("Periodic cleanup task is already running.")

    async def stop_background_tasks(self):
        """Stop the periodic cleanup task."""
        if self._cleanup_task and not self._cleanup_task.done():
            logger.info("Cancelling periodic cleanup task...")
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                logger.info("Periodic cleanup task was cancelled successfully.")
            finally:
                self._cleanup_task = None

    async def _periodic_cleanup(self) -> None:
        """Remove expired executions once per interval."""
        while True:
            await asyncio.sleep(CLEANUP_INTERVAL_SECONDS)
            try:
                if self.engine is not None:
                    removed = self.engine.cleanup_by_ttl()
                    logger.debug(f"Periodic cleanup removed {removed} executions")
            except Exception as e:
                logger.exception(f"Error in periodic cleanup: {str(e)}")

    async def close(self):
        """Stop background work and release HTTP clients."""
        await self.stop_background_tasks()
        if self.engine is not None:
            await self.engine.shutdown()
        if self.client is not None:
            await self.client.close()
        if self.store is not None:
            await self.store.close()


state = ServerState(settings)


@asynccontextmanager
async def lifespan(server):
    """Server startup and shutdown."""
    logger.info("MCP Server starting up...")
    state.initialize()
    await state.start_background_tasks()
    try:
        yield
    finally:
        logger.info("MCP Server shutting down...")
        await state.close()


mcp = FastMCP(
    name="Flow MCP Server",
    instructions=(
        "Runs AI content workflows: ordered lists of input, process, condition, "
        "preview and output nodes."
    ),
    lifespan=lifespan,
)


def _error(message: str, **extra: Any) -> Dict[str, Any]:
    return {"status": "error", "message": message, **extra}


@mcp.tool()
async def execute_workflow(
    workflow: Dict[str, Any],
    ctx: Context,
    user_input: Optional[Dict[str, Any]] = None,
    customer_context: Optional[Dict[str, Any]] = None,
    wait: bool = True,
) -> Dict[str, Any]:
    """
    Execute a workflow.

    Args:
        workflow: Workflow definition with "nodes" (executed in list order) and optional "edges"
        ctx: The FastMCP context for progress reporting
        user_input: Field values collected from the user
        customer_context: Tenant information (tier, industry, permissions, user_id, session_id)
        wait: Run to completion (True) or start in the background and return the execution id

    Returns:
        Dict with the execution record, or the execution id when not waiting
    """
    return await _run_workflow(workflow, ctx, user_input, customer_context, wait)


async def _run_workflow(
    workflow: Dict[str, Any],
    ctx: Context,
    user_input: Optional[Dict[str, Any]],
    customer_context: Optional[Dict[str, Any]],
    wait: bool,
) -> Dict[str, Any]:
    try:
        logger.debug(f"execute_workflow called with {len(workflow.get('nodes', []))} nodes")
        engine = state.require_engine()

        try:
            definition = WorkflowDefinition(workflow)
        except WorkflowValidationError as e:
            await safe_context_call(ctx, "error", e.message)
            return _error(e.message)

        if not wait:
            execution_id = await engine.start(
                definition, user_input, customer_context
            )
            logger.info(f"Started workflow execution: {execution_id}")
            return {
                "status": "success",
                "message": f"Workflow {definition.get_name()} started",
                "execution_id": execution_id,
            }

        try:
            record = await engine.run(
                definition,
                user_input,
                customer_context,
                on_progress=make_progress_forwarder(ctx),
            )
        except WorkflowError as e:
            await safe_context_call(ctx, "error", e.message)
            execution = e.record.to_dict(include_events=False) if e.record is not None else None
            return _error(e.message, execution=execution)

        await safe_context_call(ctx, "report_progress", 1.0)
        return {
            "status": "success",
            "message": f"Workflow {definition.get_name()} {record.status.value}",
            "execution_id": record.execution_id,
            "execution": record.to_dict(include_events=False),
        }
    except Exception as e:
        logger.exception(f"Error in execute_workflow: {str(e)}")
        await safe_context_call(ctx, "error", f"Error: {str(e)}")
        return _error(f"Error: {str(e)}")


@mcp.tool()
async def get_execution_status(execution_id: str, ctx: Context) -> Dict[str, Any]:
    """
    Get the status of a workflow execution.

    Args:
        execution_id: The ID of the execution
        ctx: The FastMCP context for progress reporting

    Returns:
        Dict with the execution record
    """
    try:
        logger.debug(f"get_execution_status called for execution_id={execution_id}")
        record = state.require_engine().get_execution(execution_id)
        if record is None:
            error_msg = f"Execution {execution_id} not found"
            logger.warning(error_msg)
            await safe_context_call(ctx, "error", error_msg)
            return _error(error_msg)

        await safe_context_call(ctx, "report_progress", 1.0)
        return {
            "status": "success",
            "message": "Execution status retrieved",
            "execution": record.to_dict(),
        }
    except Exception as e:
        logger.exception(f"Error in get_execution_status: {str(e)}")
        await safe_context_call(ctx, "error", f"Error: {str(e)}")
        return _error(f"Error: {str(e)}")


@mcp.tool()
async def cancel_execution(execution_id: str, ctx: Context) -> Dict[str, Any]:
    """
    Cancel a running execution.

    The node currently executing completes; no further nodes run.

    Args:
        execution_id: The ID of the execution
        ctx: The FastMCP context for progress reporting

    Returns:
        Dict with the cancellation result
    """
    try:
        engine = state.require_engine()
        record = engine.get_execution(execution_id)
        if record is None:
            error_msg = f"Execution {execution_id} not found"
            await safe_context_call(ctx, "error", error_msg)
            return _error(error_msg)

        if not engine.cancel(execution_id):
            return _error(
                f"Execution {execution_id} is already {record.status.value}",
                execution_status=record.status.value,
            )

        await safe_context_call(ctx, "report_progress", 1.0)
        return {
            "status": "success",
            "message": f"Stop requested for execution {execution_id}",
            "execution_id": execution_id,
        }
    except Exception as e:
        logger.exception(f"Error in cancel_execution: {str(e)}")
        await safe_context_call(ctx, "error", f"Error: {str(e)}")
        return _error(f"Error: {str(e)}")


@mcp.tool()
async def list_executions(ctx: Context, status: Optional[str] = None) -> Dict[str, Any]:
    """
    List workflow executions.

    Args:
        ctx: The FastMCP context for progress reporting
        status: Optional status filter (running, completed, failed, canceled)

    Returns:
        Dict with execution summaries keyed by execution id
    """
    try:
        records = state.require_engine().list_executions(status)
        executions = {record.execution_id: record.summary() for record in records}
        await safe_context_call(ctx, "report_progress", 1.0)
        return {
            "status": "success",
            "message": f"Found {len(executions)} executions",
            "execution_count": len(executions),
            "executions": executions,
        }
    except Exception as e:
        logger.exception(f"Error in list_executions: {str(e)}")
        await safe_context_call(ctx, "error", f"Error: {str(e)}")
        return _error(f"Error: {str(e)}")


@mcp.tool()
async def get_execution_output(execution_id: str, ctx: Context) -> Dict[str, Any]:
    """
    Fetch the stored final output of an execution.

    Args:
        execution_id: The ID of the execution
        ctx: The FastMCP context for progress reporting

    Returns:
        Dict with the stored artifact
    """
    try:
        state.require_engine()
        artifact = await state.engine.store.get_output(execution_id)
        if artifact is None:
            error_msg = f"No stored output for execution {execution_id}"
            await safe_context_call(ctx, "error", error_msg)
            return _error(error_msg)

        await safe_context_call(ctx, "report_progress", 1.0)
        return {
            "status": "success",
            "message": "Execution output retrieved",
            "output": artifact,
        }
    except WorkflowError as e:
        logger.warning(f"Could not fetch output for {execution_id}: {e.message}")
        await safe_context_call(ctx, "error", e.message)
        return _error(e.message)
    except Exception as e:
        logger.exception(f"Error in get_execution_output: {str(e)}")
        await safe_context_call(ctx, "error", f"Error: {str(e)}")
        return _error(f"Error: {str(e)}")


@mcp.tool()
async def save_workflow_template(
    template_id: str, workflow: Dict[str, Any], ctx: Context
) -> Dict[str, Any]:
    """
    Save a workflow definition as a template for reuse.

    Args:
        template_id: Unique identifier for the template
        workflow: The workflow definition
        ctx: The FastMCP context for progress reporting

    Returns:
        Dict with template information
    """
    try:
        logger.debug(f"save_workflow_template called with template_id={template_id}")
        try:
            definition = WorkflowDefinition(workflow)
        except WorkflowValidationError as e:
            await safe_context_call(ctx, "error", e.message)
            return _error(e.message)

        unknown = definition.get_unknown_node_types()
        state.workflow_templates[template_id] = workflow
        await safe_context_call(ctx, "report_progress", 1.0)

        result = {
            "status": "success",
            "message": f"Workflow template saved: {template_id}",
            "template_id": template_id,
        }
        if unknown:
            result["warnings"] = [f"Unknown node type: {t}" for t in unknown]
        return result
    except Exception as e:
        logger.exception(f"Error in save_workflow_template: {str(e)}")
        await safe_context_call(ctx, "error", f"Error: {str(e)}")
        return _error(f"Error: {str(e)}")


@mcp.tool()
async def list_workflow_templates(ctx: Context) -> Dict[str, Any]:
    """
    List all saved workflow templates.

    Args:
        ctx: The FastMCP context for progress reporting

    Returns:
        Dict with template information
    """
    try:
        templates = {}
        for template_id, workflow in state.workflow_templates.items():
            templates[template_id] = {
                "name": workflow.get("name", "Unnamed Workflow"),
                "description": workflow.get("description", ""),
                "node_count": len(workflow.get("nodes", [])),
                "node_types": [node.get("type") for node in workflow.get("nodes", [])],
            }

        await safe_context_call(ctx, "report_progress", 1.0)
        return {
            "status": "success",
            "message": f"Found {len(templates)} workflow templates",
            "templates": templates,
        }
    except Exception as e:
        logger.exception(f"Error in list_workflow_templates: {str(e)}")
        await safe_context_call(ctx, "error", f"Error: {str(e)}")
        return _error(f"Error: {str(e)}")


@mcp.tool()
async def execute_workflow_from_template(
    template_id: str,
    ctx: Context,
    user_input: Optional[Dict[str, Any]] = None,
    customer_context: Optional[Dict[str, Any]] = None,
    wait: bool = True,
) -> Dict[str, Any]:
    """
    Execute a workflow from a saved template.

    Args:
        template_id: The ID of the template to execute
        ctx: The FastMCP context for progress reporting
        user_input: Field values collected from the user
        customer_context: Tenant information
        wait: Run to completion or start in the background

    Returns:
        Dict with execution information
    """
    workflow = state.workflow_templates.get(template_id)
    if workflow is None:
        error_msg = f"Workflow template {template_id} not found"
        logger.warning(error_msg)
        await safe_context_call(ctx, "error", error_msg)
        return _error(error_msg)

    return await _run_workflow(workflow, ctx, user_input, customer_context, wait)


@mcp.tool()
async def list_node_types(ctx: Context) -> Dict[str, Any]:
    """
    List the node types the engine can execute, grouped by role.

    Args:
        ctx: The FastMCP context for progress reporting

    Returns:
        Dict with node types per role
    """
    node_types = catalogue_node_types()
    await safe_context_call(ctx, "report_progress", 1.0)
    return {
        "status": "success",
        "message": f"Found {sum(len(v) for v in node_types.values())} node types",
        "node_types": node_types,
    }


def main():
    """Initialize the engine and return the MCP server."""
    state.initialize()
    return mcp


def main_cli():
    """CLI entry point for running the server."""
    import argparse

    parser = argparse.ArgumentParser(description="Flow MCP Server")
    subparsers = parser.add_subparsers(dest="command", help="Sub-command help", required=True)

    server_parser = subparsers.add_parser("server", help="Run the MCP server")
    server_parser.add_argument(
        "--transport",
        choices=["stdio", "http"],
        default=settings.transport,
        help="Transport mode for the server (stdio or http)",
    )

    args = parser.parse_args()

    if args.command == "server":
        mcp_instance = main()
        mcp_instance.run(transport=args.transport)
    else:
        parser.print_help()


if __name__ == "__main__":
    main_cli()
