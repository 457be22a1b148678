"""
Context utility functions for the workflow MCP server.

Helpers for talking to FastMCP contexts without letting a broken or missing
context affect a workflow run.
"""

import logging
from typing import Any, Dict

logger = logging.getLogger(__name__)


async def safe_context_call(ctx, method_name: str, *args, **kwargs):
    """Safely call a context method if it exists, otherwise log a warning."""
    if ctx is None:
        logger.debug(f"Context is None, can't call {method_name}")
        return None

    method = getattr(ctx, method_name, None)
    if method is None:
        logger.warning(f"Context has no attribute '{method_name}'")
        return None

    if not callable(method):
        logger.warning(f"Context attribute '{method_name}' is not callable")
        return None

    try:
        return await method(*args, **kwargs)
    except Exception as e:
        logger.warning(f"Error calling context.{method_name}: {str(e)}")
        return None


def make_progress_forwarder(ctx):
    """
    Build a progress callback that forwards engine events to an MCP context.

    Engine progress is a percentage; MCP progress is reported on a 0..1 scale.
    Node transitions are also sent as info messages.
    """

    async def forward(event: Dict[str, Any]):
        progress = float(event.get("progress", 0)) / 100.0
        await safe_context_call(ctx, "report_progress", progress)

        status = event.get("status")
        name = event.get("nodeName") or event.get("nodeId")
        if status == "error":
            await safe_context_call(
                ctx, "error", f"Node '{name}' failed: {event.get('error')}"
            )
        elif status in ("executing", "completed"):
            await safe_context_call(ctx, "info", f"Node '{name}' {status}")

    return forward
