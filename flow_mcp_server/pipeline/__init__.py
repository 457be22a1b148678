"""
Pipeline package for the workflow MCP server.

Contains the node catalogue, the context envelope, node handlers, the
dispatcher and the execution engine.
"""

from flow_mcp_server.pipeline.definition import (
    NodeRole,
    NodeType,
    WorkflowDefinition,
    get_node_role,
    list_node_types,
    resolve_node_type,
)
from flow_mcp_server.pipeline.envelope import (
    ContextEnvelope,
    create_initial,
    extend,
    extract_for_invocation,
    finalize,
)
from flow_mcp_server.pipeline.ai_adapter import AIInvocationAdapter, GenerationResult
from flow_mcp_server.pipeline.dispatcher import NodeDispatcher, NodeResult
from flow_mcp_server.pipeline.engine import (
    ExecutionRecord,
    ExecutionStatus,
    NodeOutcome,
    WorkflowExecutionEngine,
)
from flow_mcp_server.pipeline.formatter import RenderedArtifact, render_all
