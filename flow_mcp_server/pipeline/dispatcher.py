"""
Node dispatcher.

Routes each node to the handler of its canonical role through the closed
NodeType catalogue.
"""

import copy
import logging
import time
from typing import Any, Dict, Mapping, Optional

from flow_mcp_server.pipeline.definition import (
    NODE_TYPE_ROLES,
    NodeRole,
    NodeType,
    resolve_node_type,
)
from flow_mcp_server.pipeline.envelope import ContextEnvelope, extract_for_invocation, utc_timestamp
from flow_mcp_server.pipeline.handlers import NodeHandler, default_handlers
from flow_mcp_server.utils.errors import DispatchError

logger = logging.getLogger(__name__)


class NodeResult:
    """
    Result of one executed node. Not mutated after it is recorded.
    """

    def __init__(
        self,
        node_id: str,
        node_type: str,
        input_data: Dict[str, Any],
        output_data: Any,
        metadata: Dict[str, Any],
        processing_time_ms: float,
        usage: Optional[Dict[str, Any]] = None,
        extensions: Optional[Dict[str, Any]] = None,
    ):
        self.node_id = node_id
        self.node_type = node_type
        self.input_data = input_data
        self.output_data = output_data
        self.metadata = metadata
        self.processing_time_ms = processing_time_ms
        self.usage = usage
        self.extensions = extensions or {}
        self.timestamp = utc_timestamp()

    def to_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(
            {
                "node_id": self.node_id,
                "node_type": self.node_type,
                "input_data": self.input_data,
                "output_data": self.output_data,
                "metadata": self.metadata,
                "processing_time_ms": self.processing_time_ms,
                "timestamp": self.timestamp,
            }
        )


class NodeDispatcher:
    """
    Maps every NodeType to the handler of its role.

    Args:
        handlers: Optional role -> handler overrides
    """

    def __init__(self, handlers: Optional[Dict[NodeRole, NodeHandler]] = None):
        self.handlers = default_handlers()
        if handlers:
            self.handlers.update(handlers)

        missing = [role for role in NodeRole if role not in self.handlers]
        if missing:
            raise ValueError(f"No handler registered for roles: {missing}")

    def resolve(self, node: Mapping[str, Any]) -> NodeType:
        """
        Resolve a node's type.

        Raises:
            DispatchError: If the type is not registered, bound to the node
        """
        try:
            return resolve_node_type(node.get("type"))
        except DispatchError as e:
            raise e.bind(node.get("id"), node.get("type"))

    def handler_for(self, node_type: NodeType) -> NodeHandler:
        return self.handlers[NODE_TYPE_ROLES[node_type]]

    async def dispatch(self, node: Mapping[str, Any], envelope: ContextEnvelope, run) -> NodeResult:
        """
        Execute a node with its role handler.

        The type is resolved before the envelope is read, so an unknown type
        fails without any handler work.

        Args:
            node: The node to execute
            envelope: The envelope the node receives
            run: The run context

        Returns:
            NodeResult for the node

        Raises:
            DispatchError: If the node type is not registered
        """
        node_type = self.resolve(node)
        handler = self.handler_for(node_type)

        logger.debug(f"Dispatching node {node['id']} ({node_type.value}) to {type(handler).__name__}")
        start = time.perf_counter()
        output = await handler.handle(node, node_type, envelope, run)
        elapsed_ms = round((time.perf_counter() - start) * 1000, 3)

        return NodeResult(
            node_id=node["id"],
            node_type=node_type.value,
            input_data=extract_for_invocation(envelope),
            output_data=output.output_data,
            metadata={**output.metadata, "node_type": node_type.value},
            processing_time_ms=elapsed_ms,
            usage=output.usage,
            extensions=output.extensions,
        )
