"""
Context envelope module.

The envelope is the record threaded through a workflow run. It carries the
original user input, the customer context and the output of every prior node.
Envelopes are frozen: each step produces a new value and never mutates the
previous one.
"""

import copy
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_serializer

from flow_mcp_server.pipeline.definition import WORKFLOW_INPUT_NODE_ID

logger = logging.getLogger(__name__)

ENVELOPE_SCHEMA_VERSION = 1

WORKFLOW_INPUT_NODE_TYPE = "workflowInput"
WORKFLOW_OUTPUT_NODE_ID = "workflow-output"
WORKFLOW_OUTPUT_NODE_TYPE = "workflowOutput"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_timestamp() -> str:
    return utc_now().isoformat()


class CustomerContext(BaseModel):
    """Tenant information supplied by the caller. Unknown keys are kept."""

    model_config = ConfigDict(frozen=True, extra="allow")

    tier: str = "starter"
    industry: str = "general"
    permissions: Tuple[str, ...] = ("basic",)
    user_id: Optional[str] = None
    session_id: Optional[str] = None


class PreviousNode(BaseModel):
    model_config = ConfigDict(frozen=True)

    node_id: str
    node_type: str
    output: Any = None
    timestamp: str


class ContinuityData(BaseModel):
    """Ordered history of prior nodes plus an id-keyed map of their outputs."""

    model_config = ConfigDict(frozen=True)

    previous_nodes: Tuple[PreviousNode, ...] = ()
    workflow_history: Tuple["ContextEnvelope", ...] = ()
    accumulated_context: Dict[str, Any] = Field(default_factory=dict)

    @field_serializer("workflow_history")
    def _flat_history(self, history, info):
        # Each entry already carries the history before it; dump it flat.
        return [
            entry.model_dump(mode=info.mode, exclude={"continuity_data"})
            for entry in history
        ]


class EnvelopeMetadata(BaseModel):
    model_config = ConfigDict(frozen=True, extra="allow")

    selected_variables: Tuple[str, ...] = ()
    required_fields: Tuple[str, ...] = ()
    missing_required_fields: Tuple[str, ...] = ()
    processing_step: int = 0
    node_label: Optional[str] = None
    tokens: int = 0
    cost: float = 0.0
    provider: Optional[str] = None
    model: Optional[str] = None


class WorkflowSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    start_time: str
    end_time: str
    duration_seconds: float
    total_nodes: int
    total_tokens: int
    total_cost: float
    success: bool = True


class ContextEnvelope(BaseModel):
    """
    Versioned context record passed from node to node.

    The core contract (customer_context, user_input, continuity_data) is
    typed. Node-specific payloads go in `extensions`.
    """

    model_config = ConfigDict(frozen=True)

    schema_version: int = ENVELOPE_SCHEMA_VERSION
    node_type: str
    timestamp: str
    workflow_id: str
    node_id: str
    customer_context: CustomerContext
    user_input: Dict[str, Any]
    current_node_output: Any = None
    continuity_data: ContinuityData = Field(default_factory=ContinuityData)
    metadata: EnvelopeMetadata = Field(default_factory=EnvelopeMetadata)
    extensions: Dict[str, Any] = Field(default_factory=dict)
    workflow_summary: Optional[WorkflowSummary] = None
    final_output: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


ContinuityData.model_rebuild()
ContextEnvelope.model_rebuild()


def _field_variables(input_fields: List[Dict[str, Any]]) -> Tuple[str, ...]:
    return tuple(f["variable"] for f in input_fields if f.get("variable"))


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and not value.strip():
        return True
    return False


def create_initial(
    node_config: Optional[Mapping[str, Any]],
    raw_user_input: Optional[Mapping[str, Any]],
    customer_context: Optional[Mapping[str, Any]],
    workflow_id: str,
) -> ContextEnvelope:
    """
    Create the seed envelope for a run.

    Required input fields declared in the node configuration are checked
    against the raw input. Missing ones are recorded in the metadata, never
    rejected.

    Args:
        node_config: The `data` of the input node (may be empty)
        raw_user_input: Field values collected from the user
        customer_context: Tenant information for the run
        workflow_id: Identifier of the workflow being run

    Returns:
        The seed ContextEnvelope
    """
    node_config = node_config or {}
    user_input = copy.deepcopy(dict(raw_user_input or {}))
    input_fields = list(node_config.get("inputFields", []))

    required = tuple(
        f["variable"] for f in input_fields if f.get("required") and f.get("variable")
    )
    missing = tuple(name for name in required if _is_missing(user_input.get(name)))
    if missing:
        logger.info(f"Workflow {workflow_id} started with missing required fields: {missing}")

    return ContextEnvelope(
        node_type=WORKFLOW_INPUT_NODE_TYPE,
        timestamp=utc_timestamp(),
        workflow_id=workflow_id,
        node_id=WORKFLOW_INPUT_NODE_ID,
        customer_context=CustomerContext(**dict(customer_context or {})),
        user_input=user_input,
        metadata=EnvelopeMetadata(
            selected_variables=_field_variables(input_fields),
            required_fields=required,
            missing_required_fields=missing,
            processing_step=0,
            node_label=node_config.get("label"),
        ),
    )


def _output_of(envelope: ContextEnvelope) -> Any:
    # The seed has no node output; its contribution is the user input.
    if envelope.node_id == WORKFLOW_INPUT_NODE_ID:
        return envelope.user_input
    return envelope.current_node_output


def _advance(
    previous: ContextEnvelope,
    node_id: str,
    node_type: str,
    produced_output: Any,
    metadata_updates: Dict[str, Any],
    extra: Dict[str, Any],
) -> ContextEnvelope:
    continuity = previous.continuity_data
    if previous.node_id in continuity.accumulated_context:
        raise ValueError(f"Node '{previous.node_id}' already present in accumulated context")

    previous_output = _output_of(previous)
    new_continuity = ContinuityData(
        previous_nodes=continuity.previous_nodes
        + (
            PreviousNode(
                node_id=previous.node_id,
                node_type=previous.node_type,
                output=previous_output,
                timestamp=previous.timestamp,
            ),
        ),
        workflow_history=continuity.workflow_history + (previous,),
        accumulated_context={
            **continuity.accumulated_context,
            previous.node_id: previous_output,
        },
    )

    metadata = previous.metadata.model_copy(
        update={
            "processing_step": previous.metadata.processing_step + 1,
            "tokens": 0,
            "cost": 0.0,
            "provider": None,
            "model": None,
            **metadata_updates,
        }
    )

    # model_copy keeps customer_context and user_input as the same objects
    return previous.model_copy(
        update={
            "node_type": node_type,
            "node_id": node_id,
            "timestamp": utc_timestamp(),
            "current_node_output": produced_output,
            "continuity_data": new_continuity,
            "metadata": metadata,
            "extensions": {},
            **extra,
        }
    )


def _usage_updates(usage: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    if not usage:
        return {}
    return {
        "tokens": int(usage.get("tokens") or 0),
        "cost": float(usage.get("cost") or 0.0),
        "provider": usage.get("provider"),
        "model": usage.get("model"),
    }


def extend(
    previous: ContextEnvelope,
    current_node: Mapping[str, Any],
    produced_output: Any,
    usage: Optional[Mapping[str, Any]] = None,
    extensions: Optional[Mapping[str, Any]] = None,
) -> ContextEnvelope:
    """
    Produce the envelope that follows `previous` once `current_node` ran.

    Args:
        previous: Envelope the node received
        current_node: The node that just completed
        produced_output: The node's output
        usage: Optional {tokens, cost, provider, model} of the node
        extensions: Optional opaque node-specific payload

    Returns:
        A new ContextEnvelope
    """
    updates = _usage_updates(usage)
    updates["node_label"] = current_node.get("data", {}).get("label")
    return _advance(
        previous,
        node_id=current_node["id"],
        node_type=current_node["type"],
        produced_output=produced_output,
        metadata_updates=updates,
        extra={"extensions": dict(extensions or {})},
    )


def finalize(previous: ContextEnvelope, final_output: Any) -> ContextEnvelope:
    """
    Produce the terminal envelope with a workflow summary.

    Token and cost totals are summed over every envelope in the history.
    """
    history = previous.continuity_data.workflow_history + (previous,)
    start_time = history[0].timestamp
    end = utc_now()
    duration = (end - datetime.fromisoformat(start_time)).total_seconds()

    summary = WorkflowSummary(
        start_time=start_time,
        end_time=end.isoformat(),
        duration_seconds=max(duration, 0.0),
        total_nodes=len(history),
        total_tokens=sum(e.metadata.tokens for e in history),
        total_cost=round(sum(e.metadata.cost for e in history), 6),
        success=True,
    )

    return _advance(
        previous,
        node_id=WORKFLOW_OUTPUT_NODE_ID,
        node_type=WORKFLOW_OUTPUT_NODE_TYPE,
        produced_output=final_output,
        metadata_updates={"node_label": None},
        extra={"workflow_summary": summary, "final_output": final_output},
    )


def extract_for_invocation(envelope: ContextEnvelope) -> Dict[str, Any]:
    """
    Projection of an envelope handed to the AI adapter.

    History bookkeeping (previous_nodes, workflow_history) is not exposed.
    The input and prior outputs are copies, so callers may modify them.
    """
    return {
        "user_input": copy.deepcopy(envelope.user_input),
        "customer_context": envelope.customer_context.model_dump(),
        "previous_context": copy.deepcopy(envelope.continuity_data.accumulated_context),
        "metadata": {
            "node_id": envelope.node_id,
            "node_type": envelope.node_type,
            "workflow_id": envelope.workflow_id,
            "processing_step": envelope.metadata.processing_step,
            "selected_variables": list(envelope.metadata.selected_variables),
            "missing_required_fields": list(envelope.metadata.missing_required_fields),
        },
    }


def latest_output(envelope: ContextEnvelope) -> Any:
    """The most recent node output, falling back to the user input for the seed."""
    return _output_of(envelope)
