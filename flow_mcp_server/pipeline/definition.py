"""
Workflow definition module.

Defines the closed catalogue of node types, the role each type plays in a
workflow, and validation of the node/edge documents produced by the editor.
"""

import logging
from enum import Enum
from typing import Any, Dict, List, Optional

import jsonschema

from flow_mcp_server.utils.errors import DispatchError, WorkflowValidationError

logger = logging.getLogger(__name__)

# Node id of the seed envelope. Workflow nodes may not use it.
WORKFLOW_INPUT_NODE_ID = "workflow-input"


class NodeRole(str, Enum):
    """Canonical roles every node type maps to."""

    INPUT = "input"
    PROCESS = "process"
    CONDITION = "condition"
    PREVIEW = "preview"
    OUTPUT = "output"


class NodeType(str, Enum):
    """Every node type the engine can execute."""

    # Input
    INPUT_MASTER = "inputMaster"
    TEXT_PROMPT_INPUT = "textPromptInput"
    VOICE_INPUT = "voiceInput"
    FILE_UPLOAD_INPUT = "fileUploadInput"
    URL_SCRAPE_INPUT = "urlScrapeInput"
    TEMPLATE_SELECTOR = "templateSelector"
    AI_SUGGESTION_ENGINE = "aiSuggestionEngine"

    # Process
    PROCESS_MASTER = "processMaster"
    CONTENT_WRITER = "contentWriter"
    RESEARCH_ENGINE = "researchEngine"
    IMAGE_GENERATOR = "imageGenerator"
    AUDIO_GENERATOR = "audioGenerator"
    TRANSCRIPTION_ENGINE = "transcriptionEngine"
    OPTIMIZATION_HUB = "optimizationHub"

    # Condition
    CONDITION_MASTER = "conditionMaster"
    APPROVAL_GATE = "approvalGate"
    PLATFORM_CONDITION = "platformCondition"
    AUDIENCE_FILTER = "audienceFilter"
    PERFORMANCE_RULE = "performanceRule"
    COMPLIANCE_CHECK = "complianceCheck"
    AB_TEST_ROUTER = "abTestRouter"

    # Preview
    PREVIEW_MASTER = "previewMaster"
    LIVE_PREVIEW_RENDERER = "livePreviewRenderer"
    MOBILE_DESKTOP_SIMULATOR = "mobileDesktopSimulator"
    VOICE_SAMPLE_PLAYER = "voiceSamplePlayer"
    VISUAL_MOCKUP_VIEWER = "visualMockupViewer"
    ENGAGEMENT_PREDICTOR = "engagementPredictor"
    EDIT_FEEDBACK_LOOP = "editFeedbackLoop"

    # Output
    OUTPUT_MASTER = "outputMaster"
    MULTI_FORMAT_EXPORTER = "multiFormatExporter"
    AUDIO_EXPORTER = "audioExporter"
    IMAGE_EXPORTER = "imageExporter"
    SCHEDULER_AGGREGATOR = "schedulerAggregator"
    CMS_PUBLISHER = "cmsPublisher"
    API_PUSHER = "apiPusher"


NODE_TYPE_ROLES: Dict[NodeType, NodeRole] = {
    NodeType.INPUT_MASTER: NodeRole.INPUT,
    NodeType.TEXT_PROMPT_INPUT: NodeRole.INPUT,
    NodeType.VOICE_INPUT: NodeRole.INPUT,
    NodeType.FILE_UPLOAD_INPUT: NodeRole.INPUT,
    NodeType.URL_SCRAPE_INPUT: NodeRole.INPUT,
    NodeType.TEMPLATE_SELECTOR: NodeRole.INPUT,
    NodeType.AI_SUGGESTION_ENGINE: NodeRole.INPUT,
    NodeType.PROCESS_MASTER: NodeRole.PROCESS,
    NodeType.CONTENT_WRITER: NodeRole.PROCESS,
    NodeType.RESEARCH_ENGINE: NodeRole.PROCESS,
    NodeType.IMAGE_GENERATOR: NodeRole.PROCESS,
    NodeType.AUDIO_GENERATOR: NodeRole.PROCESS,
    NodeType.TRANSCRIPTION_ENGINE: NodeRole.PROCESS,
    NodeType.OPTIMIZATION_HUB: NodeRole.PROCESS,
    NodeType.CONDITION_MASTER: NodeRole.CONDITION,
    NodeType.APPROVAL_GATE: NodeRole.CONDITION,
    NodeType.PLATFORM_CONDITION: NodeRole.CONDITION,
    NodeType.AUDIENCE_FILTER: NodeRole.CONDITION,
    NodeType.PERFORMANCE_RULE: NodeRole.CONDITION,
    NodeType.COMPLIANCE_CHECK: NodeRole.CONDITION,
    NodeType.AB_TEST_ROUTER: NodeRole.CONDITION,
    NodeType.PREVIEW_MASTER: NodeRole.PREVIEW,
    NodeType.LIVE_PREVIEW_RENDERER: NodeRole.PREVIEW,
    NodeType.MOBILE_DESKTOP_SIMULATOR: NodeRole.PREVIEW,
    NodeType.VOICE_SAMPLE_PLAYER: NodeRole.PREVIEW,
    NodeType.VISUAL_MOCKUP_VIEWER: NodeRole.PREVIEW,
    NodeType.ENGAGEMENT_PREDICTOR: NodeRole.PREVIEW,
    NodeType.EDIT_FEEDBACK_LOOP: NodeRole.PREVIEW,
    NodeType.OUTPUT_MASTER: NodeRole.OUTPUT,
    NodeType.MULTI_FORMAT_EXPORTER: NodeRole.OUTPUT,
    NodeType.AUDIO_EXPORTER: NodeRole.OUTPUT,
    NodeType.IMAGE_EXPORTER: NodeRole.OUTPUT,
    NodeType.SCHEDULER_AGGREGATOR: NodeRole.OUTPUT,
    NodeType.CMS_PUBLISHER: NodeRole.OUTPUT,
    NodeType.API_PUSHER: NodeRole.OUTPUT,
}


def resolve_node_type(type_name: Any) -> NodeType:
    """
    Resolve a node type identifier to its NodeType.

    Args:
        type_name: The node's "type" value

    Returns:
        The matching NodeType

    Raises:
        DispatchError: If the identifier is not a registered node type
    """
    try:
        return NodeType(type_name)
    except ValueError:
        raise DispatchError(f"Unknown node type: {type_name}") from None


def get_node_role(type_name: Any) -> NodeRole:
    """Get the canonical role for a node type identifier."""
    return NODE_TYPE_ROLES[resolve_node_type(type_name)]


def is_known_node_type(type_name: Any) -> bool:
    try:
        NodeType(type_name)
    except ValueError:
        return False
    return True


def list_node_types() -> Dict[str, List[str]]:
    """Node type identifiers grouped by role."""
    grouped: Dict[str, List[str]] = {role.value: [] for role in NodeRole}
    for node_type, role in NODE_TYPE_ROLES.items():
        grouped[role.value].append(node_type.value)
    return grouped


# Workflow definition schema
WORKFLOW_SCHEMA = {
    "type": "object",
    "properties": {
        "name": {"type": "string"},
        "description": {"type": "string"},
        "nodes": {
            "type": "array",
            "minItems": 1,
            "items": {
                "type": "object",
                "properties": {
                    "id": {"type": "string", "minLength": 1},
                    "type": {"type": "string", "minLength": 1},
                    "data": {
                        "type": "object",
                        "properties": {
                            "label": {"type": "string"},
                            "selectedModels": {
                                "type": "array",
                                "items": {"type": "string"},
                            },
                            "aiProvider": {"type": "string"},
                            "aiModel": {"type": "string"},
                            "temperature": {"type": "number"},
                            "maxTokens": {"type": "integer", "minimum": 1},
                            "systemPrompt": {"type": "string"},
                            "inputFields": {
                                "type": "array",
                                "items": {
                                    "type": "object",
                                    "properties": {
                                        "variable": {"type": "string"},
                                        "name": {"type": "string"},
                                        "type": {"type": "string"},
                                        "required": {"type": "boolean"},
                                        "options": {"type": "array"},
                                    },
                                    "required": ["variable"],
                                },
                            },
                        },
                    },
                    "position": {"type": "object"},
                },
                "required": ["id", "type"],
            },
        },
        "edges": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "id": {"type": "string"},
                    "source": {"type": "string"},
                    "target": {"type": "string"},
                },
                "required": ["source", "target"],
            },
        },
    },
    "required": ["nodes"],
}


class WorkflowDefinition:
    """
    A validated workflow: an ordered node list plus the editor's edges.

    Execution order is the order of the node list. Edges are kept for the
    editor and checked for dangling references, but never drive execution.
    """

    def __init__(self, definition: Dict[str, Any]):
        """
        Initialize a workflow definition.

        Args:
            definition: Dictionary representation of the workflow

        Raises:
            WorkflowValidationError: If the definition is invalid
        """
        self.validate_definition(definition)
        self._validate_references(definition)
        self.definition = definition

    @classmethod
    def from_nodes(
        cls, nodes: List[Dict[str, Any]], name: str = "Ad-hoc Workflow"
    ) -> "WorkflowDefinition":
        """Build a definition from a bare node list."""
        return cls({"name": name, "nodes": nodes})

    @staticmethod
    def validate_definition(definition: Dict[str, Any]):
        """
        Validate a workflow definition against the schema.

        Args:
            definition: Dictionary representation of the workflow

        Raises:
            WorkflowValidationError: If the definition is invalid
        """
        try:
            jsonschema.validate(definition, WORKFLOW_SCHEMA)
        except jsonschema.exceptions.ValidationError as e:
            logger.error(f"Invalid workflow definition: {e.message}")
            raise WorkflowValidationError(
                f"Invalid workflow definition: {e.message}"
            ) from e

    def _validate_references(self, definition: Dict[str, Any]):
        """
        Check node id uniqueness and that every edge points at a known node.

        Raises:
            WorkflowValidationError: On duplicate, reserved or dangling ids
        """
        seen = set()
        for node in definition["nodes"]:
            node_id = node["id"]
            if node_id == WORKFLOW_INPUT_NODE_ID:
                raise WorkflowValidationError(
                    f"Node id '{WORKFLOW_INPUT_NODE_ID}' is reserved"
                )
            if node_id in seen:
                raise WorkflowValidationError(f"Duplicate node id '{node_id}'")
            seen.add(node_id)

        for edge in definition.get("edges", []):
            for end in ("source", "target"):
                if edge[end] not in seen:
                    raise WorkflowValidationError(
                        f"Edge references non-existent {end} node '{edge[end]}'"
                    )

    def get_name(self) -> str:
        """Get the name of the workflow."""
        return self.definition.get("name", "Unnamed Workflow")

    def get_nodes(self) -> List[Dict[str, Any]]:
        """Nodes in execution order."""
        return list(self.definition["nodes"])

    def get_all_node_ids(self) -> List[str]:
        return [node["id"] for node in self.definition["nodes"]]

    def get_node_by_id(self, node_id: str) -> Optional[Dict[str, Any]]:
        """
        Get node definition by ID.

        Args:
            node_id: The ID of the node

        Returns:
            The node definition if found, None otherwise
        """
        for node in self.definition["nodes"]:
            if node["id"] == node_id:
                return node
        return None

    def get_edges(self) -> List[Dict[str, str]]:
        return list(self.definition.get("edges", []))

    def get_unknown_node_types(self) -> List[str]:
        """Type identifiers in this workflow the dispatcher does not know."""
        return [
            node["type"]
            for node in self.definition["nodes"]
            if not is_known_node_type(node["type"])
        ]

    def get_input_fields(self) -> List[Dict[str, Any]]:
        """Input field declarations of the first input-role node, if any."""
        for node in self.definition["nodes"]:
            if is_known_node_type(node["type"]) and get_node_role(node["type"]) == NodeRole.INPUT:
                return list(node.get("data", {}).get("inputFields", []))
        return []

    def to_dict(self) -> Dict[str, Any]:
        return self.definition
