"""
Node handler families.

One handler per canonical role. Each handler covers every node type of its
role and reads the sub-type where behaviour differs. Handlers never mutate the
envelope they receive; they return a HandlerOutput the executor folds into
the next envelope.
"""

import html
import json
import logging
import operator
import re
import zlib
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional

from flow_mcp_server.pipeline.ai_adapter import DEFAULT_TOPIC, extract_topic
from flow_mcp_server.pipeline.definition import NodeRole, NodeType
from flow_mcp_server.pipeline.envelope import (
    ContextEnvelope,
    extract_for_invocation,
    latest_output,
    utc_now,
)
from flow_mcp_server.pipeline.formatter import render_all
from flow_mcp_server.utils.errors import StorageError, ValidationError

logger = logging.getLogger(__name__)

TIER_FEATURES = {
    "starter": ["basic_templates", "standard_ai"],
    "pro": ["advanced_templates", "premium_ai", "custom_branding"],
    "enterprise": [
        "unlimited_templates",
        "enterprise_ai",
        "custom_integrations",
        "priority_support",
    ],
}

TIER_PRIORITIES = {"starter": "normal", "pro": "high", "enterprise": "highest"}

WORDS_PER_MINUTE = 200
SOCIAL_EXCERPT_LENGTH = 280
DEFAULT_WORD_COUNT_THRESHOLD = 75

IMPROVEMENT_SUGGESTIONS = {
    "ai_improvements": [
        "Consider adding more specific examples",
        "Strengthen the call-to-action",
        "Add relevant statistics for credibility",
    ],
    "seo_suggestions": [
        "Include target keywords in subheadings",
        "Optimize meta description length",
        "Add internal linking opportunities",
    ],
    "readability_suggestions": [
        "Break up longer paragraphs",
        "Use more transition words",
        "Add bullet points for key benefits",
    ],
}

DELIVERY_METHODS = {
    NodeType.OUTPUT_MASTER: "direct_download",
    NodeType.MULTI_FORMAT_EXPORTER: "direct_download",
    NodeType.AUDIO_EXPORTER: "direct_download",
    NodeType.IMAGE_EXPORTER: "direct_download",
    NodeType.SCHEDULER_AGGREGATOR: "scheduled",
    NodeType.CMS_PUBLISHER: "cms",
    NodeType.API_PUSHER: "api",
}


class HandlerOutput:
    """What a handler produced for one node."""

    def __init__(
        self,
        output_data: Dict[str, Any],
        metadata: Optional[Dict[str, Any]] = None,
        usage: Optional[Dict[str, Any]] = None,
        extensions: Optional[Dict[str, Any]] = None,
    ):
        self.output_data = output_data
        self.metadata = metadata or {}
        self.usage = usage
        self.extensions = extensions or {}


def node_label(node: Mapping[str, Any]) -> str:
    return node.get("data", {}).get("label") or node["type"]


def estimate_tokens(data: Any) -> int:
    """Rough token estimate: four characters per token."""
    text = json.dumps(data, default=str)
    return -(-len(text) // 4)


def find_generated_content(envelope: ContextEnvelope) -> Optional[Dict[str, Any]]:
    """The most recent generated content in the envelope, newest first."""
    outputs = [latest_output(envelope)]
    outputs.extend(reversed(list(envelope.continuity_data.accumulated_context.values())))
    for output in outputs:
        if not isinstance(output, Mapping):
            continue
        content = output.get("generated_content")
        if isinstance(content, Mapping) and content.get("content"):
            return dict(content)
    return None


def analyze_content(text: str, keywords: Any = None) -> Dict[str, Any]:
    words = text.split()
    word_count = len(words)
    analysis: Dict[str, Any] = {
        "word_count": word_count,
        "character_count": len(text),
        "reading_time_minutes": -(-word_count // WORDS_PER_MINUTE),
        "keyword_density": 0.0,
    }

    if isinstance(keywords, str):
        keywords = keywords.split(",")
    if keywords and word_count:
        lowered = text.lower()
        matches = 0
        for keyword in keywords:
            keyword = str(keyword).strip().lower()
            if keyword:
                matches += len(re.findall(re.escape(keyword), lowered))
        analysis["keyword_density"] = round(matches / word_count * 100, 2)
    return analysis


class NodeHandler(ABC):
    """Base class for the handler of one canonical role."""

    role: NodeRole

    @abstractmethod
    async def handle(
        self,
        node: Mapping[str, Any],
        node_type: NodeType,
        envelope: ContextEnvelope,
        run,
    ) -> HandlerOutput:
        """
        Process a node.

        Args:
            node: The node being executed
            node_type: The node's resolved type
            envelope: The envelope the node receives (read-only)
            run: Run context giving access to progress, adapter, store and settings

        Returns:
            HandlerOutput for the node
        """


class InputNodeHandler(NodeHandler):
    """Structures the raw user input. Never calls the AI adapter."""

    role = NodeRole.INPUT

    def _input_source(self, node_type: NodeType, data: Mapping[str, Any], user_input: Mapping[str, Any]) -> Dict[str, Any]:
        if node_type == NodeType.TEXT_PROMPT_INPUT:
            return {"kind": "text", "prompt": user_input.get("prompt") or user_input.get("text")}
        if node_type == NodeType.VOICE_INPUT:
            return {"kind": "voice", "transcript": user_input.get("transcript")}
        if node_type == NodeType.FILE_UPLOAD_INPUT:
            files = user_input.get("files") or []
            return {"kind": "files", "files": files, "file_count": len(files)}
        if node_type == NodeType.URL_SCRAPE_INPUT:
            return {"kind": "url", "url": user_input.get("url") or data.get("url")}
        if node_type == NodeType.TEMPLATE_SELECTOR:
            return {"kind": "template", "template": user_input.get("template") or data.get("template")}
        if node_type == NodeType.AI_SUGGESTION_ENGINE:
            return {"kind": "suggestions", "suggestions": list(data.get("suggestions", []))}
        return {"kind": "form"}

    def _validate(self, node: Mapping[str, Any], user_input: Mapping[str, Any]) -> Dict[str, Any]:
        fields = node.get("data", {}).get("inputFields", [])
        missing = [
            f["variable"]
            for f in fields
            if f.get("required")
            and f.get("variable")
            and (user_input.get(f["variable"]) is None or str(user_input.get(f["variable"])).strip() == "")
        ]
        if not missing:
            return {"status": "all_required_fields_completed", "missing_required_fields": [], "errors": []}

        # Missing fields are reported, not enforced
        error = ValidationError(
            f"Missing required fields: {', '.join(missing)}",
            node_id=node["id"],
            node_type=node["type"],
        )
        logger.warning(f"Node {node['id']}: {error.message}")
        return {
            "status": "missing_required_fields",
            "missing_required_fields": missing,
            "errors": [error.to_dict()],
        }

    async def handle(self, node, node_type, envelope, run):
        data = node.get("data", {})
        user_input = envelope.user_input
        tier = envelope.customer_context.tier
        validation = self._validate(node, user_input)

        output = {
            "node_type": node_type.value,
            "structured_input": dict(user_input),
            "customer_context": envelope.customer_context.model_dump(),
            "input_source": self._input_source(node_type, data, user_input),
            "validation_notes": validation,
            "processing_notes": {
                "customer_tier_features": TIER_FEATURES.get(tier, TIER_FEATURES["starter"]),
                "next_recommended_action": "process_with_ai",
            },
            "metadata": {
                "workflow_id": envelope.workflow_id,
                "processing_priority": TIER_PRIORITIES.get(tier, "normal"),
                "estimated_tokens": estimate_tokens(user_input),
            },
        }
        return HandlerOutput(
            output,
            metadata={
                "role": self.role.value,
                "fields_processed": len(user_input),
                "validation_status": validation["status"],
                "customer_tier": tier,
            },
        )


class ProcessNodeHandler(NodeHandler):
    """The only family that calls the AI adapter."""

    role = NodeRole.PROCESS

    def _title(self, node: Mapping[str, Any], user_input: Mapping[str, Any]) -> str:
        if user_input.get("title"):
            return str(user_input["title"])
        topic = extract_topic(user_input)
        if topic != DEFAULT_TOPIC:
            return topic
        return node_label(node)

    async def handle(self, node, node_type, envelope, run):
        data = node.get("data", {})
        invocation = extract_for_invocation(envelope)
        user_input = invocation["user_input"]

        await run.emit(node, "ai_thinking", within_node=0.5)
        result = await run.adapter.generate(node_type.value, user_input, data)
        await run.emit(
            node,
            "completed",
            tokens=result.tokens,
            cost=result.cost,
            provider=result.provider,
        )

        output = {
            "node_type": node_type.value,
            "generated_content": {
                "title": self._title(node, user_input),
                "content": result.content,
            },
            "ai_result": result.to_dict(),
            "content_analysis": analyze_content(result.content, user_input.get("keywords")),
        }
        return HandlerOutput(
            output,
            metadata={
                "role": self.role.value,
                "ai_enabled": True,
                "tokens": result.tokens,
                "cost": result.cost,
                "provider": result.provider,
                "model": result.model,
            },
            usage=result.usage(),
        )


def _lookup(data: Any, path: str) -> Any:
    """Resolve a dotted path; raises KeyError when any segment is absent."""
    current = data
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            raise KeyError(path)
    return current


def _numeric(compare: Callable[[float, float], bool]) -> Callable[[Any, Any], bool]:
    def evaluate(actual: Any, expected: Any) -> bool:
        try:
            return compare(float(actual), float(expected))
        except (TypeError, ValueError):
            return False

    return evaluate


def _contains(actual: Any, expected: Any) -> bool:
    if isinstance(actual, str):
        return str(expected).lower() in actual.lower()
    if isinstance(actual, (list, tuple, set, Mapping)):
        return expected in actual
    return False


CONDITION_OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "equals": lambda actual, expected: actual == expected,
    "not_equals": lambda actual, expected: actual != expected,
    "contains": _contains,
    "greater_than": _numeric(operator.gt),
    "greater_or_equal": _numeric(operator.ge),
    "less_than": _numeric(operator.lt),
    "less_or_equal": _numeric(operator.le),
}


def evaluate_rule(rule: Mapping[str, Any], previous_output: Any, user_input: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Evaluate one condition rule.

    Args:
        rule: {source, field, operator, value}; source is "previous" or "user_input"
        previous_output: Output of the node before the condition
        user_input: The run's user input

    Returns:
        The rule with the actual value and whether it was met
    """
    source = rule.get("source", "previous")
    op = rule.get("operator", "equals")
    field = rule.get("field", "")
    target = user_input if source == "user_input" else previous_output

    try:
        actual = _lookup(target, field) if field else target
        present = True
    except KeyError:
        actual = None
        present = False

    if op == "exists":
        met = present and actual is not None
    elif op in CONDITION_OPERATORS:
        met = present and CONDITION_OPERATORS[op](actual, rule.get("value"))
    else:
        logger.warning(f"Unknown condition operator '{op}', treating rule as not met")
        met = False

    return {
        "source": source,
        "field": field,
        "operator": op,
        "value": rule.get("value"),
        "actual_value": actual,
        "met": met,
    }


class ConditionNodeHandler(NodeHandler):
    """Evaluates rules and records a routing decision. Control flow is unchanged."""

    role = NodeRole.CONDITION

    def _rules(self, data: Mapping[str, Any]) -> List[Mapping[str, Any]]:
        if data.get("rules"):
            return list(data["rules"])
        if data.get("rule"):
            return [data["rule"]]
        threshold = data.get("threshold_value", DEFAULT_WORD_COUNT_THRESHOLD)
        return [
            {
                "source": "previous",
                "field": "content_analysis.word_count",
                "operator": "greater_or_equal",
                "value": threshold,
            }
        ]

    def _variant(self, node: Mapping[str, Any], envelope: ContextEnvelope, run) -> str:
        variants = list(node.get("data", {}).get("variants") or ["A", "B"])
        context = envelope.customer_context
        key = context.user_id or context.session_id or run.execution_id
        return variants[zlib.crc32(f"{key}:{node['id']}".encode("utf-8")) % len(variants)]

    async def handle(self, node, node_type, envelope, run):
        data = node.get("data", {})
        previous_output = latest_output(envelope)
        logic = str(data.get("logic", "all")).lower()

        evaluations = [
            evaluate_rule(rule, previous_output, envelope.user_input)
            for rule in self._rules(data)
        ]
        results = [e["met"] for e in evaluations]
        condition_met = any(results) if logic == "any" else all(results)
        next_action = "continue" if condition_met else "return_for_revision"

        output: Dict[str, Any] = {
            "node_type": node_type.value,
            "condition_evaluation": {
                "condition_type": data.get("condition_type", node_type.value),
                "logic": logic,
                "rules": evaluations,
                "condition_met": condition_met,
            },
            "routing_decision": {
                "next_action": next_action,
                "alternative_paths": [] if condition_met else ["regenerate_content", "manual_review"],
            },
        }
        metadata = {
            "role": self.role.value,
            "condition_met": condition_met,
            "routing_decision": next_action,
        }

        if node_type == NodeType.AB_TEST_ROUTER:
            variant = self._variant(node, envelope, run)
            output["routing_decision"]["variant"] = variant
            metadata["variant"] = variant

        logger.info(f"Condition {node['id']} evaluated to {condition_met} ({next_action})")
        return HandlerOutput(output, metadata=metadata)


def _content_html(content: Optional[Mapping[str, Any]]) -> str:
    return html.escape(str((content or {}).get("content") or "")).replace("\n", "<br>")


def render_previews(content: Optional[Mapping[str, Any]]) -> Dict[str, str]:
    body = _content_html(content)
    text = str((content or {}).get("content") or "")
    excerpt = text[:SOCIAL_EXCERPT_LENGTH]
    if len(text) > SOCIAL_EXCERPT_LENGTH:
        excerpt += "..."
    return {
        "desktop_view": f'<div style="max-width: 800px; margin: 0 auto;">{body}</div>',
        "mobile_view": f'<div style="max-width: 375px; margin: 0 auto;">{body}</div>',
        "email_view": f'<div style="max-width: 600px; font-family: Arial;">{body}</div>',
        "social_view": excerpt,
    }


class PreviewNodeHandler(NodeHandler):
    """Renders previews of the latest generated content."""

    role = NodeRole.PREVIEW

    async def handle(self, node, node_type, envelope, run):
        content = find_generated_content(envelope)
        if content is None:
            logger.warning(f"Preview node {node['id']} found no generated content")

        text = str((content or {}).get("content") or "")
        previous = latest_output(envelope)
        quality_met = False
        if isinstance(previous, Mapping):
            quality_met = bool(previous.get("condition_evaluation", {}).get("condition_met", False))

        output = {
            "node_type": node_type.value,
            "generated_content": content,
            "preview_content": {
                "title": (content or {}).get("title"),
                "word_count": len(text.split()),
                "preview_modes": render_previews(content),
            },
            "editing_suggestions": {k: list(v) for k, v in IMPROVEMENT_SUGGESTIONS.items()},
            "approval_status": {
                "auto_approved": False,
                "requires_review": True,
                "quality_threshold_met": quality_met,
            },
        }
        return HandlerOutput(
            output,
            metadata={
                "role": self.role.value,
                "preview_generated": content is not None,
                "content_length": len(text),
            },
        )


class OutputNodeHandler(NodeHandler):
    """Formats the final content, describes its delivery and persists it."""

    role = NodeRole.OUTPUT

    async def handle(self, node, node_type, envelope, run):
        data = node.get("data", {})
        content = find_generated_content(envelope)
        if content is None:
            logger.warning(f"Output node {node['id']} found no generated content")
            content = {"title": extract_topic(envelope.user_input), "content": ""}
        empty = not str(content.get("content") or "").strip()

        output_format = data.get("output_format") or data.get("format") or "html"
        customer_context = envelope.customer_context.model_dump()
        created = utc_now()
        expires = created + timedelta(hours=run.settings.output_ttl_hours)

        rendered = render_all(
            content,
            {
                "format": output_format,
                "include_metadata": data.get("include_metadata", True),
                "customer_context": customer_context,
                "filename_stem": data.get("filename_stem"),
                "generated_at": created.isoformat(),
            },
        )

        size_bytes = rendered["primary"]["size_bytes"] + sum(
            a["size_bytes"] for a in rendered["alternatives"]
        )
        delivery = {
            "method": data.get("delivery_method") or DELIVERY_METHODS[node_type],
            "format": output_format,
            "size_bytes": size_bytes,
            "download_ready": not empty,
            "empty_content": empty,
            "expires_at": expires.isoformat(),
            "persisted": False,
            "storage_error": None,
        }

        try:
            await run.store.save_output(
                run.execution_id,
                rendered,
                created.isoformat(),
                expires.isoformat(),
            )
            delivery["persisted"] = True
        except StorageError as e:
            logger.warning(f"Could not persist output of execution {run.execution_id}: {e.message}")
            delivery["storage_error"] = e.message

        text = str(content.get("content") or "")
        word_count = len(text.split())
        output = {
            "node_type": node_type.value,
            "execution_id": run.execution_id,
            "final_output": rendered,
            "delivery": delivery,
            "content_metadata": {
                "created_at": created.isoformat(),
                "word_count": word_count,
                "character_count": len(text),
                "estimated_reading_time_minutes": -(-word_count // WORDS_PER_MINUTE),
                "content_type": envelope.user_input.get("content_type", "general"),
                "target_audience": envelope.user_input.get("target_audience", "general"),
            },
        }
        return HandlerOutput(
            output,
            metadata={
                "role": self.role.value,
                "output_format": output_format,
                "delivery_method": delivery["method"],
                "size_bytes": size_bytes,
                "persisted": delivery["persisted"],
            },
        )


def default_handlers() -> Dict[NodeRole, NodeHandler]:
    return {
        NodeRole.INPUT: InputNodeHandler(),
        NodeRole.PROCESS: ProcessNodeHandler(),
        NodeRole.CONDITION: ConditionNodeHandler(),
        NodeRole.PREVIEW: PreviewNodeHandler(),
        NodeRole.OUTPUT: OutputNodeHandler(),
    }
