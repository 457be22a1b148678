"""Unit tests for the node handler families."""

import json

import pytest

from flow_mcp_server.pipeline.definition import NodeType
from flow_mcp_server.pipeline.engine import ExecutionRecord, RunContext
from flow_mcp_server.pipeline.envelope import create_initial, extend
from flow_mcp_server.pipeline.handlers import (
    ConditionNodeHandler,
    InputNodeHandler,
    OutputNodeHandler,
    PreviewNodeHandler,
    ProcessNodeHandler,
    analyze_content,
    evaluate_rule,
    find_generated_content,
)
from tests.fixtures.mock_providers import FailingStore
from tests.fixtures.workflow_templates import (
    condition_node,
    input_node,
    output_node,
    preview_node,
    process_node,
)


@pytest.fixture
def run(mock_adapter, store, settings):
    record = ExecutionRecord("exec-1", "wf-1", "Handler Test", total_nodes=4)
    return RunContext(record, mock_adapter, store, settings)


def seed(user_input=None, customer_context=None, node=None):
    node = node or input_node()
    return create_initial(node.get("data"), user_input or {"topic": "X"}, customer_context, "wf-1")


def with_generated(content="Y", title="X", word_count=None):
    envelope = extend(seed(), input_node(), {"structured_input": {"topic": "X"}})
    output = {
        "generated_content": {"title": title, "content": content},
        "content_analysis": {"word_count": word_count if word_count is not None else len(content.split())},
    }
    return extend(envelope, process_node(), output)


@pytest.mark.asyncio
async def test_input_handler_structures_input(run, mock_adapter):
    node = input_node()
    envelope = seed({"topic": "X", "tone": "warm"}, {"tier": "enterprise"})

    result = await InputNodeHandler().handle(node, NodeType.INPUT_MASTER, envelope, run)

    output = result.output_data
    assert output["structured_input"] == {"topic": "X", "tone": "warm"}
    assert output["validation_notes"]["status"] == "all_required_fields_completed"
    assert output["input_source"] == {"kind": "form"}
    assert "priority_support" in output["processing_notes"]["customer_tier_features"]
    assert output["metadata"]["processing_priority"] == "highest"
    assert output["metadata"]["estimated_tokens"] > 0
    assert result.metadata["fields_processed"] == 2
    mock_adapter.generate.assert_not_called()


@pytest.mark.asyncio
async def test_input_handler_records_missing_fields(run):
    node = input_node()
    envelope = seed({"tone": "warm"})

    result = await InputNodeHandler().handle(node, NodeType.INPUT_MASTER, envelope, run)

    notes = result.output_data["validation_notes"]
    assert notes["status"] == "missing_required_fields"
    assert notes["missing_required_fields"] == ["topic"]
    assert notes["errors"][0]["error_type"] == "ValidationError"
    assert notes["errors"][0]["node_id"] == "input"
    assert result.metadata["validation_status"] == "missing_required_fields"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "node_type,user_input,expected",
    [
        (NodeType.URL_SCRAPE_INPUT, {"url": "https://example.com"}, {"kind": "url", "url": "https://example.com"}),
        (NodeType.VOICE_INPUT, {"transcript": "hello"}, {"kind": "voice", "transcript": "hello"}),
        (NodeType.FILE_UPLOAD_INPUT, {"files": ["a.pdf", "b.txt"]}, {"kind": "files", "files": ["a.pdf", "b.txt"], "file_count": 2}),
        (NodeType.TEXT_PROMPT_INPUT, {"prompt": "write"}, {"kind": "text", "prompt": "write"}),
    ],
)
async def test_input_handler_sources(run, node_type, user_input, expected):
    node = input_node(node_type=node_type.value, inputFields=[])
    result = await InputNodeHandler().handle(node, node_type, seed(user_input, node=node), run)
    assert result.output_data["input_source"] == expected


@pytest.mark.asyncio
async def test_process_handler_calls_adapter_and_emits(run, mock_adapter):
    node = process_node(selectedModels=["openai:gpt-4o"])
    envelope = extend(seed({"topic": "X", "keywords": "y"}), input_node(), {})

    result = await ProcessNodeHandler().handle(node, NodeType.CONTENT_WRITER, envelope, run)

    mock_adapter.generate.assert_awaited_once_with(
        "contentWriter", {"topic": "X", "keywords": "y"}, node["data"]
    )
    output = result.output_data
    assert output["generated_content"] == {"title": "X", "content": "Y"}
    assert output["ai_result"]["tokens"] == 42
    assert output["content_analysis"]["word_count"] == 1
    assert output["content_analysis"]["keyword_density"] == 100.0
    assert result.usage == {"tokens": 42, "cost": 0.01, "provider": "openai", "model": "gpt-4o"}

    statuses = [e["status"] for e in run.record.events]
    assert statuses == ["ai_thinking", "completed"]
    completed = run.record.events[-1]
    assert completed["tokens"] == 42
    assert completed["cost"] == 0.01
    assert completed["provider"] == "openai"
    assert run.record.events[0]["progress"] == 12.5


@pytest.mark.asyncio
async def test_process_handler_title_falls_back_to_label(run):
    node = process_node(label="Blog Writer")
    envelope = seed({"notes": "n"})

    result = await ProcessNodeHandler().handle(node, NodeType.CONTENT_WRITER, envelope, run)

    assert result.output_data["generated_content"]["title"] == "Blog Writer"


@pytest.mark.asyncio
async def test_process_handler_adapter_cannot_change_user_input(run, mock_adapter):
    result_value = mock_adapter.generate.return_value

    async def mutating_generate(node_type, user_input, config):
        user_input["topic"] = "Overwritten"
        user_input.clear()
        return result_value

    mock_adapter.generate.side_effect = mutating_generate
    envelope = extend(seed({"topic": "X"}), input_node(), {})

    await ProcessNodeHandler().handle(process_node(), NodeType.CONTENT_WRITER, envelope, run)

    assert envelope.user_input == {"topic": "X"}
    assert envelope.continuity_data.accumulated_context["workflow-input"] == {"topic": "X"}


def test_analyze_content():
    analysis = analyze_content("one two three " * 100, "two, three")

    assert analysis["word_count"] == 300
    assert analysis["reading_time_minutes"] == 2
    assert analysis["keyword_density"] == pytest.approx(66.67)


@pytest.mark.parametrize(
    "rule,met",
    [
        ({"field": "content_analysis.word_count", "operator": "greater_than", "value": 2}, True),
        ({"field": "content_analysis.word_count", "operator": "less_or_equal", "value": 2}, False),
        ({"field": "generated_content.content", "operator": "contains", "value": "QUICK"}, True),
        ({"field": "generated_content.title", "operator": "equals", "value": "X"}, True),
        ({"field": "generated_content.title", "operator": "not_equals", "value": "X"}, False),
        ({"field": "generated_content.summary", "operator": "exists"}, False),
        ({"field": "generated_content.title", "operator": "exists"}, True),
        ({"field": "missing.path", "operator": "not_equals", "value": 1}, False),
        ({"source": "user_input", "field": "platform", "operator": "equals", "value": "linkedin"}, True),
        ({"field": "generated_content.title", "operator": "matches", "value": "X"}, False),
        ({"field": "generated_content.title", "operator": "greater_than", "value": 1}, False),
    ],
)
def test_evaluate_rule(rule, met):
    previous = {
        "generated_content": {"title": "X", "content": "the quick brown fox"},
        "content_analysis": {"word_count": 4},
    }
    evaluation = evaluate_rule(rule, previous, {"platform": "linkedin"})
    assert evaluation["met"] is met


@pytest.mark.asyncio
async def test_condition_handler_threshold_default(run):
    envelope = with_generated(word_count=10)

    passing = await ConditionNodeHandler().handle(
        condition_node(threshold_value=5), NodeType.CONDITION_MASTER, envelope, run
    )
    failing = await ConditionNodeHandler().handle(
        condition_node(threshold_value=50), NodeType.CONDITION_MASTER, envelope, run
    )

    assert passing.output_data["condition_evaluation"]["condition_met"] is True
    assert passing.output_data["routing_decision"]["next_action"] == "continue"
    assert failing.output_data["condition_evaluation"]["condition_met"] is False
    assert failing.output_data["routing_decision"]["next_action"] == "return_for_revision"
    assert failing.output_data["routing_decision"]["alternative_paths"] == ["regenerate_content", "manual_review"]
    assert failing.output_data["condition_evaluation"]["rules"][0]["actual_value"] == 10


@pytest.mark.asyncio
async def test_condition_handler_any_logic(run):
    node = condition_node(
        node_type="complianceCheck",
        logic="any",
        rules=[
            {"field": "generated_content.content", "operator": "contains", "value": "forbidden"},
            {"source": "user_input", "field": "topic", "operator": "equals", "value": "X"},
        ],
    )

    result = await ConditionNodeHandler().handle(node, NodeType.COMPLIANCE_CHECK, with_generated(), run)

    assert result.metadata["condition_met"] is True
    assert [r["met"] for r in result.output_data["condition_evaluation"]["rules"]] == [False, True]


@pytest.mark.asyncio
async def test_ab_test_router_is_deterministic(run):
    node = condition_node(node_id="ab", node_type="abTestRouter", rule={"operator": "exists"})
    envelope = extend(
        seed(customer_context={"user_id": "user-7"}), input_node(), {"a": 1}
    )

    first = await ConditionNodeHandler().handle(node, NodeType.AB_TEST_ROUTER, envelope, run)
    second = await ConditionNodeHandler().handle(node, NodeType.AB_TEST_ROUTER, envelope, run)

    variant = first.output_data["routing_decision"]["variant"]
    assert variant in ("A", "B")
    assert second.output_data["routing_decision"]["variant"] == variant
    assert first.metadata["variant"] == variant


@pytest.mark.asyncio
async def test_preview_handler_renders_views(run, mock_adapter):
    long_text = "word " * 100
    envelope = with_generated(content=long_text + "\n<b>end</b>")

    result = await PreviewNodeHandler().handle(preview_node(), NodeType.PREVIEW_MASTER, envelope, run)

    views = result.output_data["preview_content"]["preview_modes"]
    assert "max-width: 800px" in views["desktop_view"]
    assert "max-width: 375px" in views["mobile_view"]
    assert "max-width: 600px" in views["email_view"]
    assert "&lt;b&gt;end&lt;/b&gt;" in views["desktop_view"]
    assert "<br>" in views["desktop_view"]
    assert len(views["social_view"]) == 283
    assert views["social_view"].endswith("...")
    assert result.output_data["approval_status"]["requires_review"] is True
    assert result.output_data["editing_suggestions"]["seo_suggestions"]
    assert result.metadata["preview_generated"] is True
    mock_adapter.generate.assert_not_called()


@pytest.mark.asyncio
async def test_preview_handler_finds_content_behind_condition(run):
    envelope = extend(
        with_generated(content="body"),
        condition_node(),
        {"condition_evaluation": {"condition_met": True}},
    )

    result = await PreviewNodeHandler().handle(preview_node(), NodeType.PREVIEW_MASTER, envelope, run)

    assert result.output_data["generated_content"]["content"] == "body"
    assert result.output_data["approval_status"]["quality_threshold_met"] is True


def test_find_generated_content_none():
    assert find_generated_content(seed()) is None


@pytest.mark.asyncio
async def test_output_handler_renders_and_persists(run, store):
    envelope = with_generated(content="Line 1\nLine 2", title="My Post")
    node = output_node(output_format="markdown")

    result = await OutputNodeHandler().handle(node, NodeType.OUTPUT_MASTER, envelope, run)

    output = result.output_data
    primary = output["final_output"]["primary"]
    assert primary["format"] == "markdown"
    assert primary["filename"] == "my-post.md"
    assert "Line 1\nLine 2" in primary["content"]
    assert [a["format"] for a in output["final_output"]["alternatives"]] == ["html", "json", "txt"]

    delivery = output["delivery"]
    assert delivery["method"] == "direct_download"
    assert delivery["persisted"] is True
    assert delivery["storage_error"] is None
    assert delivery["size_bytes"] == primary["size_bytes"] + sum(
        a["size_bytes"] for a in output["final_output"]["alternatives"]
    )
    assert output["content_metadata"]["word_count"] == 4

    stored = await store.get_output("exec-1")
    assert stored["final_output"] == output["final_output"]
    assert stored["expires_at"] == delivery["expires_at"]


@pytest.mark.asyncio
async def test_output_handler_json_carries_customer_context(run):
    envelope = extend(
        extend(seed(customer_context={"tier": "pro"}), input_node(), {}),
        process_node(),
        {"generated_content": {"title": "T", "content": "C"}},
    )

    result = await OutputNodeHandler().handle(
        output_node(output_format="json"), NodeType.OUTPUT_MASTER, envelope, run
    )

    document = json.loads(result.output_data["final_output"]["primary"]["content"])
    assert document["content"] == "C"
    assert document["metadata"]["customer_context"]["tier"] == "pro"


@pytest.mark.asyncio
async def test_output_handler_tolerates_storage_failure(mock_adapter, settings):
    failing = FailingStore()
    run = RunContext(ExecutionRecord("exec-2", "wf-1", "Test", 3), mock_adapter, failing, settings)

    result = await OutputNodeHandler().handle(
        output_node(node_type="cmsPublisher"), NodeType.CMS_PUBLISHER, with_generated(), run
    )

    delivery = result.output_data["delivery"]
    assert failing.attempts == 1
    assert delivery["persisted"] is False
    assert "Database unavailable" in delivery["storage_error"]
    assert delivery["method"] == "cms"
    assert result.output_data["final_output"]["primary"]["content"]


@pytest.mark.asyncio
async def test_output_handler_flags_empty_content(run):
    envelope = extend(seed(), input_node(), {})

    result = await OutputNodeHandler().handle(output_node(), NodeType.OUTPUT_MASTER, envelope, run)

    delivery = result.output_data["delivery"]
    assert delivery["download_ready"] is False
    assert delivery["empty_content"] is True
    assert result.output_data["content_metadata"]["word_count"] == 0


@pytest.mark.asyncio
async def test_output_handler_marks_real_content_ready(run):
    result = await OutputNodeHandler().handle(output_node(), NodeType.OUTPUT_MASTER, with_generated(), run)

    delivery = result.output_data["delivery"]
    assert delivery["download_ready"] is True
    assert delivery["empty_content"] is False
