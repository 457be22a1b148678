"""Unit tests for the NodeDispatcher."""

from unittest.mock import AsyncMock

import pytest

from flow_mcp_server.pipeline.definition import NodeRole, NodeType
from flow_mcp_server.pipeline.dispatcher import NodeDispatcher, NodeResult
from flow_mcp_server.pipeline.engine import ExecutionRecord, RunContext
from flow_mcp_server.pipeline.envelope import create_initial
from flow_mcp_server.pipeline.handlers import (
    HandlerOutput,
    NodeHandler,
    OutputNodeHandler,
    ProcessNodeHandler,
)
from flow_mcp_server.utils.errors import DispatchError
from tests.fixtures.workflow_templates import input_node, output_node, process_node


@pytest.fixture
def run(mock_adapter, store, settings):
    return RunContext(ExecutionRecord("exec-1", "wf-1", "Dispatch Test", 3), mock_adapter, store, settings)


@pytest.fixture
def envelope():
    return create_initial({}, {"topic": "X"}, None, "wf-1")


@pytest.mark.parametrize(
    "type_name,handler_class",
    [
        ("contentWriter", ProcessNodeHandler),
        ("optimizationHub", ProcessNodeHandler),
        ("apiPusher", OutputNodeHandler),
    ],
)
def test_handler_for_uses_role(type_name, handler_class):
    dispatcher = NodeDispatcher()
    assert isinstance(dispatcher.handler_for(NodeType(type_name)), handler_class)


def test_every_role_has_a_handler():
    dispatcher = NodeDispatcher()
    assert set(dispatcher.handlers) == set(NodeRole)


def test_resolve_binds_unknown_type_to_node():
    dispatcher = NodeDispatcher()

    with pytest.raises(DispatchError) as exc_info:
        dispatcher.resolve({"id": "w1", "type": "unknownWidget"})

    error = exc_info.value
    assert error.node_id == "w1"
    assert error.node_type == "unknownWidget"
    assert error.message == "Workflow failed at node unknownWidget: Unknown node type: unknownWidget"


@pytest.mark.asyncio
async def test_dispatch_unknown_type_runs_no_handler(run, envelope):
    handler = AsyncMock(spec=NodeHandler)
    dispatcher = NodeDispatcher({role: handler for role in NodeRole})

    with pytest.raises(DispatchError):
        await dispatcher.dispatch({"id": "w1", "type": "unknownWidget"}, envelope, run)

    handler.handle.assert_not_called()


@pytest.mark.asyncio
async def test_dispatch_builds_node_result(run, envelope):
    node = input_node()

    result = await NodeDispatcher().dispatch(node, envelope, run)

    assert isinstance(result, NodeResult)
    assert result.node_id == "input"
    assert result.node_type == "inputMaster"
    assert result.metadata["node_type"] == "inputMaster"
    assert result.metadata["role"] == "input"
    assert result.input_data["user_input"] == {"topic": "X"}
    assert result.processing_time_ms >= 0
    assert result.usage is None
    assert result.timestamp


@pytest.mark.asyncio
async def test_dispatch_passes_usage_and_extensions(run, envelope):
    class StubHandler(NodeHandler):
        role = NodeRole.PROCESS

        async def handle(self, node, node_type, envelope, run):
            return HandlerOutput(
                {"value": 1},
                usage={"tokens": 3, "cost": 0.5},
                extensions={"trace": "abc"},
            )

    dispatcher = NodeDispatcher({NodeRole.PROCESS: StubHandler()})

    result = await dispatcher.dispatch(process_node(), envelope, run)

    assert result.output_data == {"value": 1}
    assert result.usage == {"tokens": 3, "cost": 0.5}
    assert result.extensions == {"trace": "abc"}


@pytest.mark.asyncio
async def test_node_result_to_dict_is_a_copy(run, envelope):
    result = await NodeDispatcher().dispatch(output_node(), envelope, run)

    data = result.to_dict()
    data["output_data"]["delivery"]["method"] = "changed"

    assert result.output_data["delivery"]["method"] == "direct_download"
    assert set(data) == {
        "node_id",
        "node_type",
        "input_data",
        "output_data",
        "metadata",
        "processing_time_ms",
        "timestamp",
    }
