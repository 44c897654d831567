"""
Tests for workflow definitions and static validation.
"""

import pytest

from agentgraph.errors import ValidationFailure
from agentgraph.graph.definition import (
    EdgeDefinition,
    NodeDefinition,
    NodeType,
    WorkflowDefinition,
    validate,
)
from agentgraph.graph.node_config import (
    AgentNodeConfig,
    CodeNodeConfig,
    HttpNodeConfig,
    OutputNodeConfig,
    parse_node_config,
)


def linear_workflow() -> WorkflowDefinition:
    return WorkflowDefinition(
        id="wf-1",
        name="Linear",
        nodes=[
            NodeDefinition(id="in", type="input", is_start=True),
            NodeDefinition(id="agent", type="agent"),
            NodeDefinition(id="out", type="output", is_end=True),
        ],
        edges=[
            EdgeDefinition(id="e1", source="in", target="agent"),
            EdgeDefinition(id="e2", source="agent", target="out"),
        ],
    )


def test_valid_definition_has_no_errors():
    result = validate(linear_workflow())

    assert result.valid is True
    assert result.errors == []
    assert result.error == ""


def test_edge_to_unknown_node_is_invalid():
    definition = linear_workflow()
    definition.edges.append(EdgeDefinition(id="e-bad", source="out", target="ghost"))

    result = validate(definition)

    assert result.valid is False
    assert len(result.errors) == 1
    assert "e-bad" in result.errors[0]
    assert "ghost" in result.errors[0]


def test_duplicate_node_ids_and_empty_name():
    definition = linear_workflow()
    definition.name = "  "
    definition.nodes.append(NodeDefinition(id="agent", type="code"))

    result = validate(definition)

    assert result.valid is False
    assert result.errors[0] == "Workflow name must not be empty"
    assert "Duplicate node ids: agent" in result.errors[1]
    assert result.error == "; ".join(result.errors)


def test_unreachable_node_is_a_warning_not_an_error():
    definition = linear_workflow()
    definition.nodes.append(NodeDefinition(id="island", type="code"))

    result = validate(definition)

    assert result.valid is True
    assert any("island" in warning for warning in result.warnings)


def test_cycle_is_reported_as_a_warning():
    definition = WorkflowDefinition(
        id="wf-3",
        name="Loopy",
        nodes=[
            NodeDefinition(id="a", type="input"),
            NodeDefinition(id="b", type="code"),
            NodeDefinition(id="c", type="code"),
            NodeDefinition(id="d", type="output"),
        ],
        edges=[
            EdgeDefinition(id="e1", source="a", target="b"),
            EdgeDefinition(id="e2", source="b", target="c"),
            EdgeDefinition(id="e3", source="c", target="b"),
            EdgeDefinition(id="e4", source="c", target="d"),
        ],
    )

    result = validate(definition)

    assert result.valid is True
    cycle_warnings = [warning for warning in result.warnings if "cycle" in warning]
    assert len(cycle_warnings) == 1
    assert cycle_warnings[0].endswith("b, c, d")
    assert not any("cycle" in warning for warning in validate(linear_workflow()).warnings)



def test_condition_edges_without_handle_warn():
    definition = WorkflowDefinition(
        id="wf-2",
        name="Branchy",
        nodes=[
            NodeDefinition(id="cond", type="condition"),
            NodeDefinition(id="a", type="output"),
        ],
        edges=[EdgeDefinition(id="e1", source="cond", target="a")],
    )

    result = validate(definition)

    assert result.valid is True
    assert any("e1" in warning for warning in result.warnings)


def test_validation_failure_message_joins_errors():
    definition = linear_workflow()
    definition.edges.append(EdgeDefinition(id="e-bad", source="nope", target="out"))

    error = ValidationFailure(validate(definition))

    assert str(error).startswith("Invalid workflow definition:")
    assert "e-bad" in str(error)


# ---- Derived queries ----


def test_start_node_falls_back_to_first_node():
    definition = linear_workflow()
    definition.nodes[0].is_start = False

    assert definition.start_node().id == "in"
    assert [node.id for node in definition.end_nodes()] == ["out"]
    assert [edge.id for edge in definition.input_edges("agent")] == ["e1"]
    assert [edge.id for edge in definition.output_edges("agent")] == ["e2"]
    assert [node.id for node in definition.sink_nodes()] == ["out"]
    assert definition.reachable_from("agent") == {"agent", "out"}


def test_empty_definition_has_no_start():
    definition = WorkflowDefinition(id="empty", name="Empty", nodes=None, edges=None)

    assert definition.nodes == []
    assert definition.start_node() is None
    assert validate(definition).valid is True


# ---- Editor JSON ----


def test_camel_case_json_loads():
    definition = WorkflowDefinition.model_validate(
        {
            "id": "wf-json",
            "name": "From editor",
            "nodes": [
                {"id": "in", "type": "INPUT", "isStart": True, "position": {"x": 10, "y": 20}},
                {
                    "id": "check",
                    "type": "condition",
                    "config": {"condition": "{{input.n}} > 2"},
                },
                {"id": "out", "type": "output", "isEnd": True, "config": None},
            ],
            "edges": [
                {"id": "e1", "source": "in", "target": "check"},
                {"id": "e2", "source": "check", "target": "out", "sourceHandle": "true"},
            ],
            "settings": {"context": {"tenant": "acme"}},
        }
    )

    assert definition.nodes[0].type == NodeType.INPUT
    assert definition.nodes[0].is_start is True
    assert definition.nodes[2].config == {}
    assert definition.edges[1].source_handle == "true"
    assert parse_node_config(definition.nodes[1]).expression == "{{input.n}} > 2"


def test_node_configs_accept_editor_aliases():
    agent = parse_node_config(
        NodeDefinition(
            id="a",
            type="agent",
            config={
                "model": "openai/gpt-4o",
                "systemPrompt": "Be brief.",
                "tools": ["search/web_search", "calculator"],
                "mcpTools": [{"serverId": "files", "tools": ["read_file"]}],
                "maxIterations": 4,
                "middleware": ["limit_messages:10"],
            },
        )
    )
    assert isinstance(agent, AgentNodeConfig)
    assert agent.model_id == "openai/gpt-4o"
    assert agent.max_iterations == 4
    assert agent.middleware_chain == ["limit_messages:10"]
    assert agent.tool_refs() == [
        ("search", "web_search"),
        ("", "calculator"),
        ("files", "read_file"),
    ]

    code = parse_node_config(NodeDefinition(id="c", type="code", config={"code": "1", "timeout": 2}))
    assert isinstance(code, CodeNodeConfig)
    assert code.script == "1"
    assert code.timeout_seconds == 2

    http = parse_node_config(
        NodeDefinition(
            id="h",
            type="http",
            config={"url": "https://x", "method": "post", "outputMapping": {"statusCodeField": "code"}},
        )
    )
    assert isinstance(http, HttpNodeConfig)
    assert http.method == "POST"
    assert http.output_field_names.status_code == "code"
    assert http.output_field_names.body == "body"

    output = parse_node_config(NodeDefinition(id="o", type="output", config={"outputs": {"a": "b"}}))
    assert isinstance(output, OutputNodeConfig)
    assert output.output_mapping == {"a": "b"}


def test_malformed_config_raises_validation_error():
    from pydantic import ValidationError

    with pytest.raises(ValidationError):
        parse_node_config(NodeDefinition(id="t", type="tool", config={"serverId": "s"}))
