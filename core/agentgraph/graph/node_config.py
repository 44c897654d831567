"""
Typed configuration records, one per node kind.

``NodeDefinition.config`` is a free-form map. Before dispatch the executor
parses it into the record for the node's kind, so handlers work with typed
attributes and a malformed payload fails that one node instead of surfacing
as a ``KeyError`` deep inside a handler.

Both the editor's field names (``code``, ``timeout``, ``model``,
``middleware``) and the longer names (``script``, ``timeoutSeconds``,
``modelId``, ``middlewareChain``) are accepted.
"""

from enum import StrEnum
from typing import Any

from pydantic import AliasChoices, BaseModel, Field, field_validator
from pydantic.alias_generators import to_camel

from agentgraph.graph.definition import NodeDefinition, NodeType

_CONFIG = {
    "extra": "allow",
    "populate_by_name": True,
    "alias_generator": to_camel,
    "protected_namespaces": (),
}


def _choices(*names: str) -> AliasChoices:
    return AliasChoices(*names)


class InputNodeConfig(BaseModel):
    """Advisory schema for the workflow input. Not enforced at runtime."""

    input_schema: Any = Field(default=None, validation_alias=_choices("schema", "input_schema"))
    required: bool = False
    default_value: Any = None
    description: str = ""

    model_config = _CONFIG


class OutputNodeConfig(BaseModel):
    output_mapping: dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=_choices("outputMapping", "output_mapping", "outputs"),
    )
    output_schema: Any = Field(default=None, validation_alias=_choices("schema", "output_schema"))

    model_config = _CONFIG

    @field_validator("output_mapping", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return {} if value is None else value


class ConditionNodeConfig(BaseModel):
    """
    ``expression`` is a comparison such as ``{{score.value}} >= 0.8``;
    ``comparison_ref`` names a single reference tested for truthiness.
    """

    expression: str | None = Field(
        default=None, validation_alias=_choices("expression", "condition")
    )
    comparison_ref: str | None = Field(
        default=None, validation_alias=_choices("comparisonRef", "comparison_ref")
    )

    model_config = _CONFIG


class CodeNodeConfig(BaseModel):
    script: str = Field(default="", validation_alias=_choices("script", "code"))
    language: str = "python"
    input_mapping: dict[str, str] = Field(
        default_factory=dict, validation_alias=_choices("inputMapping", "input_mapping")
    )
    output_mapping: dict[str, str] = Field(
        default_factory=dict, validation_alias=_choices("outputMapping", "output_mapping")
    )
    timeout_seconds: float | None = Field(
        default=None, validation_alias=_choices("timeoutSeconds", "timeout_seconds", "timeout")
    )

    model_config = _CONFIG

    @field_validator("input_mapping", "output_mapping", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return {} if value is None else value


class HttpMethod(StrEnum):
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    DELETE = "DELETE"
    PATCH = "PATCH"


class HttpOutputFields(BaseModel):
    """Names of the output keys the Http node writes."""

    status_code: str = Field(
        default="statusCode", validation_alias=_choices("statusCodeField", "statusCode", "status_code")
    )
    headers: str = Field(default="headers", validation_alias=_choices("headersField", "headers"))
    body: str = Field(default="body", validation_alias=_choices("bodyField", "body"))
    data: str = Field(default="data", validation_alias=_choices("dataField", "data"))

    model_config = _CONFIG


class HttpNodeConfig(BaseModel):
    method: HttpMethod = HttpMethod.GET
    url: str
    headers: dict[str, str] = Field(default_factory=dict)
    body: Any = None
    timeout_seconds: float | None = Field(
        default=None, validation_alias=_choices("timeoutSeconds", "timeout_seconds", "timeout")
    )
    follow_redirects: bool = Field(
        default=True, validation_alias=_choices("followRedirects", "follow_redirects")
    )
    output_field_names: HttpOutputFields = Field(
        default_factory=HttpOutputFields,
        validation_alias=_choices("outputFieldNames", "output_field_names", "outputMapping"),
    )

    model_config = _CONFIG

    @field_validator("method", mode="before")
    @classmethod
    def _upper_method(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value

    @field_validator("headers", mode="before")
    @classmethod
    def _none_headers(cls, value: Any) -> Any:
        return {} if value is None else value

    @field_validator("output_field_names", mode="before")
    @classmethod
    def _none_fields(cls, value: Any) -> Any:
        return {} if value is None else value


class ToolNodeConfig(BaseModel):
    server_id: str = Field(validation_alias=_choices("serverId", "server_id", "server"))
    tool_name: str = Field(validation_alias=_choices("toolName", "tool_name", "tool"))
    arguments: dict[str, Any] = Field(
        default_factory=dict, validation_alias=_choices("arguments", "args", "input")
    )
    timeout_seconds: float | None = Field(
        default=None, validation_alias=_choices("timeoutSeconds", "timeout_seconds", "timeout")
    )

    model_config = _CONFIG


class McpToolRef(BaseModel):
    """Editor form of a tool selection: one server, several tool names."""

    server_id: str = Field(validation_alias=_choices("serverId", "server_id"))
    tools: list[str] = Field(default_factory=list)

    model_config = _CONFIG


class AgentNodeConfig(BaseModel):
    model_id: str | None = Field(default=None, validation_alias=_choices("modelId", "model_id", "model"))
    system_prompt: str | None = Field(
        default=None, validation_alias=_choices("systemPrompt", "system_prompt")
    )
    tools: list[str] = Field(default_factory=list)
    mcp_tools: list[McpToolRef] = Field(
        default_factory=list, validation_alias=_choices("mcpTools", "mcp_tools")
    )
    temperature: float | None = None
    max_tokens: int | None = Field(default=None, validation_alias=_choices("maxTokens", "max_tokens"))
    max_iterations: int | None = Field(
        default=None, validation_alias=_choices("maxIterations", "max_iterations")
    )
    middleware_chain: list[str] = Field(
        default_factory=list,
        validation_alias=_choices("middlewareChain", "middleware_chain", "middleware"),
    )
    stream_tokens: bool = Field(default=True, validation_alias=_choices("streamTokens", "stream_tokens"))

    model_config = _CONFIG

    @field_validator("tools", "mcp_tools", "middleware_chain", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return [] if value is None else value

    def tool_refs(self) -> list[tuple[str, str]]:
        """All selected tools as ``(server_id, tool_name)`` pairs.

        Plain strings use the ``serverId/toolName`` form; a string without a
        slash names a tool on the default server ``""``.
        """
        refs: list[tuple[str, str]] = []
        for ref in self.tools:
            server_id, _, tool_name = ref.rpartition("/")
            refs.append((server_id, tool_name))
        for group in self.mcp_tools:
            refs.extend((group.server_id, name) for name in group.tools)
        return refs


NodeConfig = (
    InputNodeConfig
    | OutputNodeConfig
    | ConditionNodeConfig
    | CodeNodeConfig
    | HttpNodeConfig
    | ToolNodeConfig
    | AgentNodeConfig
)


def parse_node_config(node: NodeDefinition) -> NodeConfig:
    """Parse ``node.config`` into the typed record for ``node.type``.

    Raises ``pydantic.ValidationError`` when the payload does not fit.
    """
    raw = node.config or {}
    match node.type:
        case NodeType.INPUT:
            return InputNodeConfig.model_validate(raw)
        case NodeType.OUTPUT:
            return OutputNodeConfig.model_validate(raw)
        case NodeType.CONDITION:
            return ConditionNodeConfig.model_validate(raw)
        case NodeType.CODE:
            return CodeNodeConfig.model_validate(raw)
        case NodeType.HTTP:
            return HttpNodeConfig.model_validate(raw)
        case NodeType.TOOL:
            return ToolNodeConfig.model_validate(raw)
        case NodeType.AGENT:
            return AgentNodeConfig.model_validate(raw)
    raise ValueError(f"Unsupported node type: {node.type}")
