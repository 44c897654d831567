"""
Command-line interface for agentgraph.

Usage:
    agentgraph validate workflows/triage.json
    agentgraph run workflows/triage.json --input '{"q": "hi"}'
    agentgraph run workflows/triage.json --input '{"q": "hi"}' --stream
    agentgraph run workflows/triage.json --mcp-config mcp_servers.json
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

from agentgraph.config import EngineConfig, get_mcp_config_path
from agentgraph.errors import AgentGraphError
from agentgraph.graph.definition import validate
from agentgraph.graph.executor import ExecutionStatus
from agentgraph.observability import configure_logging
from agentgraph.runner.tool_registry import ToolRegistry
from agentgraph.storage.definitions import InMemoryDefinitionSource, load_definition


def cmd_validate(args: argparse.Namespace) -> int:
    try:
        definition = load_definition(args.file)
    except (OSError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    result = validate(definition)
    for warning in result.warnings:
        print(f"warning: {warning}")
    if not result.valid:
        for error in result.errors:
            print(f"error: {error}", file=sys.stderr)
        return 1
    print(f"✓ {definition.name} ({len(definition.nodes)} nodes, {len(definition.edges)} edges)")
    return 0


def _parse_input(raw: str | None) -> dict:
    if not raw:
        return {}
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("--input must be a JSON object")
    return data


async def _run(args: argparse.Namespace) -> int:
    # litellm is slow to import; only pay for it when actually running
    from agentgraph.llm.litellm import LiteLLMProvider
    from agentgraph.runtime.execution_service import ExecutionService

    definition = load_definition(args.file)
    workflow_input = _parse_input(args.input)

    config = EngineConfig()
    if args.model:
        config.model = args.model
    if args.continue_on_error:
        config.failure_policy = "continue"

    tools = ToolRegistry()
    mcp_config = Path(args.mcp_config) if args.mcp_config else get_mcp_config_path()
    if mcp_config is not None:
        tools.load_mcp_config(mcp_config)

    service = ExecutionService(
        definitions=InMemoryDefinitionSource([definition]),
        llm=LiteLLMProvider(
            model=config.model,
            api_key=config.api_key,
            api_base=config.api_base,
            timeout=config.model_timeout,
        ),
        tools=tools,
        config=config,
    )

    try:
        if args.stream:
            async for event in service.stream(definition.id, workflow_input):
                print(json.dumps(event.to_dict(), default=str), flush=True)
            record = service.history(definition.id, limit=1)[0]
        else:
            record = await service.run(definition.id, workflow_input)
    finally:
        tools.cleanup()

    print(record.model_dump_json(indent=2))
    return 0 if record.status == ExecutionStatus.COMPLETED else 1


def cmd_run(args: argparse.Namespace) -> int:
    try:
        return asyncio.run(_run(args))
    except (OSError, ValueError, AgentGraphError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def register_commands(subparsers: argparse._SubParsersAction) -> None:
    validate_parser = subparsers.add_parser("validate", help="Check a workflow definition")
    validate_parser.add_argument("file", help="Path to a workflow JSON file")
    validate_parser.set_defaults(func=cmd_validate)

    run_parser = subparsers.add_parser("run", help="Execute a workflow")
    run_parser.add_argument("file", help="Path to a workflow JSON file")
    run_parser.add_argument("--input", "-i", help="Workflow input as a JSON object")
    run_parser.add_argument("--stream", action="store_true", help="Print events as JSON lines")
    run_parser.add_argument("--mcp-config", help="Path to an mcp_servers.json file")
    run_parser.add_argument("--model", help="Default model for Agent nodes")
    run_parser.add_argument(
        "--continue-on-error",
        action="store_true",
        help="Keep running after a node fails instead of stopping",
    )
    run_parser.set_defaults(func=cmd_run)


def main():
    parser = argparse.ArgumentParser(
        prog="agentgraph",
        description="agentgraph - Run declarative agent workflows",
    )
    parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING or ERROR")
    parser.add_argument(
        "--log-format", default="auto", choices=["auto", "json", "human"], help="Log output format"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    register_commands(subparsers)

    args = parser.parse_args()
    configure_logging(level=args.log_level, format=args.log_format)

    if hasattr(args, "func"):
        sys.exit(args.func(args))


if __name__ == "__main__":
    main()
