"""Http node - one outbound HTTP request."""

import json
import logging
from typing import Any

import httpx

from agentgraph.graph.context import NodeContext
from agentgraph.graph.node import NodeHandler, NodeResult
from agentgraph.graph.node_config import HttpNodeConfig
from agentgraph.graph.resolver import resolve, resolve_structure

logger = logging.getLogger(__name__)


class HttpNode(NodeHandler):
    """
    Resolves the URL, headers and body templates, sends the request and maps
    the response onto output fields (names configurable):

        statusCode  int
        headers     dict
        body        raw text
        data        parsed JSON, when the body is JSON
        success     True for 2xx

    A request that never produced a response (DNS failure, refused
    connection, timeout, malformed URL) does not fail the node: the output is
    ``{"error": ..., "success": False}`` so a following Condition node can
    branch on it. The ``requestError`` metadata lets the executor end a
    fail-fast run when nothing downstream checks the outcome.
    """

    def __init__(
        self,
        default_timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.default_timeout = default_timeout
        # Injected in tests (httpx.MockTransport)
        self.transport = transport

    def _build_request_kwargs(self, config: HttpNodeConfig, context: NodeContext) -> dict[str, Any]:
        headers = {
            name: str(value) for name, value in resolve_structure(config.headers, context).items()
        }
        kwargs: dict[str, Any] = {"headers": headers}

        body = resolve_structure(config.body, context)
        if body is None:
            return kwargs
        if isinstance(body, dict | list):
            kwargs["json"] = body
        else:
            kwargs["content"] = body if isinstance(body, str | bytes) else json.dumps(body)
        return kwargs

    async def execute(self, config: HttpNodeConfig, context: NodeContext) -> NodeResult:
        url = resolve(config.url, context) or ""
        method = config.method.value
        fields = config.output_field_names
        timeout = config.timeout_seconds or self.default_timeout

        try:
            request_kwargs = self._build_request_kwargs(config, context)
            async with httpx.AsyncClient(
                timeout=timeout,
                follow_redirects=config.follow_redirects,
                transport=self.transport,
            ) as client:
                response = await client.request(method, url, **request_kwargs)
        except (httpx.HTTPError, httpx.InvalidURL, ValueError) as e:
            message = str(e) or type(e).__name__
            logger.warning(f"✗ {method} {url} failed: {message}")
            return NodeResult.ok({"error": message, "success": False}, requestError=message)

        output: dict[str, Any] = {
            fields.status_code: response.status_code,
            fields.headers: dict(response.headers),
            fields.body: response.text,
            "success": response.is_success,
        }
        try:
            output[fields.data] = response.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.debug(f"Response from {url} is not JSON")

        logger.info(f"✓ {method} {url} -> {response.status_code}")
        return NodeResult.ok(output)
