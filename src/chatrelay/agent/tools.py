import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List

from mcp import StdioServerParameters
from mcp.client.session import ClientSession
from mcp.client.stdio import stdio_client

from ..errors import CapabilityNotFoundError
from ..events import EventBus
from ..settings import Settings

logger = logging.getLogger(__name__)

Invoke = Callable[[Dict[str, Any]], Awaitable[Any]]


@dataclass
class Capability:
    """An external capability the model may call."""

    name: str
    invoke: Invoke
    description: str = ""
    parameters: Dict[str, Any] = field(default_factory=dict)

    def schema(self) -> Dict[str, Any]:
        """Tool schema in OpenAI function format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters or {"type": "object", "properties": {}},
            },
        }


@dataclass
class McpServerConfig:
    name: str
    command: str
    args: List[str]


def parse_mcp_servers(servers: str | None) -> List[McpServerConfig]:
    """Parse ``name=command arg ...;name=command arg ...`` into server configs.

    Entries without a name are named ``server_<n>``; empty entries are skipped.
    """
    configs: List[McpServerConfig] = []
    if not servers:
        return configs
    for position, entry in enumerate(servers.split(";")):
        entry = entry.strip()
        if not entry:
            continue
        name, sep, cmd = entry.partition("=")
        if not sep or " " in name.strip():
            name, cmd = f"server_{position}", entry
        cmd_parts = cmd.split()
        if not cmd_parts:
            logger.warning("Invalid MCP command format for '%s': %s", name, entry)
            continue
        configs.append(McpServerConfig(name=name.strip(), command=cmd_parts[0], args=cmd_parts[1:]))
    return configs


def _server_params(config: McpServerConfig) -> StdioServerParameters:
    return StdioServerParameters(
        command=config.command,
        args=config.args,
        env={**os.environ},
    )


def _mcp_invoker(config: McpServerConfig, tool_name: str) -> Invoke:
    """Build an ``invoke`` that calls ``tool_name`` on a fresh stdio session."""

    async def invoke(arguments: Dict[str, Any]) -> str:
        async with stdio_client(_server_params(config)) as (read, write):
            async with ClientSession(read, write) as session:
                await session.initialize()
                logger.debug("Calling MCP tool %s on server %s", tool_name, config.name)
                result = await session.call_tool(tool_name, arguments)
        if getattr(result, "isError", False):
            raise RuntimeError(_result_text(result) or f"MCP tool {tool_name} failed")
        return _result_text(result)

    return invoke


def _result_text(result: Any) -> str:
    if result.content:
        return getattr(result.content[0], "text", None) or ""
    return json.dumps(result, indent=2, default=str)


async def _list_server_tools(config: McpServerConfig) -> List[Capability]:
    async with stdio_client(_server_params(config)) as (read, write):
        async with ClientSession(read, write) as session:
            await session.initialize()
            tools_result = await session.list_tools()
    return [
        Capability(
            name=tool_info.name,
            description=tool_info.description or "",
            parameters=tool_info.inputSchema or {},
            invoke=_mcp_invoker(config, tool_info.name),
        )
        for tool_info in tools_result.tools
    ]


async def load_capabilities(settings: Settings) -> List[Capability]:
    """Query every configured MCP server once and build the capability table.

    Unreachable servers are skipped; with nothing reachable the table is empty.

    Args:
        settings: Application settings; ``mcp_servers`` names the servers.

    Returns:
        List[Capability]: One entry per tool across all reachable servers.
    """
    configs = parse_mcp_servers(settings.mcp_servers)
    if not configs:
        logger.info("No MCP servers configured; continuing without tools")
        return []

    capabilities: List[Capability] = []
    for config in configs:
        try:
            server_tools = await _list_server_tools(config)
        except (OSError, ConnectionError, TimeoutError, RuntimeError) as e:
            logger.warning("Failed to connect to MCP server '%s': %s", config.name, e)
            continue
        except Exception as e:
            logger.exception("Unexpected error loading MCP server '%s': %s", config.name, e)
            continue
        logger.info(
            "Loaded %d tools from MCP server '%s': %s",
            len(server_tools),
            config.name,
            ", ".join(c.name for c in server_tools),
        )
        capabilities.extend(server_tools)
    return capabilities


class ToolInvoker:
    """Resolve tool calls against the capability table and run them."""

    def __init__(self, capabilities: Iterable[Capability], events: EventBus | None = None) -> None:
        self._capabilities: Dict[str, Capability] = {c.name: c for c in capabilities}
        self._events = events or EventBus()

    def schemas(self) -> List[Dict[str, Any]]:
        """Return the tool schemas advertised to the model, in load order."""
        return [c.schema() for c in self._capabilities.values()]

    async def call(self, name: str, arguments: Dict[str, Any]) -> Any:
        """Invoke a capability by name.

        Emits ``tool_called``, then ``tool_completed`` or ``tool_failed``.
        Failures are logged, published and re-raised.

        Args:
            name: Name of the capability to run (str).
            arguments: Dict of tool arguments.

        Returns:
            Any: Whatever the capability returned.

        Raises:
            CapabilityNotFoundError: No capability with that name is loaded.
        """
        logger.info("Tool %r called with input: %s", name, json.dumps(arguments, default=str))
        self._events.emit("tool_called", name=name, arguments=arguments)

        try:
            capability = self._capabilities.get(name)
            if capability is None:
                raise CapabilityNotFoundError(name)
            result = await capability.invoke(arguments)
        except Exception as e:
            logger.error("Tool %r failed: %s", name, e)
            self._events.emit("tool_failed", name=name, arguments=arguments, error=str(e))
            raise

        logger.info("Tool %r completed", name)
        logger.debug("Tool %r returned: %s", name, result)
        self._events.emit("tool_completed", name=name, arguments=arguments)
        return result
