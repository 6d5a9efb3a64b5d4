"""
Tool registry for chief.

Native tools are plain functions registered with :func:`register_tool`; the decorator derives an
input schema from the signature and stores a :class:`~chief.core.schema.ToolDescriptor` in
:data:`TOOL_REGISTRY`.  A :class:`ToolRegistry` groups native tools with the catalogues that are
discovered at runtime (extension tools, the local MCP cache, Composio meta tools and the Composio
slug schemas) and resolves names across them in a fixed order.
"""

import inspect
import logging
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    get_type_hints,
)

from chief.common import now_ms
from chief.core.schema import (
    ToolDescriptor,
    ToolSource,
)

logger = logging.getLogger(__name__)

TOOL_REGISTRY: Dict[str, ToolDescriptor] = {}
"""Global registry of native tools."""

_JSON_TYPES = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
    list: "array",
    dict: "object",
}


def schema_from_signature(fn: Callable) -> Dict[str, Any]:
    """Build a JSON schema for *fn*'s keyword parameters from its type hints."""
    sig = inspect.signature(fn)
    type_hints = get_type_hints(fn)
    properties: Dict[str, Any] = {}
    required: List[str] = []
    for param_name, param in sig.parameters.items():
        if param.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD):
            continue
        hint = type_hints.get(param_name)
        properties[param_name] = {"type": _JSON_TYPES.get(getattr(hint, "__origin__", hint), "string")}
        if param.default == inspect.Parameter.empty:
            required.append(param_name)
    schema: Dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        schema["required"] = required
    return schema


def register_tool(
    name: str,
    is_mutating: Optional[bool] = None,
    description: str | None = None,
    registry: Dict[str, ToolDescriptor] | None = None,
) -> Callable:
    """
    Register a native tool function with the given name.

    The function is registered as a decorator, so it can be used like this:
        @register_tool("roam_search", is_mutating=False)
        def roam_search(query: str) -> dict:
            ...

    Parameters
    ----------
    name: str
        The name of the tool.  This must be unique within the registry.
    is_mutating: bool | None
        Explicit mutation flag; ``None`` leaves classification to the heuristics.
    description: str | None
        Model-facing description; defaults to the function docstring.
    registry: dict | None
        Target registry; defaults to :data:`TOOL_REGISTRY`.

    Returns
    -------
    Callable
        A decorator that registers the function and returns it unchanged.

    Raises
    ------
    ValueError
        If a tool with the same name is already registered.
    """
    target = TOOL_REGISTRY if registry is None else registry
    if name in target:
        raise ValueError(f"Tool '{name}' is already registered.")
    logger.debug("Registering tool '%s'", name)

    def wrapper(fn: Callable) -> Callable:
        target[name] = ToolDescriptor(
            name=name,
            description=description if description is not None else inspect.getdoc(fn) or "",
            input_schema=schema_from_signature(fn),
            is_mutating=is_mutating,
            source="native",
            execute=lambda args, _fn=fn: _fn(**(args or {})),
        )
        return fn

    return wrapper


def _descriptors(tools: Iterable[Any], source: ToolSource) -> List[ToolDescriptor]:
    result = []
    for tool in tools:
        if isinstance(tool, ToolDescriptor):
            result.append(tool)
        else:
            data = dict(tool)
            data.setdefault("source", source)
            if "inputSchema" in data and "input_schema" not in data:
                data["input_schema"] = data.pop("inputSchema")
            result.append(ToolDescriptor(**data))
    return result


class ToolRegistry:
    """
    Every tool catalogue the dispatcher can resolve against.

    Resolution order is native, extension, local MCP cache, then meta tools.  ``composio_schemas``
    maps upper-case Composio slugs to their input schemas; a slug with a schema is callable through
    ``COMPOSIO_MULTI_EXECUTE_TOOL`` even when the model calls it directly.
    """

    def __init__(
        self,
        native: Mapping[str, ToolDescriptor] | Iterable[Any] | None = None,
        extension: Iterable[Any] = (),
        local_mcp: Iterable[Any] = (),
        meta: Iterable[Any] = (),
        composio_schemas: Mapping[str, Dict[str, Any]] | None = None,
    ) -> None:
        if native is None:
            native = TOOL_REGISTRY
        native_tools = native.values() if isinstance(native, Mapping) else native
        self.native = _descriptors(native_tools, "native")
        self.extension = _descriptors(extension, "extension")
        self.local_mcp = _descriptors(local_mcp, "local-mcp")
        self.meta = _descriptors(meta, "meta")
        self.composio_schemas: Dict[str, Dict[str, Any]] = {
            slug.upper(): schema for slug, schema in (composio_schemas or {}).items()
        }

    @staticmethod
    def _find(tools: Iterable[ToolDescriptor], name: str) -> Optional[ToolDescriptor]:
        return next((tool for tool in tools if tool.name == name), None)

    def resolve(self, name: str) -> Optional[ToolDescriptor]:
        for group in (self.native, self.extension, self.local_mcp, self.meta):
            tool = self._find(group, name)
            if tool is not None:
                return tool
        return None

    def find_local_mcp(self, name: str) -> Optional[ToolDescriptor]:
        return self._find(self.local_mcp, name)

    def is_extension_tool(self, name: str) -> bool:
        upper = name.upper()
        return any(tool.name.upper() == upper for tool in self.extension)

    def is_local_mcp_tool(self, name: str) -> bool:
        upper = name.upper()
        return any(tool.name.upper() == upper for tool in self.local_mcp)

    def get_tool_schema(self, slug: str) -> Optional[Dict[str, Any]]:
        return self.composio_schemas.get(str(slug or "").upper())

    def local_mcp_servers(self) -> List[str]:
        return list(dict.fromkeys(t.server_name for t in self.local_mcp if t.server_name))

    def all_tools(self) -> List[ToolDescriptor]:
        return self.native + self.extension + self.local_mcp + self.meta


# ---------------------------------------------------------------------------
# Built-in native tools
# ---------------------------------------------------------------------------
@register_tool("cos_get_current_time", is_mutating=False)
def get_current_time() -> Dict[str, Any]:
    """Return the current time as epoch milliseconds."""
    return {"epoch_ms": now_ms()}
