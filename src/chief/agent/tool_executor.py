"""
Dispatches model-issued tool calls with approval gating and mutation classification.

:class:`ToolDispatcher` resolves a name against a :class:`~chief.tools.ToolRegistry`, intercepts the
two meta tools (``COMPOSIO_MULTI_EXECUTE_TOOL`` and ``LOCAL_MCP_EXECUTE``), rewrites direct Composio
slug calls, enforces read-only mode, dry runs and approvals, and finally runs the tool locally or
over the host's MCP transport.

Recoverable problems come back as ``{"error": ...}`` payloads the model can read.  Only
:class:`~chief.core.errors.UserDeniedError` and :class:`~chief.core.errors.McpNotConnectedError`
are raised.
"""

import json
import logging
from dataclasses import (
    dataclass,
    field,
)
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    FrozenSet,
    List,
    Mapping,
    Optional,
)

from chief.agent.mutation import (
    COMPOSIO_MULTI_EXECUTE_TOOL,
    COMPOSIO_SAFE_MULTI_EXECUTE_SLUG_ALLOWLIST,
    COMPOSIO_SLUG_PATTERN,
    INBOX_READ_ONLY_TOOL_ALLOWLIST,
    LOCAL_MCP_EXECUTE,
    LOCAL_MCP_ROUTE,
    SCOPED_PAGE_APPROVAL_TOOLS,
    check_key_parameters,
    extract_target_page_uids,
    find_closest_tool_name,
    get_tool_approval_key,
    get_unknown_multi_execute_slugs,
    is_potentially_mutating_tool,
    normalise_composio_multi_execute_args,
)
from chief.common import maybe_await
from chief.core.errors import (
    MalformedArgumentError,
    McpNotConnectedError,
    ToolExecutionError,
    UserDeniedError,
)
from chief.core.schema import ToolDescriptor
from chief.core.session import Session
from chief.tools import ToolRegistry

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("chief.agent.audit")

ApprovalPrompter = Callable[[str, Dict[str, Any]], bool | Awaitable[bool]]
McpCaller = Callable[[str, Dict[str, Any]], Any]

READ_ONLY_BLOCKED_ERROR = (
    "Read-only mode: this tool is blocked for inbox-triggered requests. "
    "Summarise your findings for the human to act on."
)


@dataclass
class HostBindings:
    """
    Callables supplied by the host.

    Any of them may return an awaitable.  ``call_mcp`` receives ``(name, arguments)`` and returns
    ``{"content": [{"text": ...}, ...]}``; ``resolve_page_uid`` maps a block UID to the UID of the
    page that contains it.
    """

    approval_prompter: ApprovalPrompter
    call_mcp: Optional[McpCaller] = None
    info_toast: Optional[Callable[[str, str], Any]] = None
    error_toast: Optional[Callable[[str, str], Any]] = None
    resolve_page_uid: Optional[Callable[[str], str]] = None
    record_usage_stat: Optional[Callable[..., Any]] = None
    record_response_shape: Optional[Callable[[str, Any], Any]] = None
    safe_slug_allowlist: FrozenSet[str] = field(default=COMPOSIO_SAFE_MULTI_EXECUTE_SLUG_ALLOWLIST)
    read_only_allowlist: FrozenSet[str] = field(default=INBOX_READ_ONLY_TOOL_ALLOWLIST)


async def run_tool(tool: ToolDescriptor, args: Dict[str, Any] | None = None) -> Any:
    """
    Invoke a resolved tool's ``execute`` with *args*.

    Raises
    ------
    ToolExecutionError
        If the tool has no ``execute`` function or its invocation raises.
    """
    if args is None:
        args = {}
    if tool.execute is None:
        raise ToolExecutionError(f"Tool '{tool.name}' has no execute() function.")
    try:
        logger.debug("Executing tool '%s' with args=%s", tool.name, args)
        return await maybe_await(tool.execute(args))
    except TypeError as exc:
        logger.exception("Argument error while executing tool '%s'", tool.name)
        raise ToolExecutionError(f"Invalid arguments for tool '{tool.name}': {exc}") from exc
    except Exception as exc:  # noqa: BLE001
        logger.exception("Unhandled error in tool '%s'", tool.name)
        raise ToolExecutionError(f"Tool '{tool.name}' raised an error: {exc}") from exc


def _slug_matches(slug: str, tool_name: str) -> bool:
    lower, name = slug.lower(), tool_name.lower()
    return lower == name or lower.endswith("_" + name)


class ToolDispatcher:
    """
    Per-session tool dispatcher.

    Parameters
    ----------
    session:
        Holds the approval stores, the dry-run flag and the local-MCP follow-up marker.
    registry:
        Tool catalogues to resolve against; defaults to the native registry only.
    host:
        Host callables (approval prompter, MCP transport, toasts, ...).
    """

    def __init__(self, session: Session, host: HostBindings, registry: ToolRegistry | None = None) -> None:
        self.session = session
        self.host = host
        self.registry = registry or ToolRegistry()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def is_potentially_mutating(self, name: str, args: Any, tool: Any = None) -> bool:
        return is_potentially_mutating_tool(name, args, tool, self.registry)

    async def _prompt(self, name: str, args: Dict[str, Any], approval_key: str) -> bool:
        approved = bool(await maybe_await(self.host.approval_prompter(name, args)))
        audit_logger.info("%s tool=%s key=%s", "approved" if approved else "denied", name, approval_key)
        if self.host.record_usage_stat is not None:
            self.host.record_usage_stat("approvalsGranted" if approved else "approvalsDenied")
        return approved

    async def _toast(self, title: str, message: str) -> None:
        if self.host.info_toast is not None:
            await maybe_await(self.host.info_toast(title, message))

    def _extension_with_execute(self, slug: str) -> Optional[ToolDescriptor]:
        return next(
            (t for t in self.registry.extension if t.execute is not None and _slug_matches(slug, t.name)),
            None,
        )

    def _extension_any(self, slug: str) -> Optional[ToolDescriptor]:
        return next((t for t in self.registry.extension if _slug_matches(slug, t.name)), None)

    # ------------------------------------------------------------------
    # Meta tool: COMPOSIO_MULTI_EXECUTE_TOOL
    # ------------------------------------------------------------------
    async def _intercept_multi_execute(self, args: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Run batches of extension tools locally; ``None`` means continue to Composio."""
        batch = [t for t in args.get("tools") or [] if isinstance(t, Mapping)]
        if not batch:
            return None
        slugs = [str(t.get("tool_slug") or "") for t in batch]
        local_matches = [self._extension_with_execute(slug) for slug in slugs]

        if all(local_matches):
            logger.info("MULTI_EXECUTE intercepted: all slugs match extension tools, executing locally")
            results: List[Dict[str, Any]] = []
            for tool, entry in zip(local_matches, batch):
                try:
                    results.append({"tool": tool.name, "result": await run_tool(tool, entry.get("arguments") or {})})
                except ToolExecutionError as exc:
                    cause = exc.__cause__
                    results.append({"tool": tool.name, "error": str(cause or "") or f"Failed: {tool.name}"})
            return {"successful": True, "data": {"results": results}}

        missing = [
            registered.name
            for registered, local in zip((self._extension_any(slug) for slug in slugs), local_matches)
            if registered is not None and local is None
        ]
        if missing:
            names = ", ".join(missing)
            logger.warning("MULTI_EXECUTE blocked: tools registered without execute(): %s", names)
            return {
                "successful": False,
                "data": {
                    "error": (
                        f"Tools {names} are registered in the extension tools registry but missing an "
                        f"execute() function. The extension author needs to add execute() to each tool."
                    )
                },
            }
        return None

    async def _confirm_unknown_slugs(self, args: Dict[str, Any]) -> None:
        unknown = get_unknown_multi_execute_slugs(args, self.host.safe_slug_allowlist)
        if not unknown:
            return
        label = f"{COMPOSIO_MULTI_EXECUTE_TOOL} (unknown slugs)"
        if not await self._prompt(label, {"unknown_tool_slugs": unknown}, label):
            raise UserDeniedError(
                COMPOSIO_MULTI_EXECUTE_TOOL, f"User denied unknown tool slugs in {COMPOSIO_MULTI_EXECUTE_TOOL}"
            )

    # ------------------------------------------------------------------
    # Meta tools: LOCAL_MCP_ROUTE / LOCAL_MCP_EXECUTE
    # ------------------------------------------------------------------
    async def _route_local_mcp(self, args: Dict[str, Any]) -> Any:
        route_tool = next((t for t in self.registry.meta if t.name == LOCAL_MCP_ROUTE and t.execute), None)
        if route_tool is not None:
            return await run_tool(route_tool, args)

        server_name = str(args.get("server_name") or "")
        if not server_name:
            return {"error": "server_name is required"}
        tools = [t for t in self.registry.local_mcp if t.server_name == server_name]
        if not tools:
            tools = [t for t in self.registry.local_mcp if (t.server_name or "").lower() == server_name.lower()]
        if not tools:
            available = ", ".join(self.registry.local_mcp_servers()) or "(none)"
            return {"error": f'Server "{server_name}" not found. Available routed servers: {available}'}
        return {
            "server_name": tools[0].server_name,
            "tools": [{"name": t.name, "description": t.description, "input_schema": t.input_schema} for t in tools],
        }

    async def _execute_local_mcp(self, args: Dict[str, Any]) -> Any:
        inner_name = str(args.get("tool_name") or "")
        if not inner_name:
            return {"error": "LOCAL_MCP_EXECUTE requires tool_name"}
        tool = self.registry.find_local_mcp(inner_name)
        if tool is None and "." in inner_name[1:]:
            stripped = inner_name.split(".", 1)[1]
            tool = self.registry.find_local_mcp(stripped)
            if tool is not None:
                logger.debug('LOCAL_MCP_EXECUTE normalised "%s" -> "%s"', inner_name, stripped)
        if tool is None:
            closest = find_closest_tool_name(inner_name, [t.name for t in self.registry.local_mcp])
            suggestion = f' Did you mean "{closest}"?' if closest else ""
            logger.debug('LOCAL_MCP_EXECUTE tool not found: "%s", closest: %s', inner_name, closest)
            return {
                "error": f'Tool "{inner_name}" not found.{suggestion} Use {LOCAL_MCP_ROUTE} to discover available tools.'
            }
        inner_args = args.get("arguments") if isinstance(args.get("arguments"), dict) else {}
        check_key_parameters(tool, inner_args)
        logger.debug("LOCAL_MCP_EXECUTE dispatch: %s %s", tool.name, inner_args)
        return await run_tool(tool, inner_args)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------
    async def _call_mcp(self, name: str, args: Dict[str, Any]) -> Any:
        if self.host.call_mcp is None:
            raise McpNotConnectedError()
        result = await maybe_await(self.host.call_mcp(name, args))
        content = result.get("content") if isinstance(result, Mapping) else None
        first = content[0] if isinstance(content, list) and content else None
        text = first.get("text") if isinstance(first, Mapping) else None
        if not isinstance(text, str):
            return result
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError:
            return {"text": text}
        if (
            name.upper() == COMPOSIO_MULTI_EXECUTE_TOOL
            and isinstance(parsed, Mapping)
            and parsed.get("successful")
            and self.host.record_response_shape is not None
        ):
            for entry in args.get("tools") or []:
                slug = entry.get("tool_slug") if isinstance(entry, Mapping) else None
                if slug:
                    self.host.record_response_shape(slug, parsed)
        return parsed

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------
    async def execute_tool_call(self, name: Any, args: Any = None, read_only: bool = False) -> Any:
        """
        Dispatch one tool call.

        Parameters
        ----------
        name:
            Tool name as issued by the model; hyphens are normalised to underscores.
        args:
            Tool arguments.
        read_only:
            Restrict dispatch to the read-only allowlist (inbox-triggered runs).

        Returns
        -------
        Any
            The tool's result, a parsed MCP payload, a dry-run stub or an ``{"error": ...}`` dict.

        Raises
        ------
        UserDeniedError
            When the user refuses an approval prompt.
        McpNotConnectedError
            When the call needs MCP transport and none is bound.
        """
        raw_name = str(name or "")
        tool_name = raw_name.replace("-", "_")
        if tool_name != raw_name:
            logger.info('Tool name normalised: "%s" -> "%s"', raw_name, tool_name)
        upper = tool_name.upper()
        effective_args: Dict[str, Any] = dict(args) if isinstance(args, Mapping) else {}

        if upper == COMPOSIO_MULTI_EXECUTE_TOOL:
            effective_args = normalise_composio_multi_execute_args(
                effective_args, self.registry.composio_schemas.keys()
            )
            logger.debug("MULTI_EXECUTE normalised args: %s", effective_args)
            intercepted = await self._intercept_multi_execute(effective_args)
            if intercepted is not None:
                return intercepted
            await self._confirm_unknown_slugs(effective_args)

        resolved = self.registry.resolve(tool_name)
        if resolved is None and COMPOSIO_SLUG_PATTERN.match(upper) and self.registry.get_tool_schema(upper):
            logger.info('Rewriting direct Composio slug call "%s" -> %s', tool_name, COMPOSIO_MULTI_EXECUTE_TOOL)
            wrapped = {"tools": [{"tool_slug": upper, "arguments": effective_args}]}
            return await self.execute_tool_call(COMPOSIO_MULTI_EXECUTE_TOOL, wrapped, read_only=read_only)

        is_mutating = self.is_potentially_mutating(tool_name, effective_args, resolved)

        if read_only and tool_name not in self.host.read_only_allowlist:
            if not (resolved is not None and resolved.is_mutating is False):
                logger.info("Read-only mode blocked '%s'", tool_name)
                return {"error": READ_ONLY_BLOCKED_ERROR}

        if is_mutating and self.session.dry_run_enabled:
            self.session.consume_dry_run()
            await self._toast("Dry run", f"Simulated mutating call: {tool_name}")
            return {"dry_run": True, "simulated": True, "tool_name": tool_name, "arguments": effective_args}

        if is_mutating:
            await self._gate(tool_name, effective_args)

        try:
            return await self._dispatch(tool_name, effective_args, resolved)
        except MalformedArgumentError as exc:
            return {"error": str(exc)}
        except ToolExecutionError as exc:
            return {"error": str(exc)}

    async def _gate(self, tool_name: str, args: Dict[str, Any]) -> None:
        approval_key = get_tool_approval_key(tool_name, args)
        if tool_name in SCOPED_PAGE_APPROVAL_TOOLS:
            page_uids = extract_target_page_uids(tool_name, args, self.host.resolve_page_uid)
            store = self.session.page_approvals
            if any(not store.has_valid(uid) for uid in page_uids):
                if not await self._prompt(tool_name, args, approval_key):
                    raise UserDeniedError(tool_name)
                store.remember_many(page_uids)
                logger.debug("Page write approved for UIDs: %s", ", ".join(page_uids))
            else:
                audit_logger.info("auto-approved tool=%s pages=%s", tool_name, ",".join(page_uids))
            return
        if self.session.has_valid_tool_approval(approval_key):
            return
        if not await self._prompt(tool_name, args, approval_key):
            raise UserDeniedError(tool_name)
        self.session.remember_tool_approval(approval_key)

    async def _dispatch(self, tool_name: str, args: Dict[str, Any], resolved: Optional[ToolDescriptor]) -> Any:
        if tool_name == LOCAL_MCP_ROUTE:
            self.session.used_local_mcp = True
            return await self._route_local_mcp(args)
        if tool_name == LOCAL_MCP_EXECUTE:
            self.session.used_local_mcp = True
            return await self._execute_local_mcp(args)
        if resolved is not None and resolved.execute is not None:
            if resolved.source == "local-mcp":
                self.session.used_local_mcp = True
            return await run_tool(resolved, args)
        return await self._call_mcp(tool_name, args)

