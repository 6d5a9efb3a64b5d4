"""
Schema pinning for MCP tool catalogues.

The first time a server is seen its catalogue is hashed and pinned in host settings.  Later
discoveries are compared against the pin; any drift produces an added/removed/modified report and
asks the host to suspend the server until the user reviews the change.
"""

import hashlib
import json
import logging
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Literal,
    Optional,
    Sequence,
)

from pydantic import (
    BaseModel,
    Field,
)

from chief.common import maybe_await
from chief.core.settings_store import HostSettings

logger = logging.getLogger(__name__)

SCHEMA_HASHES_KEY = "mcp-schema-hashes"
MAX_CANONICAL_DEPTH = 6
HASH_CACHE_LIMIT = 20
DESCRIPTION_SNIPPET_CHARS = 200

Digest = Callable[[bytes], bytes | Awaitable[bytes]]
SuspendCallback = Callable[[str, Dict[str, Any]], Any]

_hash_cache: Dict[str, str] = {}


class ToolFingerprint(BaseModel):
    param_keys: str = Field("", alias="paramKeys")
    param_types: str = Field("", alias="paramTypes")
    desc_snippet: str = Field("", alias="descSnippet")

    model_config = {"populate_by_name": True}


class ModifiedTool(BaseModel):
    name: str
    changes: List[str]


class SchemaPinResult(BaseModel):
    status: Literal["pinned", "unchanged", "changed"]
    hash: str
    added: List[str] = Field(default_factory=list)
    removed: List[str] = Field(default_factory=list)
    modified: List[ModifiedTool] = Field(default_factory=list)
    suspended: bool = False
    summary: Optional[str] = None


# ---------------------------------------------------------------------------
# Canonicalisation & hashing
# ---------------------------------------------------------------------------
def _sort_key(value: Any) -> str:
    return value if isinstance(value, str) else json.dumps(value, sort_keys=True)


def canonicalise_schema_for_hash(schema: Any, depth: int = 0) -> Optional[Dict[str, Any]]:
    """
    Reduce a JSON schema to a deterministic subset suitable for hashing.

    ``properties`` keys and the ``required``/``enum`` lists are sorted; ``items`` and the
    ``oneOf``/``anyOf``/``allOf`` combiners are recursed.  Anything nested deeper than
    :data:`MAX_CANONICAL_DEPTH` collapses to ``None``.
    """
    if not isinstance(schema, dict) or depth > MAX_CANONICAL_DEPTH:
        return None
    result: Dict[str, Any] = {}
    for key in ("type", "description", "title"):
        if schema.get(key):
            result[key] = schema[key]
    for key in ("default", "const"):
        if key in schema:
            result[key] = schema[key]
    if isinstance(schema.get("enum"), list):
        result["enum"] = sorted(schema["enum"], key=_sort_key)
    if isinstance(schema.get("examples"), list):
        result["examples"] = schema["examples"]
    if isinstance(schema.get("required"), list):
        result["required"] = sorted(schema["required"], key=_sort_key)
    if isinstance(schema.get("properties"), dict):
        result["properties"] = {
            key: canonicalise_schema_for_hash(value, depth + 1)
            for key, value in sorted(schema["properties"].items())
        }
    if schema.get("items") is not None:
        result["items"] = canonicalise_schema_for_hash(schema["items"], depth + 1)
    for combiner in ("oneOf", "anyOf", "allOf"):
        if isinstance(schema.get(combiner), list):
            result[combiner] = [canonicalise_schema_for_hash(v, depth + 1) for v in schema[combiner]]
    return result


def _tool_fields(tool: Any) -> tuple[str, str, Dict[str, Any]]:
    if isinstance(tool, dict):
        schema = tool.get("input_schema") or tool.get("inputSchema") or {}
        return str(tool.get("name") or ""), str(tool.get("description") or ""), schema
    return tool.name, tool.description or "", tool.input_schema or {}


def _sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


async def compute_schema_hash(tools: Sequence[Any], digest: Digest = _sha256) -> str:
    """
    Hex SHA-256 over the canonical, name-sorted catalogue.

    *digest* receives the UTF-8 bytes and may be synchronous or a coroutine.  Results are memoised
    by canonical text; the memo is dropped wholesale once it grows past :data:`HASH_CACHE_LIMIT`.
    """
    canonical = []
    for tool in tools:
        name, description, schema = _tool_fields(tool)
        canonical.append(
            {"name": name, "description": description, "schema": canonicalise_schema_for_hash(schema)}
        )
    canonical.sort(key=lambda entry: entry["name"])
    text = json.dumps(canonical, separators=(",", ":"), ensure_ascii=False)
    cached = _hash_cache.get(text)
    if cached is not None:
        return cached
    raw = await maybe_await(digest(text.encode("utf-8")))
    value = bytes(raw).hex()
    if len(_hash_cache) > HASH_CACHE_LIMIT:
        _hash_cache.clear()
    _hash_cache[text] = value
    return value


def clear_schema_hash_cache() -> None:
    _hash_cache.clear()


# ---------------------------------------------------------------------------
# Pin check
# ---------------------------------------------------------------------------
def _param_type(prop: Any) -> str:
    if isinstance(prop, dict) and prop.get("type"):
        return str(prop["type"])
    return "any"


def _fingerprint(tool: Any) -> ToolFingerprint:
    _, description, schema = _tool_fields(tool)
    props = sorted((schema.get("properties") or {}).items())
    return ToolFingerprint(
        param_keys=",".join(key for key, _ in props),
        param_types=",".join(f"{key}:{_param_type(value)}" for key, value in props),
        desc_snippet=description[:DESCRIPTION_SNIPPET_CHARS],
    )


async def check_schema_pin(
    server_key: str,
    tools: Sequence[Any],
    server_name: str,
    settings_store: HostSettings,
    suspend_mcp_server: SuspendCallback | None = None,
    digest: Digest = _sha256,
) -> SchemaPinResult:
    """
    Compare a freshly discovered catalogue against the stored pin.

    Parameters
    ----------
    server_key:
        Stable key for the server inside the ``mcp-schema-hashes`` settings entry.
    tools:
        Tool descriptors (or raw dicts with ``name``/``description``/``input_schema``).
    server_name:
        Human-readable server name for logs and the suspension payload.
    settings_store:
        Host settings used to read and write the pin.
    suspend_mcp_server:
        Invoked exactly once with ``(server_key, drift_info)`` when drift is detected.

    Returns
    -------
    SchemaPinResult
        ``pinned`` on first observation, ``unchanged`` on an equal hash, ``changed`` otherwise.
    """
    new_hash = await compute_schema_hash(tools, digest)
    stored = settings_store.get(SCHEMA_HASHES_KEY)
    if not isinstance(stored, dict):
        stored = {}
    old_hash = stored.get(server_key)

    names = [_tool_fields(t)[0] for t in tools]
    fingerprints = {name: _fingerprint(tool) for name, tool in zip(names, tools)}
    fingerprints_json = {name: fp.model_dump(by_alias=True) for name, fp in fingerprints.items()}

    if not old_hash:
        stored = dict(stored)
        stored[server_key] = new_hash
        stored[f"{server_key}_tools"] = names
        stored[f"{server_key}_fingerprints"] = fingerprints_json
        settings_store.set(SCHEMA_HASHES_KEY, stored)
        logger.info("Schema pinned for %s: %s…", server_name, new_hash[:12])
        return SchemaPinResult(status="pinned", hash=new_hash)

    if old_hash == new_hash:
        logger.debug("Schema unchanged for %s", server_name)
        return SchemaPinResult(status="unchanged", hash=new_hash)

    old_names: List[str] = list(stored.get(f"{server_key}_tools") or [])
    old_fingerprints: Dict[str, Any] = stored.get(f"{server_key}_fingerprints") or {}
    added = [n for n in names if n not in old_names]
    removed = [n for n in old_names if n not in names]

    modified: List[ModifiedTool] = []
    for name in names:
        if name in added or name not in old_fingerprints:
            continue
        old_fp = ToolFingerprint.model_validate(old_fingerprints[name])
        new_fp = fingerprints[name]
        changes = []
        if old_fp.desc_snippet != new_fp.desc_snippet:
            changes.append("description")
        if old_fp.param_keys != new_fp.param_keys:
            changes.append("parameters")
        if old_fp.param_types != new_fp.param_types:
            changes.append("param types")
        if changes:
            modified.append(ModifiedTool(name=name, changes=changes))

    parts = []
    if added:
        parts.append(f"+{len(added)} new")
    if removed:
        parts.append(f"-{len(removed)} removed")
    if modified:
        parts.append(f"~{len(modified)} modified")
    summary = ", ".join(parts) or "unknown change"

    logger.warning(
        "Schema drift for %s (%s): added=%s removed=%s modified=%s old=%s new=%s",
        server_name,
        summary,
        added,
        removed,
        [m.name for m in modified],
        old_hash[:12],
        new_hash[:12],
    )
    if suspend_mcp_server is not None:
        await maybe_await(
            suspend_mcp_server(
                server_key,
                {
                    "new_hash": new_hash,
                    "new_tool_names": names,
                    "new_fingerprints": fingerprints_json,
                    "added": added,
                    "removed": removed,
                    "modified": [m.model_dump() for m in modified],
                    "summary": summary,
                    "server_name": server_name,
                },
            )
        )

    return SchemaPinResult(
        status="changed",
        hash=new_hash,
        added=added,
        removed=removed,
        modified=modified,
        suspended=True,
        summary=summary,
    )
