"""
Capability extraction from the plan catalog.

Product and plan metadata grant capabilities to client applications:

    capabilities            -> granted to every client
    capabilities:<clientId> -> granted to that client only

Values are comma separated and entered by hand in the Stripe dashboard, so
whitespace around entries is ignored.

The webhook pipeline uses product_capabilities for status records. The
rest (client_capabilities, capabilities_for_client, sanitize_plans) is
library surface for plan listings and capability lookups by other
handlers; nothing in the webhook path calls it.
"""

from typing import Any, Dict, Iterable, List, Mapping

from shared.constants import CAPABILITY_KEY, CAPABILITY_KEY_PREFIX


def split_capabilities(value: Any) -> List[str]:
    """Split a comma separated capability list, trimming entries and dropping blanks."""
    if not value:
        return []
    return [entry.strip() for entry in str(value).split(",") if entry.strip()]


def _is_capability_key(key: str) -> bool:
    return key == CAPABILITY_KEY or key.startswith(CAPABILITY_KEY_PREFIX)


def _unique(values: Iterable[str]) -> List[str]:
    seen = set()
    result = []
    for value in values:
        if value not in seen:
            seen.add(value)
            result.append(value)
    return result


def _metadata_sources(plan: Mapping[str, Any]) -> List[Mapping[str, str]]:
    # Product-level entries come before plan-level entries
    return [plan.get("product_metadata") or {}, plan.get("plan_metadata") or {}]


def client_capabilities(plans: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    """
    Capabilities per client across the whole catalog.

    Each client gets the generic capabilities of every plan followed by its
    own, deduplicated in order of first appearance.

    Returns:
        [{"clientId": ..., "capabilities": [...]}] in order of first appearance
    """
    for_all: List[str] = []
    by_client: Dict[str, List[str]] = {}

    for plan in plans:
        for metadata in _metadata_sources(plan):
            for key, value in metadata.items():
                if key == CAPABILITY_KEY:
                    for_all.extend(split_capabilities(value))
                elif key.startswith(CAPABILITY_KEY_PREFIX):
                    client_id = key[len(CAPABILITY_KEY_PREFIX):]
                    by_client.setdefault(client_id, []).extend(split_capabilities(value))

    return [
        {"clientId": client_id, "capabilities": _unique(for_all + capabilities)}
        for client_id, capabilities in by_client.items()
    ]


def capabilities_for_client(plans: Iterable[Mapping[str, Any]], product_id: str, client_id: str) -> List[str]:
    """One product's capabilities for one client (generic entries first)."""
    generic: List[str] = []
    specific: List[str] = []
    client_key = f"{CAPABILITY_KEY_PREFIX}{client_id}"

    for plan in plans:
        if plan.get("product_id") != product_id:
            continue
        for metadata in _metadata_sources(plan):
            generic.extend(split_capabilities(metadata.get(CAPABILITY_KEY)))
            specific.extend(split_capabilities(metadata.get(client_key)))

    return _unique(generic + specific)


def product_capabilities(plans: Iterable[Mapping[str, Any]], product_id: str) -> List[str]:
    """Every capability any plan of the product grants, to any client."""
    capabilities: List[str] = []
    for plan in plans:
        if plan.get("product_id") != product_id:
            continue
        for metadata in _metadata_sources(plan):
            for key, value in metadata.items():
                if _is_capability_key(key):
                    capabilities.extend(split_capabilities(value))
    return _unique(capabilities)


def sanitize_plans(plans: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    """Copy the catalog with capability keys removed, for public plan listings."""
    sanitized = []
    for plan in plans:
        clean = dict(plan)
        for metadata_key in ("plan_metadata", "product_metadata"):
            if metadata_key in plan:
                clean[metadata_key] = {
                    key: value
                    for key, value in (plan.get(metadata_key) or {}).items()
                    if not _is_capability_key(key)
                }
        sanitized.append(clean)
    return sanitized
