"""Field extraction helpers shared by all provider adapters.

Vendor payloads arrive flat, wrapped (``items``/``data``/``asset``/``assets``),
or as JSON:API ``data``/``attributes`` envelopes. Adapters compose these
helpers explicitly instead of inheriting behavior:

- dig(): dotted-path lookup ("attributes.deviceName", "company.id")
- first_value(): first non-empty value among ordered fallback paths
- extract_items(): item list out of a page body
- webhook_items(): item list out of a push payload
- normalize_asset(): NormalizedAsset or None when the external id is empty
- generic_asset(): convention-based mapping used by the default webhook path
- discovered_client(): DiscoveredClient or None when the id is empty
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import Any

from src.assetsync.integrations.schemas import (
    DEFAULT_EXTERNAL_TYPE,
    DiscoveredClient,
    NormalizedAsset,
)

GENERIC_ASSET_NAME = "External Asset"

# Ordered fallbacks for convention-following vendors.
GENERIC_FIELD_PATHS: dict[str, tuple[str, ...]] = {
    "external_id": ("id", "external_id", "attributes.id", "attributes.external_id"),
    "external_type": ("type", "external_type", "attributes.type", "attributes.external_type"),
    "name": ("name", "attributes.name", "attributes.deviceName"),
    "hostname": ("hostname", "attributes.hostname"),
    "ip_address": ("ip_address", "ipAddress", "attributes.ip_address", "attributes.ipAddress"),
    "status": ("status", "attributes.status"),
    "external_client_id": ("external_client_id", "attributes.external_client_id"),
    "external_client_name": ("external_client_name", "attributes.external_client_name"),
    "last_seen_at": ("last_seen_at", "attributes.last_seen_at"),
}


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def dig(data: Any, path: str, default: Any = None) -> Any:
    """Follow a dotted path through nested dicts.

    Keys containing dots are not supported; vendor keys such as
    ``primary-ip`` or ``page[size]`` are fine.
    """
    current = data
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return default
        current = current[part]
    return current


def first_value(data: Any, *paths: str, default: Any = None) -> Any:
    """Return the first non-empty value found among ``paths``."""
    for path in paths:
        value = dig(data, path)
        if not _is_empty(value):
            return value
    return default


def _dict_items(values: Iterable[Any]) -> list[dict[str, Any]]:
    return [v for v in values if isinstance(v, dict)]


def extract_items(
    payload: Any,
    keys: tuple[str, ...] = ("items", "data"),
    fallback_to_payload: bool = True,
) -> list[dict[str, Any]]:
    """Pull the item list out of a page body.

    Args:
        payload: Decoded JSON body.
        keys: Envelope keys checked in order.
        fallback_to_payload: Treat a bare list body as the item list.

    Returns:
        Dict items only; scalars and nested lists are dropped.
    """
    if isinstance(payload, list):
        return _dict_items(payload) if fallback_to_payload else []
    if not isinstance(payload, dict):
        return []
    for key in keys:
        value = payload.get(key)
        if isinstance(value, list):
            return _dict_items(value)
        if isinstance(value, dict):
            return [value]
    return []


def webhook_items(payload: Any) -> list[dict[str, Any]]:
    """Items carried by a push payload.

    Accepts an ``asset`` object, an ``assets`` array, a ``data`` envelope
    (object or array), a bare array, or a bare item.
    """
    if isinstance(payload, list):
        return _dict_items(payload)
    if not isinstance(payload, dict):
        return []
    if isinstance(payload.get("asset"), dict):
        return [payload["asset"]]
    if isinstance(payload.get("assets"), list):
        return _dict_items(payload["assets"])
    data = payload.get("data")
    if isinstance(data, list):
        return _dict_items(data)
    if isinstance(data, dict):
        return [data]
    return [payload]


def normalize_asset(item: dict[str, Any], **fields: Any) -> NormalizedAsset | None:
    """Build a NormalizedAsset from already-extracted fields.

    The original item is kept as metadata unless ``metadata`` is given.

    Returns:
        None when the external id is missing or blank; such items are
        skipped rather than counted as failures.
    """
    if _is_empty(fields.get("external_id")):
        return None
    fields.setdefault("metadata", item)
    return NormalizedAsset(**fields)


def generic_asset(item: dict[str, Any], default_name: str = GENERIC_ASSET_NAME) -> NormalizedAsset | None:
    """Map an item using the conventional field names and JSON:API attributes."""
    fields = {field: first_value(item, *paths) for field, paths in GENERIC_FIELD_PATHS.items()}
    fields["external_type"] = fields["external_type"] or DEFAULT_EXTERNAL_TYPE
    fields["name"] = fields["name"] or default_name
    return normalize_asset(item, **fields)


def map_items(
    items: Iterable[dict[str, Any]],
    mapper: Callable[[dict[str, Any]], NormalizedAsset | None],
) -> list[NormalizedAsset]:
    """Apply a vendor mapper and drop items it rejects."""
    assets: list[NormalizedAsset] = []
    for item in items:
        asset = mapper(item)
        if asset is not None:
            assets.append(asset)
    return assets


def discovered_client(
    item: dict[str, Any],
    id_paths: tuple[str, ...] = ("id", "external_client_id"),
    name_paths: tuple[str, ...] = ("name", "external_client_name"),
    default_name: str | None = None,
) -> DiscoveredClient | None:
    """Build a DiscoveredClient, or None when no id is present."""
    external_id = first_value(item, *id_paths)
    if _is_empty(external_id):
        return None
    name = first_value(item, *name_paths, default=default_name)
    return DiscoveredClient(
        external_client_id=str(external_id).strip(),
        external_client_name=None if name is None else str(name),
        metadata=item,
    )
