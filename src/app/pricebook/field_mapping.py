"""External pricebook payload mappings.

Defines:
- EXTERNAL_FIELD_MAP: Internal MASTER field name -> external payload key,
  per entity type.
- LOCAL_ONLY_FIELDS: Fields that live only in MASTER and are never pushed.
- to_snapshot(): Validates a raw payload and wraps it as an ExternalSnapshot.
- from_external_payload(): External payload -> MASTER fields (present keys only).
- to_external_payload(): MASTER fields -> external create/update body.
- flatten_category_tree(): Expands nested subcategories into flat payloads.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from numbers import Number
from typing import Any

from src.app.pricebook.errors import ValidationError
from src.app.pricebook.schemas import EntityType, ExternalSnapshot


# ── Field Maps ─────────────────────────────────────────────────────────────
# Internal field -> external key. "category_id" is handled separately because
# the external system nests category assignments in a list.

_ITEM_FIELDS: dict[str, str] = {
    "code": "code",
    "name": "displayName",
    "description": "description",
    "price": "price",
    "member_price": "memberPrice",
    "cost": "cost",
    "active": "active",
    "image": "defaultAssetUrl",
    "modified_on": "modifiedOn",
}

EXTERNAL_FIELD_MAP: dict[EntityType, dict[str, str]] = {
    EntityType.CATEGORY: {
        "name": "name",
        "description": "description",
        "image": "image",
        "parent_id": "parentId",
        "position": "position",
        "active": "active",
        "modified_on": "modifiedOn",
    },
    EntityType.SERVICE: {**_ITEM_FIELDS, "hours": "durationHours"},
    EntityType.MATERIAL: dict(_ITEM_FIELDS),
    EntityType.EQUIPMENT: {**_ITEM_FIELDS, "manufacturer": "manufacturer", "model": "model"},
}

# Fields never sent back to the external system.
LOCAL_ONLY_FIELDS: frozenset[str] = frozenset(
    {
        "modified_on",
        "internal_notes",
        "local_image_path",
        "sort_order",
    }
)

_NUMERIC_FIELDS = frozenset({"price", "member_price", "cost", "hours"})


# ── Conversion Functions ───────────────────────────────────────────────────


def to_snapshot(entity_type: EntityType, payload: Any) -> ExternalSnapshot:
    """Wrap a raw external payload, rejecting ones without an id.

    Raises:
        ValidationError: payload is not a mapping or has no ``id``.
    """
    if not isinstance(payload, Mapping):
        raise ValidationError(f"{entity_type.value} payload is not an object")
    raw_id = payload.get("id")
    if raw_id in (None, ""):
        raise ValidationError(f"{entity_type.value} payload has no id")
    return ExternalSnapshot(
        external_id=str(raw_id),
        entity_type=entity_type,
        payload=dict(payload),
    )


def from_external_payload(entity_type: EntityType, payload: Mapping[str, Any]) -> dict[str, Any]:
    """Convert an external payload to MASTER fields.

    Only keys actually present in the payload produce fields, so a field the
    external system never sends is left untouched by the merge.

    Raises:
        ValidationError: a known field carries a value of the wrong type.
    """
    fields: dict[str, Any] = {}
    for internal, external in EXTERNAL_FIELD_MAP[entity_type].items():
        if external not in payload:
            continue
        value = payload[external]
        if internal in _NUMERIC_FIELDS and value is not None:
            if isinstance(value, bool) or not isinstance(value, Number):
                raise ValidationError(f"{external} must be numeric, got {type(value).__name__}")
        if internal == "name" and value is not None and not isinstance(value, str):
            raise ValidationError(f"{external} must be a string")
        if internal == "parent_id" and value is not None:
            value = str(value)
        fields[internal] = value

    if entity_type != EntityType.CATEGORY and "categories" in payload:
        fields["category_id"] = _first_category_id(payload["categories"])

    return fields


def to_external_payload(entity_type: EntityType, fields: Mapping[str, Any]) -> dict[str, Any]:
    """Build the external create/update body from MASTER fields.

    Local-only fields and fields with no external mapping are dropped.
    """
    body: dict[str, Any] = {}
    for internal, external in EXTERNAL_FIELD_MAP[entity_type].items():
        if internal in LOCAL_ONLY_FIELDS or internal not in fields:
            continue
        body[external] = fields[internal]

    if entity_type != EntityType.CATEGORY and fields.get("category_id"):
        body["categories"] = [_external_id_value(fields["category_id"])]

    return body


def flatten_category_tree(payloads: Iterable[Any]) -> list[Any]:
    """Expand nested ``subcategories`` into a flat list of category payloads.

    Children inherit ``parentId`` from their parent. Non-mapping entries are
    passed through unchanged so the caller's validation reports them.
    """
    flat: list[Any] = []
    stack: list[tuple[Any, str | None]] = [(p, None) for p in reversed(list(payloads))]

    while stack:
        payload, parent_id = stack.pop()
        if not isinstance(payload, Mapping):
            flat.append(payload)
            continue

        node = {k: v for k, v in payload.items() if k != "subcategories"}
        if parent_id is not None and node.get("parentId") in (None, ""):
            node["parentId"] = parent_id
        flat.append(node)

        children = payload.get("subcategories") or []
        if isinstance(children, list):
            node_id = str(node["id"]) if node.get("id") not in (None, "") else None
            for child in reversed(children):
                stack.append((child, node_id))

    return flat


def _first_category_id(categories: Any) -> str | None:
    if not isinstance(categories, list) or not categories:
        return None
    first = categories[0]
    if isinstance(first, Mapping):
        first = first.get("id")
    return str(first) if first not in (None, "") else None


def _external_id_value(value: Any) -> Any:
    """External ids are numeric upstream; keep strings that aren't."""
    text = str(value)
    return int(text) if text.isdigit() else text
