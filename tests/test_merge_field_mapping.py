"""Tests for external payload mapping and the override-preserving merge."""

from __future__ import annotations

import pytest

from src.app.pricebook.errors import ValidationError
from src.app.pricebook.field_mapping import (
    flatten_category_tree,
    from_external_payload,
    to_external_payload,
    to_snapshot,
)
from src.app.pricebook.merge import build_push_payload, merge_snapshot
from src.app.pricebook.schemas import EntityType, MasterRecord, RecordSource


def _record(**kwargs) -> MasterRecord:
    defaults = dict(
        id="rec-1",
        tenant_id="t-1",
        entity_type=EntityType.SERVICE,
        external_id="42",
        fields={"name": "Drain Cleaning", "price": 100.0},
    )
    defaults.update(kwargs)
    return MasterRecord(**defaults)


# ── Field Mapping ────────────────────────────────────────────────────────────


class TestFieldMapping:
    """External payload <-> MASTER field conversion."""

    def test_snapshot_requires_id(self):
        with pytest.raises(ValidationError):
            to_snapshot(EntityType.SERVICE, {"displayName": "No id"})

    def test_snapshot_rejects_non_mapping(self):
        with pytest.raises(ValidationError):
            to_snapshot(EntityType.SERVICE, ["not", "a", "dict"])

    def test_snapshot_stringifies_id(self):
        snapshot = to_snapshot(EntityType.MATERIAL, {"id": 17})
        assert snapshot.external_id == "17"

    def test_only_present_keys_are_mapped(self):
        fields = from_external_payload(EntityType.SERVICE, {"id": 1, "displayName": "Tune-up"})
        assert fields == {"name": "Tune-up"}

    def test_service_fields_and_category(self):
        fields = from_external_payload(
            EntityType.SERVICE,
            {
                "id": 1,
                "displayName": "Tune-up",
                "price": 89.5,
                "durationHours": 1.5,
                "defaultAssetUrl": "https://cdn/img.png",
                "categories": [{"id": 300}, {"id": 301}],
            },
        )
        assert fields["price"] == 89.5
        assert fields["hours"] == 1.5
        assert fields["image"] == "https://cdn/img.png"
        assert fields["category_id"] == "300"

    def test_empty_categories_clear_assignment(self):
        fields = from_external_payload(EntityType.MATERIAL, {"id": 1, "categories": []})
        assert fields["category_id"] is None

    def test_non_numeric_price_rejected(self):
        with pytest.raises(ValidationError):
            from_external_payload(EntityType.SERVICE, {"id": 1, "price": "cheap"})

    def test_boolean_price_rejected(self):
        with pytest.raises(ValidationError):
            from_external_payload(EntityType.SERVICE, {"id": 1, "price": True})

    def test_category_parent_id_stringified(self):
        fields = from_external_payload(EntityType.CATEGORY, {"id": 2, "name": "Pipes", "parentId": 1})
        assert fields == {"name": "Pipes", "parent_id": "1"}

    def test_to_external_drops_local_only_fields(self):
        body = to_external_payload(
            EntityType.SERVICE,
            {"name": "Tune-up", "price": 10, "internal_notes": "x", "modified_on": "2026-01-01"},
        )
        assert body == {"displayName": "Tune-up", "price": 10}

    def test_to_external_wraps_numeric_category(self):
        body = to_external_payload(EntityType.SERVICE, {"name": "A", "category_id": "300"})
        assert body["categories"] == [300]

    def test_to_external_keeps_non_numeric_category(self):
        body = to_external_payload(EntityType.MATERIAL, {"name": "A", "category_id": "cat-x"})
        assert body["categories"] == ["cat-x"]


class TestFlattenCategoryTree:
    def test_children_inherit_parent(self):
        tree = [
            {
                "id": 1,
                "name": "Plumbing",
                "subcategories": [
                    {"id": 2, "name": "Drains", "subcategories": [{"id": 3, "name": "Main line"}]},
                ],
            },
            {"id": 4, "name": "HVAC"},
        ]

        flat = flatten_category_tree(tree)

        assert [c["id"] for c in flat] == [1, 2, 3, 4]
        assert "subcategories" not in flat[0]
        assert flat[1]["parentId"] == "1"
        assert flat[2]["parentId"] == "2"
        assert "parentId" not in flat[3]

    def test_explicit_parent_is_kept(self):
        flat = flatten_category_tree([{"id": 1, "subcategories": [{"id": 2, "parentId": 99}]}])
        assert flat[1]["parentId"] == 99

    def test_non_mapping_entries_pass_through(self):
        assert flatten_category_tree(["junk"]) == ["junk"]


# ── Merge ────────────────────────────────────────────────────────────────────


class TestMergeSnapshot:
    """Tie-break rules between external values and local overrides."""

    def test_external_values_win_without_overrides(self):
        outcome = merge_snapshot(_record(), {"price": 120.0})

        assert outcome.changed
        assert outcome.fields["price"] == 120.0
        assert outcome.changed_fields == ["price"]
        assert outcome.source == RecordSource.EXTERNAL

    def test_identical_snapshot_is_unchanged(self):
        outcome = merge_snapshot(_record(), {"name": "Drain Cleaning", "price": 100.0})
        assert outcome.changed is False

    def test_overridden_field_is_preserved(self):
        record = _record(
            fields={"name": "Drain Cleaning", "price": 75.0},
            overridden_fields={"price"},
            source=RecordSource.MERGED,
        )

        outcome = merge_snapshot(record, {"price": 120.0, "name": "Drain Clean"})

        assert outcome.fields["price"] == 75.0
        assert outcome.fields["name"] == "Drain Clean"
        assert outcome.preserved_fields == ["price"]
        assert outcome.source == RecordSource.MERGED

    def test_force_clears_overrides(self):
        record = _record(
            fields={"name": "Drain Cleaning", "price": 75.0},
            overridden_fields={"price"},
            source=RecordSource.MERGED,
        )

        outcome = merge_snapshot(record, {"price": 120.0}, force=True)

        assert outcome.fields["price"] == 120.0
        assert outcome.overridden_fields == set()
        assert outcome.cleared_overrides == ["price"]
        assert outcome.source == RecordSource.EXTERNAL

    def test_force_with_equal_value_still_counts_as_change(self):
        record = _record(
            fields={"price": 120.0},
            overridden_fields={"price"},
            source=RecordSource.MERGED,
        )

        outcome = merge_snapshot(record, {"price": 120.0}, force=True)

        assert outcome.changed
        assert outcome.changed_fields == []

    def test_missing_fields_left_alone(self):
        record = _record(fields={"name": "A", "description": "kept"})
        outcome = merge_snapshot(record, {"name": "B"})
        assert outcome.fields["description"] == "kept"

    def test_input_record_not_mutated(self):
        record = _record()
        merge_snapshot(record, {"price": 1.0})
        assert record.fields["price"] == 100.0


class TestBuildPushPayload:
    def test_uses_master_values(self):
        record = _record(fields={"name": "Local Name", "price": 55.0, "internal_notes": "private"})
        assert build_push_payload(record) == {"displayName": "Local Name", "price": 55.0}
