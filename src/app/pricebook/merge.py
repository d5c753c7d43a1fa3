"""Override-preserving field merge for pulls, and push payload construction.

Tie-break rules:
- Pull: an overridden field keeps its local value; every other field present
  in the external snapshot takes the external value. Fields the snapshot does
  not carry are left alone. ``force`` lets external values win over overrides
  and drops those overrides.
- Push: the payload is built from MASTER as it stands, never from a fresh
  snapshot, so local wins over external.

Both functions are pure; persistence is the engine's job.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from src.app.pricebook.field_mapping import to_external_payload
from src.app.pricebook.schemas import MasterRecord, RecordSource

_MISSING = object()


@dataclass
class MergeOutcome:
    """Result of merging one snapshot into a record."""

    fields: dict[str, Any]
    overridden_fields: set[str]
    source: RecordSource
    changed_fields: list[str] = field(default_factory=list)
    preserved_fields: list[str] = field(default_factory=list)
    cleared_overrides: list[str] = field(default_factory=list)
    source_changed: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.changed_fields or self.cleared_overrides or self.source_changed)


def merge_snapshot(
    record: MasterRecord,
    incoming: dict[str, Any],
    *,
    force: bool = False,
) -> MergeOutcome:
    """Merge external field values into an existing record.

    Args:
        record: Current MASTER state.
        incoming: Fields mapped from the external snapshot (present keys only).
        force: Let external values replace overridden fields too.

    Returns:
        MergeOutcome; ``changed`` is False when applying the snapshot would
        leave the record exactly as it is.
    """
    fields = dict(record.fields)
    overridden = set(record.overridden_fields)
    outcome = MergeOutcome(fields=fields, overridden_fields=overridden, source=record.source)

    for name, value in incoming.items():
        if name in overridden:
            if not force:
                outcome.preserved_fields.append(name)
                continue
            overridden.discard(name)
            outcome.cleared_overrides.append(name)

        if fields.get(name, _MISSING) != value:
            fields[name] = value
            outcome.changed_fields.append(name)

    source = RecordSource.MERGED if overridden else RecordSource.EXTERNAL
    outcome.source_changed = source != record.source
    outcome.source = source
    return outcome


def build_push_payload(record: MasterRecord) -> dict[str, Any]:
    """Serialize a record's fields for the external create/update call."""
    return to_external_payload(record.entity_type, record.fields)
