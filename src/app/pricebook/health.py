"""Pricebook health and duplicate analysis.

Pure computations over MASTER records, pending-sync entries and job history:

- Completeness: share of required fields (name, price, description, image,
  category assignment) populated across each category's services and
  materials, 0-100.
- Duplicates: per (entity type, category), records sorted by normalized
  name and again by punctuation-folded name; each is compared only with its
  next few neighbours in either order, so detection stays O(n log n).
- Needs attention: dead-lettered entries, low-completeness items and
  possible duplicates, ranked by a tiered severity so every dead-letter
  outranks every completeness problem, which in turn outranks every
  duplicate.
- Coverage: linked vs local-only records and last successful sync per type.
"""

from __future__ import annotations

import re
from collections import defaultdict
from collections.abc import Iterable
from difflib import SequenceMatcher
from typing import Any

from src.app.pricebook.schemas import (
    AttentionItem,
    CategoryCompleteness,
    DuplicatePair,
    EntityType,
    HealthReport,
    JobStatus,
    MasterRecord,
    PendingCounts,
    PendingStatus,
    PendingSyncEntry,
    SyncCoverage,
    SyncJob,
)

REQUIRED_FIELDS = ("name", "price", "description", "image", "category_id")

SCORED_ENTITY_TYPES = (EntityType.SERVICE, EntityType.MATERIAL)

UNCATEGORIZED = "uncategorized"

_PUNCTUATION = re.compile(r"[\W_]+")

# Severity tiers. Bands do not overlap: dead-letter >= 100,
# low completeness in [30, 40], duplicate in [10, 20].
DEAD_LETTER_SEVERITY = 100.0
LOW_COMPLETENESS_SEVERITY = 30.0
DUPLICATE_SEVERITY = 10.0


def normalize_name(name: str) -> str:
    """Case-fold and collapse whitespace."""
    return " ".join(name.casefold().split())


def fold_name(name: str) -> str:
    """normalize_name with punctuation and underscores treated as spaces."""
    return " ".join(_PUNCTUATION.sub(" ", name.casefold()).split())


def _is_populated(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, dict)):
        return bool(value)
    return True


def _missing_fields(record: MasterRecord) -> list[str]:
    return [f for f in REQUIRED_FIELDS if not _is_populated(record.fields.get(f))]


def _grouping_key(record: MasterRecord) -> str | None:
    if record.entity_type == EntityType.CATEGORY:
        parent = record.fields.get("parent_id")
        return str(parent) if parent not in (None, "") else None
    category = record.fields.get("category_id")
    return str(category) if category not in (None, "") else None


class PricebookHealthAnalyzer:
    """Read-only health analytics.

    Args:
        completeness_threshold: Items scoring below this (0-100) need attention.
        similarity_threshold: SequenceMatcher ratio at which names pair up.
        window: Number of sorted neighbours each name is compared with.
    """

    def __init__(
        self,
        *,
        completeness_threshold: float = 60.0,
        similarity_threshold: float = 0.85,
        window: int = 5,
    ) -> None:
        self._completeness_threshold = completeness_threshold
        self._similarity_threshold = similarity_threshold
        self._window = max(1, window)

    # ── Completeness ────────────────────────────────────────────────────

    def completeness(self, records: Iterable[MasterRecord]) -> list[CategoryCompleteness]:
        """Per-category completeness of services and materials.

        Items are matched to categories by ``category_id``, which may hold
        either the category's external id or its MASTER id. Items with no
        known category are reported under ``uncategorized``.
        """
        live = [r for r in records if not r.is_deleted]
        categories = [r for r in live if r.entity_type == EntityType.CATEGORY]

        lookup: dict[str, MasterRecord] = {}
        for category in categories:
            lookup[category.id] = category
            if category.external_id:
                lookup[category.external_id] = category

        items_by_category: dict[str, list[MasterRecord]] = defaultdict(list)
        for record in live:
            if record.entity_type not in SCORED_ENTITY_TYPES:
                continue
            category = lookup.get(str(record.fields.get("category_id") or ""))
            items_by_category[category.id if category else UNCATEGORIZED].append(record)

        results: list[CategoryCompleteness] = []
        for category in categories:
            results.append(
                self._score(category.id, category.fields.get("name"), items_by_category.get(category.id, []))
            )
        if items_by_category.get(UNCATEGORIZED):
            results.append(self._score(UNCATEGORIZED, None, items_by_category[UNCATEGORIZED]))
        return results

    def _score(self, category_id: str, name: Any, items: list[MasterRecord]) -> CategoryCompleteness:
        if not items:
            return CategoryCompleteness(category_id=category_id, category_name=name, item_count=0, score=None)

        missing: dict[str, int] = defaultdict(int)
        for item in items:
            for field_name in _missing_fields(item):
                missing[field_name] += 1

        slots = len(items) * len(REQUIRED_FIELDS)
        populated = slots - sum(missing.values())
        return CategoryCompleteness(
            category_id=category_id,
            category_name=name,
            item_count=len(items),
            score=round(100.0 * populated / slots, 1),
            missing=dict(missing),
        )

    @staticmethod
    def overall(completeness: list[CategoryCompleteness]) -> float | None:
        scores = [c.score for c in completeness if c.score is not None]
        if not scores:
            return None
        return round(sum(scores) / len(scores), 1)

    # ── Duplicates ──────────────────────────────────────────────────────

    def find_duplicates(
        self,
        records: Iterable[MasterRecord],
        dismissed: set[tuple[str, str]] | None = None,
    ) -> list[DuplicatePair]:
        """Candidate duplicate pairs within the same entity type and category.

        Each group is walked twice: sorted by normalized name, then sorted by
        punctuation-folded name. The second pass keeps "AC Tune-Up" and
        "ac tune up" adjacent even when other names sort between their
        normalized forms.
        """
        dismissed = dismissed or set()
        groups: dict[tuple[EntityType, str | None], list[tuple[str, str, MasterRecord]]] = defaultdict(list)

        for record in records:
            name = record.fields.get("name")
            if record.is_deleted or not isinstance(name, str) or not name.strip():
                continue
            groups[(record.entity_type, _grouping_key(record))].append(
                (normalize_name(name), fold_name(name), record)
            )

        found: dict[tuple[str, str], DuplicatePair] = {}
        for (entity_type, category_id), members in groups.items():
            for sort_index in (0, 1):
                members.sort(key=lambda m: (m[sort_index], m[2].id))
                for i, (first_norm, first_folded, first) in enumerate(members):
                    for second_norm, second_folded, second in members[i + 1 : i + 1 + self._window]:
                        low, high = sorted((first, second), key=lambda r: r.id)
                        key = (low.id, high.id)
                        if key in found or key in dismissed:
                            continue
                        if first_norm == second_norm or first_folded == second_folded:
                            similarity = 1.0
                        else:
                            similarity = SequenceMatcher(None, first_norm, second_norm).ratio()
                        if similarity < self._similarity_threshold:
                            continue
                        found[key] = DuplicatePair(
                            entity_type=entity_type,
                            category_id=category_id,
                            first_id=low.id,
                            second_id=high.id,
                            first_name=low.fields["name"],
                            second_name=high.fields["name"],
                            similarity=round(similarity, 3),
                        )

        pairs = list(found.values())
        pairs.sort(key=lambda p: (-p.similarity, p.entity_type.value, p.first_id))
        return pairs


    # ── Needs attention ─────────────────────────────────────────────────

    def needs_attention(
        self,
        records: Iterable[MasterRecord],
        pending: Iterable[PendingSyncEntry],
        duplicates: Iterable[DuplicatePair],
    ) -> list[AttentionItem]:
        """Entities ranked by summed severity, highest first."""
        live = [r for r in records if not r.is_deleted]
        by_id = {r.id: r for r in live}
        by_external = {(r.entity_type, r.external_id): r for r in live if r.external_id}
        items: dict[tuple[EntityType, str], AttentionItem] = {}

        def bump(entity_type: EntityType, entity_id: str, name: Any, severity: float, reason: str) -> None:
            key = (entity_type, entity_id)
            item = items.get(key)
            if item is None:
                item = AttentionItem(
                    entity_type=entity_type,
                    entity_id=entity_id,
                    name=name if isinstance(name, str) else None,
                    severity=0.0,
                )
                items[key] = item
            item.severity = round(item.severity + severity, 3)
            item.reasons.append(reason)

        for entry in pending:
            if entry.status != PendingStatus.DEAD_LETTER:
                continue
            record = by_id.get(entry.entity_id or "") or by_external.get((entry.entity_type, entry.external_id))
            entity_id = record.id if record else (entry.entity_id or entry.external_id or entry.id)
            bump(
                entry.entity_type,
                entity_id,
                record.fields.get("name") if record else None,
                DEAD_LETTER_SEVERITY + entry.attempts,
                f"{entry.action.value} dead-lettered after {entry.attempts} attempts: {entry.last_error}",
            )

        for record in live:
            if record.entity_type not in SCORED_ENTITY_TYPES:
                continue
            missing = _missing_fields(record)
            score = 100.0 * (len(REQUIRED_FIELDS) - len(missing)) / len(REQUIRED_FIELDS)
            if score >= self._completeness_threshold:
                continue
            deficit = 1.0 - score / 100.0
            bump(
                record.entity_type,
                record.id,
                record.fields.get("name"),
                LOW_COMPLETENESS_SEVERITY + 10.0 * deficit,
                f"completeness {score:.0f}%, missing {', '.join(missing)}",
            )

        for pair in duplicates:
            severity = DUPLICATE_SEVERITY + 10.0 * pair.similarity
            bump(pair.entity_type, pair.first_id, pair.first_name, severity,
                 f"possible duplicate of {pair.second_name!r}")
            bump(pair.entity_type, pair.second_id, pair.second_name, severity,
                 f"possible duplicate of {pair.first_name!r}")

        return sorted(items.values(), key=lambda i: (-i.severity, i.entity_type.value, i.entity_id))

    # ── Coverage ────────────────────────────────────────────────────────

    def coverage(self, records: Iterable[MasterRecord], jobs: Iterable[SyncJob]) -> list[SyncCoverage]:
        totals: dict[EntityType, SyncCoverage] = {t: SyncCoverage(entity_type=t) for t in EntityType}

        for record in records:
            if record.is_deleted:
                continue
            entry = totals[record.entity_type]
            entry.total += 1
            if record.external_id:
                entry.linked += 1
            else:
                entry.local_only += 1

        for job in jobs:
            if job.status != JobStatus.SUCCEEDED or job.finished_at is None:
                continue
            entry = totals[job.entity_type]
            if entry.last_synced_at is None or job.finished_at > entry.last_synced_at:
                entry.last_synced_at = job.finished_at

        return list(totals.values())

    # ── Report ──────────────────────────────────────────────────────────

    def report(
        self,
        records: list[MasterRecord],
        pending: list[PendingSyncEntry],
        *,
        jobs: list[SyncJob] | None = None,
        counts: PendingCounts | None = None,
        dismissed: set[tuple[str, str]] | None = None,
        entity_type: EntityType | None = None,
    ) -> HealthReport:
        """Assemble the full health snapshot, optionally for one entity type.

        Completeness always needs categories for naming, so the filter is
        applied to the scored items rather than to the input records.
        """
        if entity_type is None:
            scoped = records
        else:
            scoped = [r for r in records if r.entity_type == entity_type]

        if entity_type in (None, EntityType.CATEGORY):
            completeness = self.completeness(records)
        elif entity_type in SCORED_ENTITY_TYPES:
            categories = [r for r in records if r.entity_type == EntityType.CATEGORY]
            completeness = self.completeness(categories + scoped)
        else:
            completeness = []

        duplicates = self.find_duplicates(scoped, dismissed)
        scoped_pending = [p for p in pending if entity_type is None or p.entity_type == entity_type]
        coverage = self.coverage(scoped, jobs or [])
        if entity_type is not None:
            coverage = [c for c in coverage if c.entity_type == entity_type]

        return HealthReport(
            overall_completeness=self.overall(completeness),
            completeness=completeness,
            needs_attention=self.needs_attention(scoped, scoped_pending, duplicates),
            duplicates=duplicates,
            coverage=coverage,
            pending=counts or PendingCounts(),
        )
