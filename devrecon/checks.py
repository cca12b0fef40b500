"""Deterministic consistency checks over reconciled documents."""
from __future__ import annotations

from collections import Counter
from typing import Iterable, List, Sequence

from .models import ManagedDeviceRecord, MatchedOn, ProtectionDeviceRecord, SyncDocument, SyncState


def validate_document(document: SyncDocument) -> list[str]:
    key = document.sync_key
    problems: List[str] = []
    state = document.sync_state
    if state is SyncState.MATCHED:
        if document.protection is None or document.mdm is None:
            problems.append(f"{key}: matched document must embed both records")
        if document.matched_on is MatchedOn.NONE:
            problems.append(f"{key}: matched document has no matchedOn key")
    elif state is SyncState.ONLY_PROTECTION:
        if document.protection is None or document.mdm is not None:
            problems.append(f"{key}: only_protection document must embed exactly the protection record")
    elif state is SyncState.ONLY_MDM:
        if document.mdm is None or document.protection is not None:
            problems.append(f"{key}: only_mdm document must embed exactly the MDM record")
    if state is not SyncState.MATCHED and document.matched_on is not MatchedOn.NONE:
        problems.append(f"{key}: unmatched document carries matchedOn={document.matched_on.value}")
    return problems


def check_coverage(
    protection: Iterable[ProtectionDeviceRecord],
    mdm: Iterable[ManagedDeviceRecord],
    documents: Sequence[SyncDocument],
) -> list[str]:
    """Every input device must appear in exactly one document, under a unique key."""

    problems: List[str] = []
    for document in documents:
        problems.extend(validate_document(document))

    keys = Counter(document.sync_key for document in documents)
    for key, count in sorted(keys.items()):
        if count > 1:
            problems.append(f"sync key {key} used by {count} documents")

    problems.extend(
        _coverage(
            "protection",
            [record.id for record in protection],
            Counter(document.protection.id for document in documents if document.protection),
        )
    )
    problems.extend(
        _coverage(
            "mdm",
            [record.id for record in mdm],
            Counter(document.mdm.id for document in documents if document.mdm),
        )
    )
    return problems


def _coverage(source: str, expected: list[str], seen: Counter) -> list[str]:
    problems: List[str] = []
    for record_id in expected:
        count = seen.pop(record_id, 0)
        if count != 1:
            problems.append(f"{source} device {record_id} appears in {count} documents")
    for record_id in sorted(seen):
        problems.append(f"{source} device {record_id} appears in documents but was never fetched")
    return problems
