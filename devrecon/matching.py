"""Identity matching between protection and MDM device inventories."""
from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Sequence, Tuple

from .models import ManagedDeviceRecord, MatchedOn, ProtectionDeviceRecord, SyncDocument, SyncState
from .normalization import normalise_directory_id, normalise_hostname, normalise_serial

LOGGER = logging.getLogger(__name__)

KEY_PRIORITY: Tuple[MatchedOn, ...] = (MatchedOn.DIRECTORY_ID, MatchedOn.SERIAL, MatchedOn.HOSTNAME)

_PROTECTION_KEYS: Dict[MatchedOn, Callable[[ProtectionDeviceRecord], str | None]] = {
    MatchedOn.DIRECTORY_ID: lambda record: normalise_directory_id(record.directory_device_id),
    MatchedOn.SERIAL: lambda record: normalise_serial(record.serial_number),
    MatchedOn.HOSTNAME: lambda record: normalise_hostname(record.hostname),
}

_MANAGED_KEYS: Dict[MatchedOn, Callable[[ManagedDeviceRecord], str | None]] = {
    MatchedOn.DIRECTORY_ID: lambda record: normalise_directory_id(record.directory_device_id),
    MatchedOn.SERIAL: lambda record: normalise_serial(record.serial_number),
    MatchedOn.HOSTNAME: lambda record: normalise_hostname(record.device_name),
}


class MatchResult:
    """Container for matched pairs and the leftovers of each side."""

    def __init__(self) -> None:
        self.pairs: List[Tuple[ProtectionDeviceRecord, ManagedDeviceRecord, MatchedOn]] = []
        self.only_protection: List[ProtectionDeviceRecord] = []
        self.only_mdm: List[ManagedDeviceRecord] = []
        self.ambiguous: Dict[str, int] = {key.value: 0 for key in KEY_PRIORITY}

    def add_pair(self, protection: ProtectionDeviceRecord, mdm: ManagedDeviceRecord, matched_on: MatchedOn) -> None:
        self.pairs.append((protection, mdm, matched_on))

    @property
    def total(self) -> int:
        return len(self.pairs) + len(self.only_protection) + len(self.only_mdm)


def _index(records: Sequence, extractors: Dict[MatchedOn, Callable]) -> Dict[MatchedOn, Dict[str, List[int]]]:
    indexes: Dict[MatchedOn, Dict[str, List[int]]] = {key: defaultdict(list) for key in KEY_PRIORITY}
    for position, record in enumerate(records):
        for key in KEY_PRIORITY:
            value = extractors[key](record)
            if value is not None:
                indexes[key][value].append(position)
    return indexes


class IdentityMatcher:
    """Pairs devices on directory id, then serial, then hostname.

    Each key gets its own pass over the records still unmatched. A value pairs
    two records only when exactly one record on each side carries it, counting
    records already paired on an earlier key; anything else is ambiguous and
    left for the next key. Because every accepted pair within a pass is
    one-to-one, the result does not depend on the order in which either
    inventory was fetched.
    """

    def __init__(self, keys: Iterable[MatchedOn] = KEY_PRIORITY) -> None:
        self.keys = tuple(keys)
        unknown = [key for key in self.keys if key not in _PROTECTION_KEYS]
        if unknown:
            raise ValueError(f"Cannot match on {unknown}")

    def match(
        self,
        protection: Sequence[ProtectionDeviceRecord],
        mdm: Sequence[ManagedDeviceRecord],
    ) -> MatchResult:
        result = MatchResult()
        protection_index = _index(protection, _PROTECTION_KEYS)
        mdm_index = _index(mdm, _MANAGED_KEYS)
        matched_protection: set[int] = set()
        matched_mdm: set[int] = set()

        for key in self.keys:
            accepted = 0
            candidates = mdm_index[key]
            for value, positions in protection_index[key].items():
                open_protection = [i for i in positions if i not in matched_protection]
                if not open_protection:
                    continue
                carriers = candidates.get(value, ())
                open_mdm = [j for j in carriers if j not in matched_mdm]
                if not open_mdm:
                    continue
                if len(positions) != 1 or len(carriers) != 1:
                    result.ambiguous[key.value] += 1
                    LOGGER.debug(
                        "Ambiguous %s %r: %d protection vs %d mdm candidates",
                        key.value,
                        value,
                        len(positions),
                        len(carriers),
                    )
                    continue
                p_pos, m_pos = open_protection[0], open_mdm[0]
                matched_protection.add(p_pos)
                matched_mdm.add(m_pos)
                result.add_pair(protection[p_pos], mdm[m_pos], key)
                accepted += 1
            LOGGER.debug("Pass on %s matched %d pair(s)", key.value, accepted)

        result.only_protection = [record for i, record in enumerate(protection) if i not in matched_protection]
        result.only_mdm = [record for j, record in enumerate(mdm) if j not in matched_mdm]

        LOGGER.info(
            "Matched %d pair(s); %d only in protection, %d only in MDM",
            len(result.pairs),
            len(result.only_protection),
            len(result.only_mdm),
        )
        if any(result.ambiguous.values()):
            LOGGER.warning("Ambiguous identity values left unmatched: %s", result.ambiguous)
        return result


def match_records(
    protection: Sequence[ProtectionDeviceRecord],
    mdm: Sequence[ManagedDeviceRecord],
) -> MatchResult:
    return IdentityMatcher().match(protection, mdm)


def _candidate_key(protection: ProtectionDeviceRecord | None, mdm: ManagedDeviceRecord | None) -> str:
    if mdm is not None and mdm.directory_device_id:
        return mdm.directory_device_id
    if protection is not None and protection.directory_device_id:
        return protection.directory_device_id
    if mdm is not None:
        return mdm.id
    return protection.id


def build_documents(result: MatchResult, reconciled_at: datetime) -> List[SyncDocument]:
    """Turn a match result into documents with unique, order-independent keys."""

    entries: List[Tuple[SyncState, MatchedOn, ProtectionDeviceRecord | None, ManagedDeviceRecord | None]] = []
    entries.extend((SyncState.MATCHED, matched_on, p, m) for p, m, matched_on in result.pairs)
    entries.extend((SyncState.ONLY_PROTECTION, MatchedOn.NONE, p, None) for p in result.only_protection)
    entries.extend((SyncState.ONLY_MDM, MatchedOn.NONE, None, m) for m in result.only_mdm)

    by_candidate: Dict[str, int] = defaultdict(int)
    candidates = [_candidate_key(p, m) for _, _, p, m in entries]
    for candidate in candidates:
        by_candidate[candidate] += 1

    documents: List[SyncDocument] = []
    for candidate, (state, matched_on, protection, mdm) in zip(candidates, entries):
        key = candidate
        if by_candidate[candidate] > 1:
            if mdm is not None:
                key = f"{candidate}:mdm:{mdm.id}"
            else:
                key = f"{candidate}:protection:{protection.id}"
        documents.append(
            SyncDocument(
                sync_key=key,
                sync_state=state,
                matched_on=matched_on,
                reconciled_at=reconciled_at,
                protection=protection,
                mdm=mdm,
            )
        )

    collisions = sum(count for count in by_candidate.values() if count > 1)
    if collisions:
        LOGGER.warning("%d document(s) shared a sync key candidate and were qualified", collisions)
    documents.sort(key=lambda document: document.sync_key)
    return documents
