"""Keyed document store for the reconciled view and its metadata singleton.

``SyncStore`` is the only writer of the reconciled collection during a run.
It talks to a :class:`DocumentContainer`, a deliberately small protocol that
mirrors what document databases offer: paged queries with continuation
tokens, bulk calls with a status code and request charge per item, and single
item operations with optimistic concurrency through etags.
"""
from __future__ import annotations

import json
import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Protocol, Sequence

from .context import RunContext, backoff_delay
from .errors import (
    BulkOperationFailure,
    ConflictError,
    PartialBatchFailure,
    ReconciliationInProgressError,
    StoreError,
    StoreThrottledError,
    ThrottlingError,
)
from .models import (
    METADATA_ID,
    BulkResult,
    ClearResult,
    ReconciliationResult,
    SyncDocument,
    SyncError,
    SyncMetadata,
    SyncState,
    format_timestamp,
    parse_iso,
    utcnow,
)

LOGGER = logging.getLogger(__name__)

STATUS_NOT_FOUND = 404
STATUS_CONFLICT = 409
STATUS_PRECONDITION_FAILED = 412
STATUS_THROTTLED = 429


class OperationType(str, Enum):
    CREATE = "Create"
    UPSERT = "Upsert"
    REPLACE = "Replace"
    READ = "Read"
    DELETE = "Delete"


@dataclass(frozen=True, slots=True)
class Operation:
    type: OperationType
    id: str
    body: Optional[Dict[str, Any]] = None
    if_match: Optional[str] = None


@dataclass(slots=True)
class OperationResponse:
    status_code: int
    request_charge: float = 0.0
    etag: Optional[str] = None
    resource: Optional[Dict[str, Any]] = None
    retry_after_ms: Optional[float] = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


@dataclass(slots=True)
class FeedPage:
    items: List[Dict[str, Any]]
    request_charge: float = 0.0
    continuation: Optional[str] = None


class DocumentContainer(Protocol):
    name: str

    def query(
        self,
        fields: Sequence[str] | None = None,
        max_item_count: int = 100,
        continuation: str | None = None,
    ) -> FeedPage: ...

    def bulk(self, operations: Sequence[Operation]) -> List[OperationResponse]: ...

    def execute(self, operation: Operation) -> OperationResponse: ...

    def close(self) -> None: ...


class InMemoryContainer:
    """Thread-safe in-process container with a request-charge model.

    ``throttle`` is called for every item operation; returning ``True`` makes
    that operation answer 429, which is how load shedding is simulated.
    """

    READ_CHARGE = 1.0
    WRITE_CHARGE = 5.0
    PAGE_CHARGE = 2.0

    def __init__(
        self,
        name: str = "devices_all",
        *,
        throttle: Callable[[Operation], bool] | None = None,
        retry_after_ms: float | None = None,
    ) -> None:
        self.name = name
        self.throttle = throttle
        self.retry_after_ms = retry_after_ms
        self._items: Dict[str, tuple[Dict[str, Any], str]] = {}
        self._lock = threading.RLock()
        self.bulk_calls = 0
        self.execute_calls = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def seed(self, items: Iterable[Dict[str, Any]]) -> None:
        with self._lock:
            for item in items:
                self._items[str(item["id"])] = (dict(item), uuid.uuid4().hex)

    def ids(self) -> List[str]:
        with self._lock:
            return sorted(self._items)

    def get(self, item_id: str) -> Dict[str, Any] | None:
        with self._lock:
            entry = self._items.get(item_id)
            return dict(entry[0]) if entry else None

    def close(self) -> None:
        return None

    def _write_charge(self, body: Dict[str, Any] | None) -> float:
        size_kb = len(json.dumps(body or {}, default=str)) / 1024.0
        return round(self.WRITE_CHARGE + size_kb, 2)

    def query(
        self,
        fields: Sequence[str] | None = None,
        max_item_count: int = 100,
        continuation: str | None = None,
    ) -> FeedPage:
        with self._lock:
            keys = sorted(key for key in self._items if continuation is None or key > continuation)
            page_keys = keys[:max_item_count]
            items = []
            for key in page_keys:
                body = self._items[key][0]
                if fields:
                    items.append({name: body.get(name) for name in fields})
                else:
                    items.append(dict(body))
            per_item = 0.02 if fields else 0.1
            charge = round(self.PAGE_CHARGE + per_item * len(items), 2)
            next_token = page_keys[-1] if len(keys) > max_item_count else None
            return FeedPage(items=items, request_charge=charge, continuation=next_token)

    def bulk(self, operations: Sequence[Operation]) -> List[OperationResponse]:
        with self._lock:
            self.bulk_calls += 1
        return [self._apply(operation) for operation in operations]

    def execute(self, operation: Operation) -> OperationResponse:
        with self._lock:
            self.execute_calls += 1
        return self._apply(operation)

    def _apply(self, operation: Operation) -> OperationResponse:
        if self.throttle is not None and self.throttle(operation):
            return OperationResponse(STATUS_THROTTLED, 0.0, retry_after_ms=self.retry_after_ms)

        with self._lock:
            current = self._items.get(operation.id)
            kind = operation.type
            if kind is OperationType.READ:
                if current is None:
                    return OperationResponse(STATUS_NOT_FOUND, self.READ_CHARGE)
                return OperationResponse(200, self.READ_CHARGE, etag=current[1], resource=dict(current[0]))
            if kind is OperationType.DELETE:
                if current is None:
                    return OperationResponse(STATUS_NOT_FOUND, self.READ_CHARGE)
                del self._items[operation.id]
                return OperationResponse(204, self.WRITE_CHARGE)

            charge = self._write_charge(operation.body)
            if kind is OperationType.CREATE and current is not None:
                return OperationResponse(STATUS_CONFLICT, charge)
            if kind is OperationType.REPLACE:
                if current is None:
                    return OperationResponse(STATUS_NOT_FOUND, charge)
                if operation.if_match is not None and operation.if_match != current[1]:
                    return OperationResponse(STATUS_PRECONDITION_FAILED, charge)
            etag = uuid.uuid4().hex
            self._items[operation.id] = (dict(operation.body or {}), etag)
            status = 201 if current is None else 200
            return OperationResponse(status, charge, etag=etag, resource=dict(operation.body or {}))


def _chunks(items: Sequence[Operation], size: int) -> Iterator[Sequence[Operation]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


def _item_error(operation: Operation, response: OperationResponse) -> SyncError:
    if response.status_code == STATUS_CONFLICT:
        exc: Exception = ConflictError(f"HTTP {response.status_code}: conflict writing {operation.id}")
        return SyncError(operation.id, "conflict", str(exc))
    exc = PartialBatchFailure(f"HTTP {response.status_code}: {operation.type.value} failed for {operation.id}")
    return SyncError(operation.id, "partial_batch", str(exc))


class SyncStore:
    """Full-clear and resilient bulk upsert over the reconciled collection."""

    def __init__(
        self,
        container: DocumentContainer,
        *,
        batch_size: int = 100,
        max_retry_attempts: int = 3,
        retry_base_delay_ms: float = 1000.0,
        max_retry_workers: int = 4,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self.container = container
        self.batch_size = batch_size
        self.max_retry_attempts = max_retry_attempts
        self.retry_base_delay_ms = retry_base_delay_ms
        self.max_retry_workers = max_retry_workers

    @classmethod
    def from_settings(cls, container: DocumentContainer, settings) -> "SyncStore":
        return cls(
            container,
            batch_size=settings.batch_size,
            max_retry_attempts=settings.max_retry_attempts,
            retry_base_delay_ms=settings.retry_base_delay_ms,
            max_retry_workers=settings.max_retry_workers,
        )

    # -- reads -----------------------------------------------------------

    def _pages(self, fields: Sequence[str] | None = None) -> Iterator[FeedPage]:
        continuation: str | None = None
        while True:
            page = self.container.query(fields, self.batch_size, continuation)
            yield page
            continuation = page.continuation
            if not continuation:
                return

    def count(self) -> int:
        return sum(len(page.items) for page in self._pages(["id"]))

    def iter_documents(self, sync_state: SyncState | None = None) -> Iterator[SyncDocument]:
        for page in self._pages():
            for item in page.items:
                if sync_state is not None and item.get("syncState") != sync_state.value:
                    continue
                yield SyncDocument.from_json(item)

    # -- writes ----------------------------------------------------------

    def clear_all(self, ctx: RunContext) -> ClearResult:
        """Delete every document currently in the collection (best effort)."""

        result = ClearResult()
        ids: List[str] = []
        for page in self._pages(["id"]):
            result.cost += page.request_charge
            ids.extend(str(item["id"]) for item in page.items)
        LOGGER.info(
            "Listed %d existing documents in %s for deletion (cost=%.2f)",
            len(ids),
            self.container.name,
            result.cost,
        )
        if not ids:
            return result

        operations = [Operation(OperationType.DELETE, item_id) for item_id in ids]
        outcome = self._run_batches(ctx, operations, missing_ok=True)
        result.deleted = outcome.success
        result.failed = outcome.failure + outcome.skipped
        result.cost += outcome.cost
        result.errors = [
            SyncError(error.key, "clear", f"{error.kind}: {error.message}") for error in outcome.errors
        ]
        if result.failed:
            LOGGER.warning("Clear left %d document(s) behind in %s", result.failed, self.container.name)
        return result

    def bulk_upsert(self, ctx: RunContext, documents: Sequence[SyncDocument]) -> BulkResult:
        if not documents:
            LOGGER.warning("Bulk upsert called with no documents")
            return BulkResult()
        operations = [
            Operation(OperationType.UPSERT, document.sync_key, document.as_json())
            for document in documents
        ]
        LOGGER.info(
            "Starting bulk upsert of %d documents in batches of %d",
            len(operations),
            self.batch_size,
        )
        result = self._run_batches(ctx, operations)
        LOGGER.info(
            "Bulk upsert finished: %d succeeded, %d failed, %d skipped (cost=%.2f)",
            result.success,
            result.failure,
            result.skipped,
            result.cost,
        )
        return result

    def _run_batches(
        self,
        ctx: RunContext,
        operations: Sequence[Operation],
        *,
        missing_ok: bool = False,
    ) -> BulkResult:
        result = BulkResult()
        total_batches = (len(operations) + self.batch_size - 1) // self.batch_size
        for number, batch in enumerate(_chunks(operations, self.batch_size), start=1):
            if ctx.cancelled:
                remaining = len(operations) - (number - 1) * self.batch_size
                LOGGER.warning(
                    "Run cancelled (%s); not starting batch %d/%d, %d item(s) skipped",
                    ctx.reason,
                    number,
                    total_batches,
                    remaining,
                )
                result.skipped += remaining
                result.cancelled = True
                result.errors.append(
                    SyncError(batch[0].id, "cancelled", f"{remaining} item(s) not written: {ctx.reason}")
                )
                break
            LOGGER.debug("Processing batch %d/%d (%d items)", number, total_batches, len(batch))
            result.merge(self._submit_batch(ctx, batch, missing_ok=missing_ok))
        return result

    def _submit_batch(
        self,
        ctx: RunContext,
        batch: Sequence[Operation],
        *,
        missing_ok: bool = False,
    ) -> BulkResult:
        outcome = BulkResult(batches=1)
        attempt = 0
        while True:
            try:
                responses = self.container.bulk(batch)
                break
            except StoreThrottledError as exc:
                if attempt >= self.max_retry_attempts:
                    error = ThrottlingError(batch[0].id, attempt + 1, exc.retry_after_ms)
                    return self._fail_batch(outcome, batch, "throttled", f"bulk call {error}")
                delay = backoff_delay(attempt, self.retry_base_delay_ms, exc.retry_after_ms)
                attempt += 1
                LOGGER.warning(
                    "Bulk call throttled, retrying in %.2fs (attempt %d/%d)",
                    delay,
                    attempt,
                    self.max_retry_attempts,
                )
                if not ctx.sleep(delay):
                    return self._fail_batch(outcome, batch, "cancelled", "cancelled during bulk backoff")
            except StoreError as exc:
                error = BulkOperationFailure(f"bulk call failed: {exc}")
                LOGGER.error("Bulk call for %d item(s) failed: %s", len(batch), exc)
                return self._fail_batch(outcome, batch, "bulk_failure", str(error))

        throttled: List[tuple[Operation, OperationResponse]] = []
        for operation, response in zip(batch, responses):
            outcome.cost += response.request_charge
            if response.ok:
                outcome.success += 1
            elif missing_ok and response.status_code == STATUS_NOT_FOUND:
                continue
            elif response.status_code == STATUS_THROTTLED:
                throttled.append((operation, response))
            else:
                outcome.failure += 1
                outcome.errors.append(_item_error(operation, response))

        if not throttled:
            return outcome

        if len(throttled) * 2 < len(batch):
            LOGGER.warning(
                "Retrying %d throttled item(s) of %d individually",
                len(throttled),
                len(batch),
            )
            self._retry_individually(ctx, throttled, outcome)
        else:
            LOGGER.warning(
                "%d of %d items throttled; batch reported failed without per-item retries",
                len(throttled),
                len(batch),
            )
            for operation, _ in throttled:
                outcome.failure += 1
                outcome.errors.append(
                    SyncError(
                        operation.id,
                        "throttled",
                        f"HTTP 429: {len(throttled)}/{len(batch)} of the batch throttled, not retried",
                    )
                )
        return outcome

    def _fail_batch(self, outcome: BulkResult, batch: Sequence[Operation], kind: str, message: str) -> BulkResult:
        outcome.failure += len(batch)
        outcome.errors.extend(SyncError(operation.id, kind, message) for operation in batch)
        return outcome

    def _retry_individually(
        self,
        ctx: RunContext,
        throttled: Sequence[tuple[Operation, OperationResponse]],
        outcome: BulkResult,
    ) -> None:
        workers = max(1, min(self.max_retry_workers, len(throttled)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="devrecon-retry") as pool:
            futures = [
                pool.submit(self._retry_item, ctx, operation, response.retry_after_ms)
                for operation, response in throttled
            ]
            for future in futures:
                succeeded, cost, error = future.result()
                outcome.cost += cost
                if succeeded:
                    outcome.success += 1
                else:
                    outcome.failure += 1
                    if error is not None:
                        outcome.errors.append(error)

    def _retry_item(
        self,
        ctx: RunContext,
        operation: Operation,
        hint_ms: float | None,
    ) -> tuple[bool, float, SyncError | None]:
        cost = 0.0
        for attempt in range(self.max_retry_attempts):
            if not ctx.sleep(backoff_delay(attempt, self.retry_base_delay_ms, hint_ms)):
                return False, cost, SyncError(operation.id, "cancelled", "cancelled while waiting to retry")
            try:
                response = self.container.execute(operation)
            except StoreThrottledError as exc:
                hint_ms = exc.retry_after_ms
                continue
            except StoreError as exc:
                return False, cost, SyncError(operation.id, "partial_batch", f"retry failed: {exc}")
            cost += response.request_charge
            if response.ok:
                return True, cost, None
            if response.status_code != STATUS_THROTTLED:
                return False, cost, _item_error(operation, response)
            hint_ms = response.retry_after_ms
        error = ThrottlingError(operation.id, self.max_retry_attempts, hint_ms)
        LOGGER.warning("Giving up on %s: %s", operation.id, error)
        return False, cost, SyncError(operation.id, "throttled", str(error))


@dataclass(slots=True)
class _Loaded:
    metadata: Optional[SyncMetadata] = None
    etag: Optional[str] = None


class MetadataStore:
    """Reads and writes the ``sync_metadata`` singleton.

    The singleton doubles as the in-flight guard: ``acquire`` stamps a lease on
    it with an etag-conditioned write, so two processes cannot both start a
    clear-then-write sequence.
    """

    def __init__(self, container: DocumentContainer, *, error_history_limit: int = 100) -> None:
        self.container = container
        self.error_history_limit = error_history_limit

    def _read(self) -> _Loaded:
        response = self.container.execute(Operation(OperationType.READ, METADATA_ID))
        if response.status_code == STATUS_NOT_FOUND:
            return _Loaded()
        if not response.ok:
            raise StoreError(f"Reading {METADATA_ID} returned HTTP {response.status_code}")
        return _Loaded(SyncMetadata.from_json(response.resource or {}), response.etag)

    def load(self) -> SyncMetadata | None:
        return self._read().metadata

    def acquire(
        self,
        run_id: str,
        trigger: str,
        lease_seconds: int,
        *,
        now: datetime | None = None,
    ) -> SyncMetadata | None:
        """Take the in-flight lease; return the metadata as it was before."""

        now = now or utcnow()
        loaded = self._read()
        current = loaded.metadata
        if current is not None and current.in_flight:
            holder = current.in_flight.get("runId")
            expires_at = parse_iso(current.in_flight.get("expiresAt"))
            if expires_at is not None and expires_at > now:
                raise ReconciliationInProgressError(holder)
            LOGGER.warning("Taking over expired in-flight lease held by run %s", holder)

        updated = SyncMetadata.from_json(current.as_json()) if current else SyncMetadata()
        updated.in_flight = {
            "runId": run_id,
            "trigger": trigger,
            "acquiredAt": format_timestamp(now),
            "expiresAt": format_timestamp(now + timedelta(seconds=lease_seconds)),
        }
        updated.updated_at = now
        if current is None:
            operation = Operation(OperationType.CREATE, METADATA_ID, updated.as_json())
        else:
            operation = Operation(OperationType.REPLACE, METADATA_ID, updated.as_json(), if_match=loaded.etag)
        response = self.container.execute(operation)
        if response.status_code in (STATUS_CONFLICT, STATUS_PRECONDITION_FAILED):
            raise ReconciliationInProgressError(None)
        if not response.ok:
            raise StoreError(f"Writing {METADATA_ID} lease returned HTTP {response.status_code}")
        return current

    def complete(self, result: ReconciliationResult, *, trigger: str) -> SyncMetadata:
        """Record the finished run and drop its lease."""

        current = self._read().metadata or SyncMetadata()
        in_flight = current.in_flight
        if in_flight and in_flight.get("runId") not in (None, result.run_id):
            # Another run took over an expired lease; leave it in place.
            LOGGER.warning("Lease now held by run %s; keeping it", in_flight.get("runId"))
        else:
            in_flight = None

        updated = SyncMetadata(
            last_run_id=result.run_id,
            last_trigger=trigger,
            last_sync_start=result.started_at,
            last_sync_end=result.finished_at,
            last_status=result.status,
            devices_processed=result.devices_processed,
            devices_failed=result.devices_failed,
            total_devices_fetched=result.total_fetched,
            execution_time_ms=round(result.total_execution_ms, 2),
            matched=result.matched,
            only_protection=result.only_protection,
            only_mdm=result.only_mdm,
            api_calls=result.api_calls,
            api_pages=result.api_pages,
            run_cost=round(result.total_cost, 2),
            cumulative_cost=round(current.cumulative_cost + result.total_cost, 2),
            errors=list(result.errors[-self.error_history_limit:]),
            previous_run=current.snapshot() or current.previous_run,
            in_flight=in_flight,
            updated_at=utcnow(),
        )
        response = self.container.execute(Operation(OperationType.UPSERT, METADATA_ID, updated.as_json()))
        if not response.ok:
            raise StoreError(f"Writing {METADATA_ID} returned HTTP {response.status_code}")
        return updated
