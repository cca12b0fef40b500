"""High-level orchestration of one reconciliation run."""
from __future__ import annotations

import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from typing import List, Tuple

from .auth import TokenProvider
from .checks import check_coverage
from .config import Settings
from .context import RunContext
from .errors import ConfigurationError, ReconciliationInProgressError, ReconError, RunCancelled, SourceFetchError, StoreError
from .matching import IdentityMatcher, build_documents
from .metrics import MetricsRecorder
from .models import FetchResult, ReconciliationResult, RunStatus, SyncError, SyncMetadata, utcnow
from .sources import InventorySource, MdmApiSource, ProtectionApiSource, mdm_container_source, protection_container_source
from .sql_container import SqlContainer, create_store_engine
from .store import InMemoryContainer, MetadataStore, SyncStore

LOGGER = logging.getLogger(__name__)


class RunPhase(str, Enum):
    IDLE = "idle"
    FETCHING_SOURCES = "fetching_sources"
    MATCHING = "matching"
    CLEARING_STORE = "clearing_store"
    PERSISTING = "persisting"
    COMPLETED = "completed"
    FAILED = "failed"


class _Abort(Exception):
    """Ends a run early with status ``failed`` after its errors were recorded."""


class ReconciliationEngine:
    """Fetches both inventories, matches them and rebuilds the reconciled store.

    Only one run executes at a time: a process-local lock guards this engine
    and a lease on the metadata singleton guards the store against other
    processes. The metadata record is completed exactly once per run, whatever
    the outcome.
    """

    def __init__(
        self,
        protection_source: InventorySource,
        mdm_source: InventorySource,
        store: SyncStore,
        metadata: MetadataStore,
        *,
        matcher: IdentityMatcher | None = None,
        lease_seconds: int = 3600,
    ) -> None:
        self.protection_source = protection_source
        self.mdm_source = mdm_source
        self.store = store
        self.metadata = metadata
        self.matcher = matcher or IdentityMatcher()
        self.lease_seconds = lease_seconds
        self.phase = RunPhase.IDLE
        self._lock = threading.Lock()
        self._active_run: str | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "ReconciliationEngine":
        if settings.store_url.startswith("memory://"):
            def container(name: str):
                return InMemoryContainer(name)
        else:
            engine = create_store_engine(settings.store_url)

            def container(name: str):
                sql = SqlContainer(engine, name)
                sql.init()
                return sql

        if settings.source_mode == "store":
            options = dict(
                page_size=settings.page_size,
                max_retry_attempts=settings.max_retry_attempts,
                retry_base_delay_ms=settings.retry_base_delay_ms,
                restart_attempts=settings.source_restart_attempts,
            )
            protection = protection_container_source(container(settings.protection_container), **options)
            mdm = mdm_container_source(container(settings.mdm_container), **options)
        else:
            if not (settings.token_url and settings.client_id and settings.client_secret):
                raise ConfigurationError(
                    "API source mode needs DEVRECON_TENANT_ID (or DEVRECON_TOKEN_URL), "
                    "DEVRECON_CLIENT_ID and DEVRECON_CLIENT_SECRET"
                )
            options = dict(
                page_size=settings.page_size,
                timeout=settings.request_timeout,
                max_retry_attempts=settings.max_retry_attempts,
                retry_base_delay_ms=settings.retry_base_delay_ms,
                restart_attempts=settings.source_restart_attempts,
            )
            # Each source owns its provider so closing one cannot break the other.
            protection = ProtectionApiSource(
                settings.protection_api_url,
                settings.protection_scope,
                TokenProvider(settings.token_url, settings.client_id, settings.client_secret),
                **options,
            )
            mdm = MdmApiSource(
                settings.mdm_api_url,
                settings.mdm_scope,
                TokenProvider(settings.token_url, settings.client_id, settings.client_secret),
                **options,
            )

        store = SyncStore.from_settings(container(settings.sync_container), settings)
        metadata = MetadataStore(
            container(settings.metadata_container),
            error_history_limit=settings.error_history_limit,
        )
        return cls(protection, mdm, store, metadata, lease_seconds=settings.lease_seconds)

    def close(self) -> None:
        self.protection_source.close()
        self.mdm_source.close()
        self.store.container.close()
        self.metadata.container.close()

    def __enter__(self) -> "ReconciliationEngine":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def status(self) -> SyncMetadata | None:
        return self.metadata.load()

    def run(self, ctx: RunContext | None = None, *, trigger: str = "manual") -> ReconciliationResult:
        ctx = ctx or RunContext()
        if not self._lock.acquire(blocking=False):
            raise ReconciliationInProgressError(self._active_run)
        try:
            run_id = str(uuid.uuid4())
            self.metadata.acquire(run_id, trigger, self.lease_seconds)
            self._active_run = run_id
            LOGGER.info("Reconciliation run %s started (trigger=%s)", run_id, trigger)
            return self._execute(ctx, run_id, trigger)
        finally:
            self._active_run = None
            self._lock.release()

    def _execute(self, ctx: RunContext, run_id: str, trigger: str) -> ReconciliationResult:
        started_at = utcnow()
        metrics = MetricsRecorder()
        result = ReconciliationResult(
            run_id=run_id,
            status=RunStatus.FAILED,
            phase=RunPhase.IDLE.value,
            started_at=started_at,
            finished_at=started_at,
        )
        try:
            self._run_phases(ctx, result, metrics)
        except _Abort:
            result.status = RunStatus.FAILED
        except Exception as exc:
            result.status = RunStatus.FAILED
            result.errors.append(SyncError(run_id, "internal", f"{type(exc).__name__}: {exc}"))
            LOGGER.exception("Reconciliation run %s crashed during %s", run_id, result.phase)
            raise
        finally:
            self.phase = RunPhase.COMPLETED if result.status is not RunStatus.FAILED else RunPhase.FAILED
            result.finished_at = utcnow()
            result.total_execution_ms = metrics.total_elapsed_ms()
            result.phase_ms = metrics.elapsed_ms
            result.phase_cost = metrics.costs
            self._complete(result, trigger)
        return result

    def _complete(self, result: ReconciliationResult, trigger: str) -> None:
        try:
            self.metadata.complete(result, trigger=trigger)
        except StoreError as exc:
            LOGGER.error("Could not record metadata for run %s: %s", result.run_id, exc)
        log = LOGGER.info if result.status is RunStatus.SUCCESS else LOGGER.warning
        log(
            "Reconciliation run %s finished: status=%s processed=%d failed=%d errors=%d (%.0fms, cost=%.2f)",
            result.run_id,
            result.status.value,
            result.devices_processed,
            result.devices_failed,
            len(result.errors),
            result.total_execution_ms,
            result.total_cost,
        )

    def _enter(self, ctx: RunContext, result: ReconciliationResult, phase: RunPhase) -> None:
        self.phase = phase
        result.phase = phase.value
        try:
            ctx.check(phase.value)
        except RunCancelled as exc:
            LOGGER.warning("Run %s cancelled: %s", result.run_id, exc)
            result.errors.append(SyncError(result.run_id, "cancelled", str(exc)))
            raise _Abort() from exc

    def _run_phases(self, ctx: RunContext, result: ReconciliationResult, metrics: MetricsRecorder) -> None:
        self._enter(ctx, result, RunPhase.FETCHING_SOURCES)
        protection, mdm = self._fetch_sources(ctx, result, metrics)
        result.protection_fetched = len(protection.records)
        result.mdm_fetched = len(mdm.records)
        result.api_calls = protection.requests + mdm.requests
        result.api_pages = protection.pages + mdm.pages

        self._enter(ctx, result, RunPhase.MATCHING)
        with metrics.phase("matching"):
            matches = self.matcher.match(protection.records, mdm.records)
            documents = build_documents(matches, utcnow())
        problems = check_coverage(protection.records, mdm.records, documents)
        if problems:
            raise ReconError(f"Reconciled documents failed the coverage check: {'; '.join(problems[:5])}")
        result.total_processed = len(documents)
        result.matched = len(matches.pairs)
        result.only_protection = len(matches.only_protection)
        result.only_mdm = len(matches.only_mdm)
        result.ambiguous = dict(matches.ambiguous)
        result.percentages = metrics.percentages(result.matched, result.only_protection, result.only_mdm)

        self._enter(ctx, result, RunPhase.CLEARING_STORE)
        with metrics.phase("clear") as timer:
            cleared = self.store.clear_all(ctx)
            timer.add_cost(cleared.cost)
        result.deleted = cleared.deleted
        result.errors.extend(cleared.errors)

        # From here on the store has been touched; cancellation only skips batches.
        self.phase = RunPhase.PERSISTING
        result.phase = RunPhase.PERSISTING.value
        with metrics.phase("upsert") as timer:
            outcome = self.store.bulk_upsert(ctx, documents)
            timer.add_cost(outcome.cost)
        result.devices_processed = outcome.success
        result.devices_failed = outcome.failure + outcome.skipped
        result.errors.extend(outcome.errors)

        result.phase = RunPhase.COMPLETED.value
        result.status = RunStatus.PARTIAL if result.errors else RunStatus.SUCCESS

    def _fetch_sources(
        self,
        ctx: RunContext,
        result: ReconciliationResult,
        metrics: MetricsRecorder,
    ) -> Tuple[FetchResult, FetchResult]:
        fetch_ctx = ctx.child()
        guard = threading.Lock()
        primary: List[SourceFetchError] = []

        def fetch(source: InventorySource, phase: str) -> FetchResult:
            with metrics.phase(phase) as timer:
                try:
                    fetched = source.fetch_all(fetch_ctx)
                except SourceFetchError as exc:
                    with guard:
                        if not fetch_ctx.cancelled:
                            primary.append(exc)
                            fetch_ctx.cancel(f"{source.name} fetch failed")
                    raise
                timer.add_cost(fetched.cost)
                return fetched

        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="devrecon-fetch") as pool:
            futures = [
                pool.submit(fetch, self.protection_source, "fetchProtection"),
                pool.submit(fetch, self.mdm_source, "fetchMdm"),
            ]
        fetched: List[FetchResult] = []
        failures: List[SourceFetchError] = []
        for future in futures:
            try:
                fetched.append(future.result())
            except SourceFetchError as exc:
                failures.append(exc)

        if failures:
            for exc in primary or failures:
                result.errors.append(SyncError(exc.source, "source_fetch", exc.message))
            LOGGER.error(
                "Run %s aborted before any write: %s",
                result.run_id,
                "; ".join(str(exc) for exc in primary or failures),
            )
            raise _Abort()
        return fetched[0], fetched[1]
