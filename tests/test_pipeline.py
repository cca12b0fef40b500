import pytest

from devrecon.config import Settings
from devrecon.context import RunContext
from devrecon.errors import ConfigurationError, ReconciliationInProgressError, ReconError
from devrecon.matching import IdentityMatcher, MatchResult
from devrecon.models import RunStatus
from devrecon.pipeline import ReconciliationEngine, RunPhase
from devrecon.store import InMemoryContainer, MetadataStore

PROTECTION_PAGES = [
    [
        {"id": "p1", "aadDeviceId": "x1", "computerDnsName": "PC1"},
        {"id": "p2", "serialNumber": "S1"},
    ],
    [
        {"id": "p3", "computerDnsName": "PC9"},
    ],
]

MDM_PAGES = [
    [
        {"id": "i1", "azureADDeviceId": "x1", "deviceName": "PC1-NEW"},
        {"id": "i2", "serialNumber": "s1"},
        {"id": "i3", "deviceName": "LAPTOP7"},
    ],
]


def stored_states(container):
    return sorted((item["syncKey"], item["syncState"], item["matchedOn"]) for item in container.query(None, 1000).items)


def test_successful_run_rebuilds_store_and_records_metadata(make_engine, sync_container, metadata_container):
    sync_container.seed([{"id": "stale-1", "syncKey": "stale-1"}, {"id": "stale-2", "syncKey": "stale-2"}])
    engine = make_engine(PROTECTION_PAGES, MDM_PAGES)

    result = engine.run(RunContext(), trigger="manual")

    assert result.status is RunStatus.SUCCESS
    assert engine.phase is RunPhase.COMPLETED
    assert (result.matched, result.only_protection, result.only_mdm) == (2, 1, 1)
    assert (result.protection_fetched, result.mdm_fetched, result.api_pages) == (3, 3, 3)
    assert result.deleted == 2
    assert stored_states(sync_container) == [
        ("i2", "matched", "serial"),
        ("i3", "only_mdm", "none"),
        ("p3", "only_protection", "none"),
        ("x1", "matched", "directoryId"),
    ]

    metadata = MetadataStore(metadata_container).load()
    assert metadata.last_status is RunStatus.SUCCESS
    assert metadata.last_run_id == result.run_id
    assert metadata.devices_processed == 4
    assert metadata.total_devices_fetched == 6
    assert metadata.in_flight is None


def test_result_payload_has_phase_breakdown(make_engine):
    payload = make_engine(PROTECTION_PAGES, MDM_PAGES).run().as_json()

    assert set(payload["performance"]["phases"]) == {"fetchProtectionMs", "fetchMdmMs", "matchingMs", "clearMs", "upsertMs"}
    assert set(payload["resourceUsage"]["breakdown"]) == {"fetchProtectionCost", "fetchMdmCost", "clearCost", "upsertCost"}
    assert payload["resourceUsage"]["breakdown"]["fetchProtectionCost"] == 3.0
    assert payload["statistics"] == {"totalProcessed": 4, "matched": 2, "onlyProtection": 1, "onlyMdm": 1, "errorCount": 0}
    assert payload["percentages"] == {"matched": 50.0, "onlyProtection": 25.0, "onlyMdm": 25.0}
    assert "errors" not in payload


def test_running_twice_gives_identical_documents(make_engine, sync_container):
    engine = make_engine(PROTECTION_PAGES, MDM_PAGES)
    engine.run()
    first = stored_states(sync_container)
    engine.run()

    assert stored_states(sync_container) == first
    assert len(sync_container) == 4


def test_second_run_records_previous_snapshot(make_engine, metadata_container):
    engine = make_engine(PROTECTION_PAGES, MDM_PAGES)
    first = engine.run()
    engine.run(trigger="scheduled")

    metadata = MetadataStore(metadata_container).load()
    assert metadata.previous_run["runId"] == first.run_id
    assert metadata.last_trigger == "scheduled"


def test_source_failure_aborts_before_any_write(make_engine, sync_container, metadata_container):
    sync_container.seed([{"id": "keep", "syncKey": "keep"}])
    engine = make_engine(PROTECTION_PAGES, MDM_PAGES, mdm_fail_at=0)

    result = engine.run()

    assert result.status is RunStatus.FAILED
    assert engine.phase is RunPhase.FAILED
    assert result.phase == RunPhase.FETCHING_SOURCES.value
    assert sync_container.ids() == ["keep"]
    assert [(error.key, error.kind) for error in result.errors] == [("mdm", "source_fetch")]
    assert MetadataStore(metadata_container).load().last_status is RunStatus.FAILED


def test_write_failures_make_run_partial(make_engine, make_store):
    container = InMemoryContainer(throttle=lambda operation: operation.id == "p3")
    engine = make_engine(PROTECTION_PAGES, MDM_PAGES, store=make_store(container, max_retry_attempts=2))

    result = engine.run()

    assert result.status is RunStatus.PARTIAL
    assert (result.devices_processed, result.devices_failed) == (3, 1)
    assert result.as_json()["errors"][0]["syncKey"] == "p3"
    assert "p3" not in container.ids()


def test_cancelled_before_start_leaves_store_untouched(make_engine, sync_container):
    sync_container.seed([{"id": "keep", "syncKey": "keep"}])
    ctx = RunContext()
    ctx.cancel("maintenance window")

    result = make_engine(PROTECTION_PAGES, MDM_PAGES).run(ctx)

    assert result.status is RunStatus.FAILED
    assert result.errors[0].kind == "cancelled"
    assert sync_container.ids() == ["keep"]


def test_lease_held_elsewhere_rejects_run(make_engine, metadata_container):
    MetadataStore(metadata_container).acquire("other-process", "scheduled", 3600)
    engine = make_engine(PROTECTION_PAGES, MDM_PAGES)

    with pytest.raises(ReconciliationInProgressError):
        engine.run()


def test_coverage_violation_fails_run_and_propagates(make_engine, sync_container, metadata_container):
    class LosingMatcher(IdentityMatcher):
        def match(self, protection, mdm):
            return MatchResult()

    sync_container.seed([{"id": "keep", "syncKey": "keep"}])
    engine = make_engine(PROTECTION_PAGES, MDM_PAGES, matcher=LosingMatcher())

    with pytest.raises(ReconError, match="coverage"):
        engine.run()

    metadata = MetadataStore(metadata_container).load()
    assert metadata.last_status is RunStatus.FAILED
    assert metadata.errors[0].kind == "internal"
    assert metadata.in_flight is None
    assert sync_container.ids() == ["keep"]


def test_close_closes_sources(make_engine):
    engine = make_engine(PROTECTION_PAGES, MDM_PAGES)
    with engine:
        pass
    assert engine.protection_source.closed and engine.mdm_source.closed


def test_from_settings_requires_credentials_for_api_mode():
    with pytest.raises(ConfigurationError):
        ReconciliationEngine.from_settings(Settings(store_url="memory://"))


def test_from_settings_with_store_sources_runs_empty_inventory():
    settings = Settings(store_url="memory://", source_mode="store", retry_base_delay_ms=0.0)

    with ReconciliationEngine.from_settings(settings) as engine:
        result = engine.run()

    assert result.status is RunStatus.SUCCESS
    assert result.total_processed == 0
