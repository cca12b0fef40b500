from datetime import datetime, timezone

import pytest
from sqlalchemy import event
from sqlalchemy.exc import IntegrityError

from devrecon.context import RunContext
from devrecon.models import ManagedDeviceRecord, MatchedOn, SyncDocument, SyncState
from devrecon.sql_container import SqlContainer, create_store_engine
from devrecon.store import MetadataStore, Operation, OperationType, SyncStore

NOW = datetime(2024, 3, 29, tzinfo=timezone.utc)


@pytest.fixture
def engine(tmp_path):
    engine = create_store_engine(f"sqlite:///{tmp_path / 'devrecon.db'}")
    yield engine
    engine.dispose()


@pytest.fixture
def container(engine):
    container = SqlContainer(engine, "devices_all")
    container.init()
    return container


def make_documents(count: int) -> list[SyncDocument]:
    return [
        SyncDocument(
            sync_key=f"d{index}",
            sync_state=SyncState.ONLY_MDM,
            matched_on=MatchedOn.NONE,
            reconciled_at=NOW,
            mdm=ManagedDeviceRecord(id=f"i{index}", device_name=f"PC{index}"),
        )
        for index in range(count)
    ]


def test_query_pages_with_continuation(container):
    for index in range(5):
        container.execute(Operation(OperationType.UPSERT, f"d{index}", {"id": f"d{index}", "n": index}))

    first = container.query(None, 2)
    second = container.query(None, 2, first.continuation)
    third = container.query(["id"], 2, second.continuation)

    assert [item["id"] for item in first.items] == ["d0", "d1"]
    assert [item["id"] for item in second.items] == ["d2", "d3"]
    assert third.items == [{"id": "d4"}]
    assert third.continuation is None
    assert first.request_charge > 0


def test_sync_store_round_trip(container):
    store = SyncStore(container, batch_size=2, retry_base_delay_ms=0.0)
    ctx = RunContext()

    written = store.bulk_upsert(ctx, make_documents(5))
    assert written.success == 5
    assert store.count() == 5
    assert [doc.mdm.device_name for doc in store.iter_documents()] == [f"PC{i}" for i in range(5)]

    cleared = store.clear_all(ctx)
    assert cleared.deleted == 5
    assert store.count() == 0


def test_create_conflict_and_etag_checks(container):
    created = container.execute(Operation(OperationType.CREATE, "x", {"id": "x"}))
    assert created.status_code == 201

    assert container.execute(Operation(OperationType.CREATE, "x", {"id": "x"})).status_code == 409
    assert container.execute(Operation(OperationType.REPLACE, "x", {"id": "x"}, if_match="stale")).status_code == 412

    replaced = container.execute(Operation(OperationType.REPLACE, "x", {"id": "x", "v": 2}, if_match=created.etag))
    assert replaced.ok
    read = container.execute(Operation(OperationType.READ, "x"))
    assert read.resource == {"id": "x", "v": 2}
    assert read.etag == replaced.etag

    assert container.execute(Operation(OperationType.DELETE, "missing")).status_code == 404


def test_bulk_runs_items_in_one_transaction_with_per_item_outcomes(container, engine):
    container.execute(Operation(OperationType.CREATE, "x", {"id": "x"}))
    begins = []
    event.listen(engine, "begin", lambda conn: begins.append(conn))

    responses = container.bulk(
        [
            Operation(OperationType.UPSERT, "a", {"id": "a"}),
            Operation(OperationType.CREATE, "x", {"id": "x"}),
            Operation(OperationType.UPSERT, "b", {"id": "b"}),
        ]
    )

    assert [response.status_code for response in responses] == [201, 409, 201]
    assert len(begins) == 1
    assert [item["id"] for item in container.query(None, 10).items] == ["a", "b", "x"]


def test_failed_bulk_item_is_rolled_back_alone(container, monkeypatch):
    apply = container._apply

    def apply_then_fail(conn, operation):
        response = apply(conn, operation)
        if operation.id == "bad":
            raise IntegrityError("INSERT", {}, Exception("duplicate key"))
        return response

    monkeypatch.setattr(container, "_apply", apply_then_fail)

    responses = container.bulk([Operation(OperationType.UPSERT, item_id, {"id": item_id}) for item_id in ("a", "bad", "b")])

    assert [response.status_code for response in responses] == [201, 409, 201]
    assert [item["id"] for item in container.query(None, 10).items] == ["a", "b"]


def test_metadata_store_on_sql(engine):
    container = SqlContainer(engine, "sync_metadata")
    container.init()
    metadata = MetadataStore(container)

    metadata.acquire("run-1", "manual", 3600)

    assert metadata.load().in_flight["runId"] == "run-1"
