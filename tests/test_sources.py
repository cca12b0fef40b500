import pytest
import requests

from devrecon.auth import StaticTokenProvider
from devrecon.context import RunContext
from devrecon.errors import SourceFetchError, StoreThrottledError
from devrecon.normalization import protection_record_from_api
from devrecon.sources import (
    ContainerInventorySource,
    MdmApiSource,
    ProtectionApiSource,
    mdm_container_source,
    protection_container_source,
)
from devrecon.store import InMemoryContainer

BASE_URL = "https://api.example.test/machines"


class FakeResponse:
    def __init__(self, status_code=200, payload=None, headers=None):
        self.status_code = status_code
        self._payload = payload
        self.headers = headers or {}

    def json(self):
        if self._payload is None:
            raise ValueError("no body")
        return self._payload


class FakeSession:
    """Replays scripted responses (or raises scripted exceptions) in order."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []
        self.closed = False

    def get(self, url, params=None, headers=None, timeout=None):
        self.calls.append({"url": url, "params": params, "headers": headers, "timeout": timeout})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def close(self):
        self.closed = True


def page(items, next_link=None):
    payload = {"value": items}
    if next_link:
        payload["@odata.nextLink"] = next_link
    return FakeResponse(200, payload)


def make_source(session, cls=ProtectionApiSource, **kwargs):
    kwargs.setdefault("retry_base_delay_ms", 0.0)
    return cls(BASE_URL, "scope/.default", StaticTokenProvider("t0k3n"), session=session, **kwargs)


def test_fetch_all_follows_next_links():
    session = FakeSession(
        page([{"id": "m1"}, {"id": "m2"}], next_link=f"{BASE_URL}?$skiptoken=abc"),
        page([{"id": "m3"}]),
    )
    source = make_source(session, page_size=2)

    result = source.fetch_all(RunContext())

    assert [record.id for record in result.records] == ["m1", "m2", "m3"]
    assert (result.pages, result.requests, result.cost) == (2, 2, 0.0)
    assert session.calls[0]["params"] == {"$top": 2}
    assert session.calls[1]["params"] is None
    assert session.calls[1]["url"].endswith("$skiptoken=abc")
    assert session.calls[0]["headers"]["Authorization"] == "Bearer t0k3n"


def test_throttled_page_is_retried_with_hint():
    session = FakeSession(FakeResponse(429, headers={"Retry-After": "0"}), page([{"id": "i1"}]))
    source = make_source(session, cls=MdmApiSource)

    result = source.fetch_all(RunContext())

    assert [record.id for record in result.records] == ["i1"]
    assert (result.pages, result.requests) == (1, 2)


def test_throttling_beyond_attempt_cap_fails_source():
    session = FakeSession(*[FakeResponse(503) for _ in range(3)])
    source = make_source(session, max_retry_attempts=2)

    with pytest.raises(SourceFetchError, match="HTTP 503"):
        source.fetch_all(RunContext())


def test_unauthorised_is_an_authentication_failure():
    source = make_source(FakeSession(FakeResponse(401)))

    with pytest.raises(SourceFetchError) as excinfo:
        source.fetch_all(RunContext())

    assert excinfo.value.source == "protection"
    assert "authentication failed" in excinfo.value.message


def test_failure_on_later_page_returns_nothing():
    session = FakeSession(page([{"id": "m1"}], next_link=f"{BASE_URL}?page=2"), requests.ConnectionError("reset"))
    source = make_source(session)

    with pytest.raises(SourceFetchError, match="request failed"):
        source.fetch_all(RunContext())


def test_timeout_is_reported_as_fetch_error():
    source = make_source(FakeSession(requests.Timeout("slow")))

    with pytest.raises(SourceFetchError, match="timed out"):
        source.fetch_all(RunContext())


def test_malformed_payload_fails_source():
    source = make_source(FakeSession(FakeResponse(200, {"items": []})))

    with pytest.raises(SourceFetchError, match="no 'value' array"):
        source.fetch_all(RunContext())


def test_non_object_payload_fails_source():
    source = make_source(FakeSession(FakeResponse(200, [{"id": "m1"}])), cls=MdmApiSource)

    with pytest.raises(SourceFetchError, match="not a JSON object") as excinfo:
        source.fetch_all(RunContext())
    assert excinfo.value.source == "mdm"


def test_restart_begins_again_from_first_page():
    session = FakeSession(
        page([{"id": "m1"}], next_link=f"{BASE_URL}?page=2"),
        FakeResponse(500),
        page([{"id": "m1"}], next_link=f"{BASE_URL}?page=2"),
        page([{"id": "m2"}]),
    )
    source = make_source(session, restart_attempts=1)

    result = source.fetch_all(RunContext())

    assert [record.id for record in result.records] == ["m1", "m2"]
    assert session.calls[2]["url"] == BASE_URL


def test_duplicate_ids_across_pages_keep_last_copy():
    session = FakeSession(
        page([{"id": "m1", "computerDnsName": "old"}], next_link=f"{BASE_URL}?page=2"),
        page([{"id": "m1", "computerDnsName": "new"}]),
    )

    result = make_source(session).fetch_all(RunContext())

    assert [(record.id, record.hostname) for record in result.records] == [("m1", "new")]


def test_cancelled_context_fails_fetch_before_first_request():
    ctx = RunContext()
    ctx.cancel("shutting down")
    session = FakeSession()

    with pytest.raises(SourceFetchError, match="shutting down"):
        make_source(session).fetch_all(ctx)
    assert session.calls == []


def test_injected_session_is_not_closed_by_source():
    session = FakeSession()
    make_source(session).close()
    assert session.closed is False


def test_container_source_reads_mirrored_snapshot():
    container = InMemoryContainer("devices_mdm")
    container.seed({"id": f"i{index}", "deviceName": f"PC{index}"} for index in range(3))
    source = mdm_container_source(container, page_size=2)

    result = source.fetch_all(RunContext())

    assert [record.device_name for record in result.records] == ["PC0", "PC1", "PC2"]
    assert result.pages == 2
    assert result.cost > 0


def test_container_source_accepts_keyword_options():
    container = InMemoryContainer("devices_protection")
    container.seed([{"id": "m1", "computerDnsName": "pc-1"}])
    source = ContainerInventorySource(
        "protection",
        container,
        protection_record_from_api,
        page_size=5,
        max_retry_attempts=1,
        retry_base_delay_ms=0.0,
        restart_attempts=2,
    )

    assert source.name == "protection"
    assert source.restart_attempts == 2
    assert [record.hostname for record in source.fetch_all(RunContext()).records] == ["pc-1"]


def test_container_source_retries_throttled_query():
    class ThrottledOnce(InMemoryContainer):
        def __init__(self, name):
            super().__init__(name)
            self.queries = 0

        def query(self, fields, max_items, continuation=None):
            self.queries += 1
            if self.queries == 1:
                raise StoreThrottledError("busy", retry_after_ms=0)
            return super().query(fields, max_items, continuation)

    container = ThrottledOnce("devices_protection")
    container.seed([{"id": "m1"}])
    source = protection_container_source(container, retry_base_delay_ms=0.0, restart_attempts=1)

    result = source.fetch_all(RunContext())

    assert [record.id for record in result.records] == ["m1"]
    assert result.requests == 2
