import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest

from devrecon.errors import SourceFetchError
from devrecon.normalization import managed_record_from_api, protection_record_from_api
from devrecon.pipeline import ReconciliationEngine
from devrecon.sources import InventorySource, Page
from devrecon.store import InMemoryContainer, MetadataStore, SyncStore


class FakeSource(InventorySource):
    """Serves canned pages; ``fail_at`` raises on that page index."""

    def __init__(self, name, pages, parser, *, fail_at=None, restart_attempts=0):
        super().__init__(restart_attempts=restart_attempts)
        self.name = name
        self._pages = pages
        self._parser = parser
        self.fail_at = fail_at
        self.calls = 0
        self.closed = False

    def parse(self, payload):
        return self._parser(payload)

    def close(self):
        self.closed = True

    def pages(self, ctx):
        self.calls += 1
        for number, items in enumerate(self._pages):
            if self.fail_at is not None and number == self.fail_at:
                raise SourceFetchError(self.name, f"page {number} unavailable")
            last = number == len(self._pages) - 1
            yield Page(items=list(items), cost=1.5, continuation=None if last else f"page-{number + 1}")


@pytest.fixture
def protection_source():
    def _make(pages, **kwargs):
        return FakeSource("protection", pages, protection_record_from_api, **kwargs)

    return _make


@pytest.fixture
def mdm_source():
    def _make(pages, **kwargs):
        return FakeSource("mdm", pages, managed_record_from_api, **kwargs)

    return _make


@pytest.fixture
def sync_container():
    return InMemoryContainer("devices_all")


@pytest.fixture
def metadata_container():
    return InMemoryContainer("sync_metadata")


@pytest.fixture
def make_store(sync_container):
    """SyncStore with zero backoff so retry tests run instantly."""

    def _make(container=None, **kwargs):
        kwargs.setdefault("retry_base_delay_ms", 0.0)
        return SyncStore(container if container is not None else sync_container, **kwargs)

    return _make


@pytest.fixture
def make_engine(protection_source, mdm_source, make_store, metadata_container):
    def _make(protection_pages, mdm_pages, *, store=None, protection_fail_at=None, mdm_fail_at=None, **kwargs):
        return ReconciliationEngine(
            protection_source(protection_pages, fail_at=protection_fail_at),
            mdm_source(mdm_pages, fail_at=mdm_fail_at),
            store if store is not None else make_store(),
            MetadataStore(metadata_container),
            **kwargs,
        )

    return _make
