"""Device inventory sources that page through an upstream collection.

A source exposes its inventory as a lazy generator of pages. ``fetch_all``
drains a fresh generator and either returns every record or raises a single
:class:`SourceFetchError`. A half-read inventory would misclassify real devices
as present on one side only, so partial results are never returned.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional

import requests

from .context import RunContext, backoff_delay
from .errors import AuthError, NormalizationError, RunCancelled, SourceFetchError, StoreError, StoreThrottledError
from .models import FetchResult
from .normalization import managed_record_from_api, protection_record_from_api
from .store import DocumentContainer

LOGGER = logging.getLogger(__name__)

RETRYABLE_STATUS = {429, 503}
AUTH_STATUS = {401, 403}


@dataclass(slots=True)
class Page:
    items: List[Dict[str, Any]]
    cost: float = 0.0
    continuation: Optional[str] = None
    requests: int = 1


class InventorySource:
    """Base class; subclasses provide ``pages`` and ``parse``."""

    name = "source"

    def __init__(self, *, restart_attempts: int = 0) -> None:
        self.restart_attempts = restart_attempts

    def init(self) -> None:
        return None

    def close(self) -> None:
        return None

    def pages(self, ctx: RunContext) -> Iterator[Page]:
        raise NotImplementedError

    def parse(self, payload: Dict[str, Any]):
        raise NotImplementedError

    def fetch_all(self, ctx: RunContext) -> FetchResult:
        attempt = 0
        while True:
            try:
                return self._drain(ctx)
            except SourceFetchError as exc:
                if attempt >= self.restart_attempts or ctx.cancelled:
                    LOGGER.error("Fetching %s inventory failed: %s", self.name, exc.message)
                    raise
                attempt += 1
                LOGGER.warning(
                    "Fetching %s inventory failed (%s); restarting from the first page (%d/%d)",
                    self.name,
                    exc.message,
                    attempt,
                    self.restart_attempts,
                )

    def _drain(self, ctx: RunContext) -> FetchResult:
        started = time.perf_counter()
        result = FetchResult(source=self.name, records=[])
        by_id: Dict[str, Any] = {}
        duplicates = 0
        try:
            ctx.check(f"fetching {self.name}")
            for page in self.pages(ctx):
                result.pages += 1
                result.requests += page.requests
                result.cost += page.cost
                for payload in page.items:
                    record = self.parse(payload)
                    if record.id in by_id:
                        duplicates += 1
                    by_id[record.id] = record
                LOGGER.debug(
                    "Fetched %s page %d (%d items, %d so far)",
                    self.name,
                    result.pages,
                    len(page.items),
                    len(by_id),
                )
                if page.continuation:
                    ctx.check(f"next {self.name} page")
        except (RunCancelled, NormalizationError) as exc:
            raise SourceFetchError(self.name, str(exc)) from exc

        if duplicates:
            LOGGER.warning("%s inventory repeated %d device id(s); kept the last copy", self.name, duplicates)
        result.records = list(by_id.values())
        result.elapsed_ms = (time.perf_counter() - started) * 1000.0
        LOGGER.info(
            "Fetched %d %s devices in %d page(s) (%.0fms, cost=%.2f)",
            len(result.records),
            self.name,
            result.pages,
            result.elapsed_ms,
            result.cost,
        )
        return result


def _retry_after_ms(response: requests.Response) -> float | None:
    raw = response.headers.get("Retry-After")
    if raw is None:
        return None
    try:
        return float(raw) * 1000.0
    except ValueError:
        return None


class ApiInventorySource(InventorySource):
    """Pages through an OData collection, following ``@odata.nextLink``."""

    def __init__(
        self,
        url: str,
        scope: str,
        token_provider,
        *,
        session: requests.Session | None = None,
        page_size: int = 100,
        timeout: float = 60.0,
        max_retry_attempts: int = 3,
        retry_base_delay_ms: float = 1000.0,
        restart_attempts: int = 0,
    ) -> None:
        super().__init__(restart_attempts=restart_attempts)
        self.url = url
        self.scope = scope
        self.token_provider = token_provider
        self.page_size = page_size
        self.timeout = timeout
        self.max_retry_attempts = max_retry_attempts
        self.retry_base_delay_ms = retry_base_delay_ms
        self._session = session
        self._owns_session = session is None

    def init(self) -> None:
        self.token_provider.init()
        if self._session is None:
            self._session = requests.Session()

    def close(self) -> None:
        if self._session is not None and self._owns_session:
            self._session.close()
            self._session = None
        self.token_provider.close()

    def pages(self, ctx: RunContext) -> Iterator[Page]:
        self.init()
        url: str | None = self.url
        params: Dict[str, Any] | None = {"$top": self.page_size}
        while url:
            payload, attempts = self._get(ctx, url, params)
            if not isinstance(payload, dict):
                raise SourceFetchError(self.name, f"response from {url} is not a JSON object")
            items = payload.get("value")
            if not isinstance(items, list):
                raise SourceFetchError(self.name, f"response from {url} has no 'value' array")
            next_link = payload.get("@odata.nextLink")
            yield Page(items=items, cost=0.0, continuation=next_link, requests=attempts)
            # The next link already carries the query string.
            url, params = next_link, None

    def _timeout(self, ctx: RunContext) -> float:
        remaining = ctx.remaining()
        if remaining is None:
            return self.timeout
        return max(0.1, min(self.timeout, remaining))

    def _get(self, ctx: RunContext, url: str, params: Dict[str, Any] | None) -> tuple[Dict[str, Any], int]:
        attempt = 0
        while True:
            try:
                token = self.token_provider.get_token(self.scope)
            except AuthError as exc:
                raise SourceFetchError(self.name, f"authentication failed: {exc}") from exc
            headers = {"Authorization": f"Bearer {token}", "Accept": "application/json"}
            try:
                response = self._session.get(url, params=params, headers=headers, timeout=self._timeout(ctx))
            except requests.Timeout as exc:
                raise SourceFetchError(self.name, f"request timed out: {exc}") from exc
            except requests.RequestException as exc:
                raise SourceFetchError(self.name, f"request failed: {exc}") from exc

            status = response.status_code
            if status in RETRYABLE_STATUS and attempt < self.max_retry_attempts:
                delay = backoff_delay(attempt, self.retry_base_delay_ms, _retry_after_ms(response))
                attempt += 1
                LOGGER.warning(
                    "%s API answered HTTP %d, retrying in %.2fs (attempt %d/%d)",
                    self.name,
                    status,
                    delay,
                    attempt,
                    self.max_retry_attempts,
                )
                if not ctx.sleep(delay):
                    raise SourceFetchError(self.name, f"cancelled while backing off: {ctx.reason}")
                continue
            if status in AUTH_STATUS:
                raise SourceFetchError(self.name, f"authentication failed: HTTP {status}")
            if not 200 <= status < 300:
                raise SourceFetchError(self.name, f"HTTP {status} from {url}")
            try:
                return response.json(), attempt + 1
            except ValueError as exc:
                raise SourceFetchError(self.name, f"invalid JSON from {url}") from exc


class ProtectionApiSource(ApiInventorySource):
    name = "protection"

    def parse(self, payload: Dict[str, Any]):
        return protection_record_from_api(payload)


class MdmApiSource(ApiInventorySource):
    name = "mdm"

    def parse(self, payload: Dict[str, Any]):
        return managed_record_from_api(payload)


class ContainerInventorySource(InventorySource):
    """Reads a mirrored inventory snapshot from a document container."""

    def __init__(
        self,
        name: str,
        container: DocumentContainer,
        parser: Callable[[Dict[str, Any]], Any],
        *,
        page_size: int = 100,
        max_retry_attempts: int = 3,
        retry_base_delay_ms: float = 1000.0,
        restart_attempts: int = 0,
    ) -> None:
        super().__init__(restart_attempts=restart_attempts)
        self.name = name
        self.container = container
        self.parser = parser
        self.page_size = page_size
        self.max_retry_attempts = max_retry_attempts
        self.retry_base_delay_ms = retry_base_delay_ms

    def parse(self, payload: Dict[str, Any]):
        return self.parser(payload)

    def close(self) -> None:
        self.container.close()

    def pages(self, ctx: RunContext) -> Iterator[Page]:
        continuation: str | None = None
        while True:
            feed, attempts = self._query(ctx, continuation)
            yield Page(items=feed.items, cost=feed.request_charge, continuation=feed.continuation, requests=attempts)
            continuation = feed.continuation
            if not continuation:
                return

    def _query(self, ctx: RunContext, continuation: str | None):
        attempt = 0
        while True:
            try:
                return self.container.query(None, self.page_size, continuation), attempt + 1
            except StoreThrottledError as exc:
                if attempt >= self.max_retry_attempts:
                    raise SourceFetchError(self.name, f"store query throttled: {exc}") from exc
                delay = backoff_delay(attempt, self.retry_base_delay_ms, exc.retry_after_ms)
                attempt += 1
                if not ctx.sleep(delay):
                    raise SourceFetchError(self.name, f"cancelled while backing off: {ctx.reason}") from exc
            except StoreError as exc:
                raise SourceFetchError(self.name, f"store query failed: {exc}") from exc


def protection_container_source(container: DocumentContainer, **kwargs: Any) -> ContainerInventorySource:
    return ContainerInventorySource("protection", container, protection_record_from_api, **kwargs)


def mdm_container_source(container: DocumentContainer, **kwargs: Any) -> ContainerInventorySource:
    return ContainerInventorySource("mdm", container, managed_record_from_api, **kwargs)
