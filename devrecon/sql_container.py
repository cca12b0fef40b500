"""SQLAlchemy-backed document container.

Each container is one table holding ``id``, a JSON ``body`` and an ``etag``.
Request charges are nominal units (a flat charge per page plus a small
per-row charge, five per item write) so cost reporting stays comparable with
hosted document stores.
"""
from __future__ import annotations

import json
import logging
import uuid
from typing import Any, Dict, List, Sequence

from sqlalchemy import Column, MetaData, String, Table, Text, create_engine, delete, insert, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

from .errors import StoreError, StoreThrottledError
from .store import FeedPage, Operation, OperationResponse, OperationType

LOGGER = logging.getLogger(__name__)

PAGE_CHARGE = 1.0
ROW_CHARGE = 0.05
WRITE_CHARGE = 5.0


def create_store_engine(url: str) -> Engine:
    return create_engine(url, pool_pre_ping=True)


class SqlContainer:
    """Document container stored in a relational table."""

    def __init__(self, engine: Engine, name: str) -> None:
        self.name = name
        self._engine = engine
        self._metadata = MetaData()
        self._table = Table(
            name,
            self._metadata,
            Column("id", String(255), primary_key=True),
            Column("body", Text, nullable=False),
            Column("etag", String(64), nullable=False),
        )

    def init(self) -> None:
        try:
            self._metadata.create_all(self._engine)
        except SQLAlchemyError as exc:
            raise StoreError(f"Cannot create table {self.name}: {exc}") from exc
        LOGGER.info("SQL container %s ready", self.name)

    def close(self) -> None:
        self._engine.dispose()

    def query(
        self,
        fields: Sequence[str] | None = None,
        max_item_count: int = 100,
        continuation: str | None = None,
    ) -> FeedPage:
        table = self._table
        id_only = bool(fields) and set(fields) <= {"id"}
        columns = [table.c.id] if id_only else [table.c.id, table.c.body]
        statement = select(*columns).order_by(table.c.id).limit(max_item_count + 1)
        if continuation is not None:
            statement = statement.where(table.c.id > continuation)
        try:
            with self._engine.connect() as conn:
                rows = conn.execute(statement).all()
        except SQLAlchemyError as exc:
            raise StoreError(f"Query on {self.name} failed: {exc}") from exc

        has_more = len(rows) > max_item_count
        rows = rows[:max_item_count]
        items: List[Dict[str, Any]] = []
        for row in rows:
            if id_only:
                items.append({"id": row.id})
                continue
            body = json.loads(row.body)
            if fields:
                body = {name: body.get(name) for name in fields}
            items.append(body)
        charge = round(PAGE_CHARGE + ROW_CHARGE * len(items), 2)
        next_token = rows[-1].id if has_more and rows else None
        return FeedPage(items=items, request_charge=charge, continuation=next_token)

    def bulk(self, operations: Sequence[Operation]) -> List[OperationResponse]:
        """Applies every operation in one transaction, each inside a savepoint.

        A failing item rolls back to its savepoint and gets an error status;
        only a failure of the transaction itself fails the call.
        """
        responses: List[OperationResponse] = []
        try:
            with self._engine.begin() as conn:
                for operation in operations:
                    responses.append(self._apply_in_savepoint(conn, operation))
        except OperationalError as exc:
            if _is_locked(exc):
                raise StoreThrottledError(f"Bulk call on {self.name} throttled: {exc}") from exc
            raise StoreError(f"Bulk call on {self.name} failed: {exc}") from exc
        except SQLAlchemyError as exc:
            raise StoreError(f"Bulk call on {self.name} failed: {exc}") from exc
        return responses

    def execute(self, operation: Operation) -> OperationResponse:
        try:
            with self._engine.begin() as conn:
                return self._apply(conn, operation)
        except SQLAlchemyError as exc:
            return self._error_response(operation, exc)

    def _apply_in_savepoint(self, conn, operation: Operation) -> OperationResponse:
        try:
            with conn.begin_nested():
                return self._apply(conn, operation)
        except SQLAlchemyError as exc:
            return self._error_response(operation, exc)

    def _error_response(self, operation: Operation, exc: SQLAlchemyError) -> OperationResponse:
        if isinstance(exc, IntegrityError):
            return OperationResponse(409, WRITE_CHARGE)
        if isinstance(exc, OperationalError) and _is_locked(exc):
            return OperationResponse(429, 0.0)
        LOGGER.error("%s on %s/%s failed: %s", operation.type.value, self.name, operation.id, exc)
        return OperationResponse(500, 0.0)

    def _apply(self, conn, operation: Operation) -> OperationResponse:
        table = self._table
        row = conn.execute(select(table.c.body, table.c.etag).where(table.c.id == operation.id)).first()
        kind = operation.type

        if kind is OperationType.READ:
            if row is None:
                return OperationResponse(404, PAGE_CHARGE)
            return OperationResponse(200, PAGE_CHARGE, etag=row.etag, resource=json.loads(row.body))

        if kind is OperationType.DELETE:
            if row is None:
                return OperationResponse(404, PAGE_CHARGE)
            conn.execute(delete(table).where(table.c.id == operation.id))
            return OperationResponse(204, WRITE_CHARGE)

        body = json.dumps(operation.body or {}, default=str)
        etag = uuid.uuid4().hex
        if kind is OperationType.CREATE and row is not None:
            return OperationResponse(409, WRITE_CHARGE)
        if kind is OperationType.REPLACE:
            if row is None:
                return OperationResponse(404, WRITE_CHARGE)
            if operation.if_match is not None and operation.if_match != row.etag:
                return OperationResponse(412, WRITE_CHARGE)

        if row is None:
            conn.execute(insert(table).values(id=operation.id, body=body, etag=etag))
            status = 201
        else:
            statement = update(table).where(table.c.id == operation.id)
            if operation.if_match is not None:
                statement = statement.where(table.c.etag == operation.if_match)
            changed = conn.execute(statement.values(body=body, etag=etag)).rowcount
            if changed == 0:
                return OperationResponse(412, WRITE_CHARGE)
            status = 200
        return OperationResponse(status, WRITE_CHARGE, etag=etag, resource=dict(operation.body or {}))


def _is_locked(exc: OperationalError) -> bool:
    return "locked" in str(exc).lower()
