from __future__ import annotations

import threading
from contextlib import contextmanager, nullcontext
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import JSON, Integer, String, UniqueConstraint, create_engine, delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import ConflictError, StoreError
from .store import check_version
from .utils import clone, new_uuid


class Base(DeclarativeBase):
    pass


class DocumentRow(Base):
    """One standalone document; its embedded arrays live in ``embedded``."""

    __tablename__ = "documents"
    collection: Mapped[str] = mapped_column(String(32), primary_key=True)
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    body: Mapped[dict] = mapped_column(JSON, default=dict)
    arrays: Mapped[list] = mapped_column(JSON, default=list)


class EmbeddedRow(Base):
    """One element of an embedded array; ``seq`` keeps append order."""

    __tablename__ = "embedded"
    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    collection: Mapped[str] = mapped_column(String(32), index=True)
    parent_id: Mapped[str] = mapped_column(String(36), index=True)
    field: Mapped[str] = mapped_column(String(32))
    element_id: Mapped[str] = mapped_column(String(36))
    body: Mapped[dict] = mapped_column(JSON, default=dict)

    __table_args__ = (
        UniqueConstraint("collection", "parent_id", "field", "element_id", name="uq_embedded_element"),
    )


class UniqueKeyRow(Base):
    """Claims one value of a unique document field, e.g. a username."""

    __tablename__ = "unique_keys"
    collection: Mapped[str] = mapped_column(String(32), primary_key=True)
    key: Mapped[str] = mapped_column(String(32), primary_key=True)
    value: Mapped[str] = mapped_column(String(256), primary_key=True)
    doc_id: Mapped[str] = mapped_column(String(36), index=True)


MEMORY_URLS = ("sqlite://", "sqlite:///:memory:")


def make_engine(database_url: str):
    if database_url.startswith("sqlite"):
        kwargs: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if database_url in MEMORY_URLS:
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)
    return create_engine(database_url)


class SqlStore:
    """Document store over SQLAlchemy.

    Every array mutation is a single INSERT, DELETE or one-row UPDATE on
    ``embedded``, so sibling writers on the same parent never overwrite each
    other. Appends are made idempotent by ``uq_embedded_element``.

    An in-memory SQLite database is a single shared connection, which cannot
    hold two transactions at once, so sessions on it are serialized.
    """

    def __init__(self, database_url: str) -> None:
        self.engine = make_engine(database_url)
        self.SessionLocal = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)
        self._lock = threading.RLock() if database_url in MEMORY_URLS else None
        Base.metadata.create_all(bind=self.engine)

    @contextmanager
    def _session(self, operation: str, collection: str) -> Iterator[Session]:
        try:
            with self._lock or nullcontext(), self.SessionLocal.begin() as session:
                yield session
        except SQLAlchemyError as exc:
            raise StoreError(operation, collection, exc) from exc

    def _row(self, session: Session, collection: str, doc_id: str) -> Optional[DocumentRow]:
        return session.get(DocumentRow, (collection, doc_id))

    def _assemble(self, session: Session, row: DocumentRow) -> dict:
        doc = clone(row.body)
        doc["id"] = row.id
        for field in row.arrays:
            doc[field] = []
        elements = session.scalars(
            select(EmbeddedRow)
            .where(EmbeddedRow.collection == row.collection, EmbeddedRow.parent_id == row.id)
            .order_by(EmbeddedRow.seq)
        )
        for element in elements:
            item = clone(element.body)
            item["id"] = element.element_id
            doc.setdefault(element.field, []).append(item)
        return doc

    # === Documents ===
    def find(self, collection: str, doc_id: str) -> Optional[dict]:
        with self._session("find", collection) as session:
            row = self._row(session, collection, doc_id)
            return self._assemble(session, row) if row is not None else None

    def find_by(
        self, collection: str, field: str, value: Any, limit: Optional[int] = None
    ) -> List[dict]:
        with self._session("find_by", collection) as session:
            query = select(DocumentRow).where(DocumentRow.collection == collection)
            if isinstance(value, str):
                query = query.where(DocumentRow.body[field].as_string() == value)
                rows = list(session.scalars(query.limit(limit) if limit is not None else query))
            else:
                rows = [r for r in session.scalars(query) if r.body.get(field) == value]
                rows = rows[:limit] if limit is not None else rows
            return [self._assemble(session, row) for row in rows]

    def _add(self, session: Session, collection: str, doc: dict) -> dict:
        stored = clone(doc)
        stored.setdefault("id", new_uuid())
        doc_id = stored.pop("id")
        arrays = {k: v for k, v in stored.items() if isinstance(v, list)}
        body = {k: v for k, v in stored.items() if k not in arrays}
        session.add(DocumentRow(collection=collection, id=doc_id, body=body, arrays=list(arrays)))
        for field, elements in arrays.items():
            for element in elements:
                item = clone(element)
                element_id = item.pop("id", None) or new_uuid()
                session.add(
                    EmbeddedRow(
                        collection=collection,
                        parent_id=doc_id,
                        field=field,
                        element_id=element_id,
                        body=item,
                    )
                )
        session.flush()
        return self._assemble(session, self._row(session, collection, doc_id))

    def insert(self, collection: str, doc: dict) -> dict:
        with self._session("insert", collection) as session:
            return self._add(session, collection, doc)

    def insert_unique(self, collection: str, doc: dict, key: str) -> Optional[dict]:
        try:
            with self._session("insert_unique", collection) as session:
                stored = self._add(session, collection, doc)
                session.add(
                    UniqueKeyRow(collection=collection, key=key, value=str(doc.get(key)), doc_id=stored["id"])
                )
                session.flush()
                return stored
        except StoreError as exc:
            if isinstance(exc.cause, IntegrityError):
                return None
            raise

    def update(
        self,
        collection: str,
        doc_id: str,
        values: dict,
        bump_version: bool = False,
        expected_version: Optional[int] = None,
    ) -> Optional[dict]:
        with self._session("update", collection) as session:
            row = session.scalars(
                select(DocumentRow)
                .where(DocumentRow.collection == collection, DocumentRow.id == doc_id)
                .with_for_update()
            ).first()
            if row is None:
                return None
            check_version(collection, doc_id, row.body.get("version"), expected_version)
            body = clone(row.body)
            body.update(clone({k: v for k, v in values.items() if k != "id"}))
            if bump_version:
                body["version"] = body.get("version", 0) + 1
            if expected_version is None:
                row.body = body
                session.flush()
                return self._assemble(session, row)
            # SQLite ignores FOR UPDATE, so the write itself re-checks the version.
            result = session.execute(
                update(DocumentRow)
                .where(
                    DocumentRow.collection == collection,
                    DocumentRow.id == doc_id,
                    DocumentRow.body["version"].as_integer() == expected_version,
                )
                .values(body=body)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise ConflictError(collection, doc_id, f"version changed, expected {expected_version}")
            session.refresh(row)
            return self._assemble(session, row)

    def delete(self, collection: str, doc_id: str) -> bool:
        with self._session("delete", collection) as session:
            session.execute(
                delete(EmbeddedRow).where(
                    EmbeddedRow.collection == collection, EmbeddedRow.parent_id == doc_id
                )
            )
            session.execute(
                delete(UniqueKeyRow).where(UniqueKeyRow.collection == collection, UniqueKeyRow.doc_id == doc_id)
            )
            result = session.execute(
                delete(DocumentRow).where(
                    DocumentRow.collection == collection, DocumentRow.id == doc_id
                )
            )
            return result.rowcount > 0

    # === Embedded arrays ===
    def _element(
        self, session: Session, collection: str, doc_id: str, field: str, element_id: str
    ) -> Optional[EmbeddedRow]:
        return session.scalars(
            select(EmbeddedRow).where(
                EmbeddedRow.collection == collection,
                EmbeddedRow.parent_id == doc_id,
                EmbeddedRow.field == field,
                EmbeddedRow.element_id == element_id,
            )
        ).first()

    def push(self, collection: str, doc_id: str, field: str, element: dict) -> Optional[dict]:
        item = clone(element)
        element_id = item.pop("id", None) or new_uuid()
        try:
            with self._session("push", collection) as session:
                if self._row(session, collection, doc_id) is None:
                    return None
                session.add(
                    EmbeddedRow(
                        collection=collection,
                        parent_id=doc_id,
                        field=field,
                        element_id=element_id,
                        body=item,
                    )
                )
                session.flush()
        except StoreError as exc:
            if not isinstance(exc.cause, IntegrityError):
                raise
        with self._session("push", collection) as session:
            row = self._element(session, collection, doc_id, field, element_id)
            if row is None:
                return None
            stored = clone(row.body)
            stored["id"] = row.element_id
            return stored

    def pull(self, collection: str, doc_id: str, field: str, element_id: str) -> bool:
        with self._session("pull", collection) as session:
            result = session.execute(
                delete(EmbeddedRow).where(
                    EmbeddedRow.collection == collection,
                    EmbeddedRow.parent_id == doc_id,
                    EmbeddedRow.field == field,
                    EmbeddedRow.element_id == element_id,
                )
            )
            return result.rowcount > 0

    def set_element(
        self, collection: str, doc_id: str, field: str, element_id: str, values: dict
    ) -> bool:
        with self._session("set_element", collection) as session:
            row = self._element(session, collection, doc_id, field, element_id)
            if row is None:
                return False
            body = clone(row.body)
            body.update(clone({k: v for k, v in values.items() if k != "id"}))
            row.body = body
            return True
