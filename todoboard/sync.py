from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

from .errors import (
    ConflictError,
    IdentifierMismatchError,
    InconsistentStateError,
    NotFoundError,
    PartialWriteError,
    StoreError,
)
from .models import (
    BOARD,
    CARD,
    KINDS,
    LIST,
    USER,
    BoardCreate,
    BoardUpdate,
    CardCreate,
    CardUpdate,
    CreatePayload,
    EntityKind,
    ListCreate,
    ListUpdate,
    UpdatePayload,
    creation_fields,
    embedded_copy,
    update_fields,
)
from .repair import ReadRepair, RepairReport
from .store import DocumentStore
from .utils import find_element, now_iso

logger = logging.getLogger(__name__)


@dataclass
class Loaded:
    doc: dict
    report: RepairReport

    @property
    def warnings(self) -> List[str]:
        return self.report.warnings


class Synchronizer:
    """Applies board/list/card mutations to both the standalone document and
    the embedded copy held by its parent.

    Writes happen in a fixed order with no transaction around them:

    - create: insert standalone, then append the embedded copy. A failed
      append deletes the standalone document again and raises
      ``PartialWriteError``.
    - update: update standalone, then set the matching embedded element.
    - delete: children first, then the standalone document, then pull the
      embedded copy. A crash in between leaves only embedded copies without a
      standalone document, which read-repair removes.
    """

    def __init__(self, store: DocumentStore, repair: Optional[ReadRepair] = None) -> None:
        self.store = store
        self.repair = repair or ReadRepair(store)

    # === Boards ===
    def create_board(self, user_id: str, payload: BoardCreate) -> dict:
        return self._create(BOARD, user_id, payload)

    def update_board(self, user_id: str, board_id: str, payload: BoardUpdate) -> dict:
        return self._update(BOARD, user_id, board_id, payload)

    def delete_board(self, user_id: str, board_id: str) -> int:
        return self._delete(BOARD, user_id, board_id)

    def get_board(self, user_id: str, board_id: str) -> dict:
        return self._get(BOARD, user_id, board_id)

    # === Lists ===
    def create_list(self, board_id: str, payload: ListCreate) -> dict:
        return self._create(LIST, board_id, payload)

    def update_list(self, board_id: str, list_id: str, payload: ListUpdate) -> dict:
        return self._update(LIST, board_id, list_id, payload)

    def delete_list(self, board_id: str, list_id: str) -> int:
        return self._delete(LIST, board_id, list_id)

    def get_list(self, board_id: str, list_id: str) -> dict:
        return self._get(LIST, board_id, list_id)

    # === Cards ===
    def create_card(self, list_id: str, payload: CardCreate) -> dict:
        return self._create(CARD, list_id, payload)

    def update_card(self, list_id: str, card_id: str, payload: CardUpdate) -> dict:
        return self._update(CARD, list_id, card_id, payload)

    def delete_card(self, list_id: str, card_id: str) -> int:
        return self._delete(CARD, list_id, card_id)

    def get_card(self, list_id: str, card_id: str) -> dict:
        return self._get(CARD, list_id, card_id)

    # === Reads with read-repair ===
    def load_user(self, user_id: str) -> Loaded:
        return self._load(USER, user_id)

    def load_board(self, user_id: str, board_id: str) -> Loaded:
        self.get_board(user_id, board_id)
        return self._load(BOARD, board_id)

    def load_list(self, board_id: str, list_id: str) -> Loaded:
        self.get_list(board_id, list_id)
        return self._load(LIST, list_id)

    def _load(self, kind: EntityKind, doc_id: str) -> Loaded:
        doc = self.store.find(kind.collection, doc_id)
        if doc is None:
            raise NotFoundError(kind.name, doc_id)
        report = self.repair.check(kind, doc)
        if report.repaired:
            doc = self.store.find(kind.collection, doc_id) or doc
        return Loaded(doc=doc, report=report)

    def _get(self, kind: EntityKind, parent_id: str, entity_id: str) -> dict:
        doc = self.store.find(kind.collection, entity_id)
        if doc is None or doc.get(kind.parent_field) != parent_id:
            raise NotFoundError(kind.name, entity_id)
        return doc

    # === Dual writes ===
    def _create(self, kind: EntityKind, parent_id: str, payload: CreatePayload) -> dict:
        fields = creation_fields(kind, payload)
        if self.store.find(kind.parent_collection, parent_id) is None:
            raise NotFoundError(kind.parent, parent_id)

        doc = {kind.parent_field: parent_id, **fields, "version": 1}
        if kind is CARD:
            doc["created_at"] = now_iso()
        if kind.children_field:
            doc[kind.children_field] = []
        stored = self.store.insert(kind.collection, doc)

        try:
            embedded = self.store.push(
                kind.parent_collection, parent_id, kind.embed_field, embedded_copy(kind, stored)
            )
        except StoreError as exc:
            logger.error("append of %s %s to %s %s failed: %s", kind.name, stored["id"], kind.parent, parent_id, exc)
            raise PartialWriteError(
                kind.name, stored["id"], "append", cause=exc, rolled_back=self._undo_insert(kind, stored["id"])
            ) from exc
        if embedded is None:
            cause = NotFoundError(kind.parent, parent_id)
            logger.error("%s %s vanished before %s %s was appended", kind.parent, parent_id, kind.name, stored["id"])
            raise PartialWriteError(
                kind.name, stored["id"], "append", cause=cause, rolled_back=self._undo_insert(kind, stored["id"])
            )
        if embedded.get("id") != stored["id"]:
            self._undo_mismatch(kind, parent_id, stored["id"], embedded.get("id"))
            raise IdentifierMismatchError(kind.name, stored["id"], embedded.get("id"))

        logger.debug("created %s %s under %s %s", kind.name, stored["id"], kind.parent, parent_id)
        return stored

    def _undo_insert(self, kind: EntityKind, doc_id: str) -> bool:
        try:
            removed = self.store.delete(kind.collection, doc_id)
        except StoreError as exc:
            logger.error("rollback of %s %s failed, standalone document orphaned: %s", kind.name, doc_id, exc)
            return False
        if removed:
            logger.warning("rolled back standalone %s %s", kind.name, doc_id)
        return removed

    def _undo_mismatch(self, kind: EntityKind, parent_id: str, doc_id: str, embedded_id: Optional[str]) -> None:
        if embedded_id is not None:
            try:
                self.store.pull(kind.parent_collection, parent_id, kind.embed_field, embedded_id)
            except StoreError as exc:
                logger.error("could not pull mismatched embedded %s %s: %s", kind.name, embedded_id, exc)
        self._undo_insert(kind, doc_id)

    def _locate(self, kind: EntityKind, parent_id: str, entity_id: str) -> Tuple[Optional[dict], Optional[dict], Optional[dict]]:
        parent = self.store.find(kind.parent_collection, parent_id)
        standalone = self.store.find(kind.collection, entity_id)
        if standalone is not None and standalone.get(kind.parent_field) != parent_id:
            standalone = None
        embedded = None
        if parent is not None:
            embedded = find_element(parent.get(kind.embed_field) or [], entity_id)
        return parent, standalone, embedded

    def _update(self, kind: EntityKind, parent_id: str, entity_id: str, payload: UpdatePayload) -> dict:
        values = update_fields(kind, payload)
        parent, standalone, embedded = self._locate(kind, parent_id, entity_id)
        if standalone is None and embedded is None:
            raise NotFoundError(kind.name, entity_id)
        if standalone is None or embedded is None:
            detail = (
                "embedded copy without standalone document"
                if standalone is None
                else "standalone document without embedded copy"
            )
            logger.warning("update of %s %s found %s", kind.name, entity_id, detail)
            if parent is not None:
                self.repair.check(KINDS[kind.parent], parent)
            raise InconsistentStateError(kind.name, entity_id, parent_id, detail)

        try:
            updated = self.store.update(
                kind.collection, entity_id, values, bump_version=True, expected_version=payload.expected_version
            )
        except ConflictError as exc:
            raise ConflictError(kind.name, entity_id, exc.message) from exc
        if updated is None:
            raise NotFoundError(kind.name, entity_id)

        mirrored = embedded_copy(kind, updated)
        mirrored.pop("id")
        try:
            matched = self.store.set_element(
                kind.parent_collection, parent_id, kind.embed_field, entity_id, mirrored
            )
        except StoreError as exc:
            logger.error("embedded update of %s %s failed: %s", kind.name, entity_id, exc)
            raise PartialWriteError(kind.name, entity_id, "set_element", cause=exc) from exc
        if not matched:
            logger.error("embedded copy of %s %s disappeared during update", kind.name, entity_id)
            raise PartialWriteError(kind.name, entity_id, "set_element")

        logger.debug("updated %s %s (%s)", kind.name, entity_id, ", ".join(sorted(values)))
        return updated

    def _delete(self, kind: EntityKind, parent_id: str, entity_id: str) -> int:
        parent, standalone, embedded = self._locate(kind, parent_id, entity_id)
        if standalone is None and embedded is None:
            raise NotFoundError(kind.name, entity_id)
        if standalone is None or embedded is None:
            logger.warning(
                "read-repair: delete of %s %s finds only its %s",
                kind.name,
                entity_id,
                "embedded copy" if standalone is None else "standalone document",
            )

        removed = 0
        if kind.child is not None:
            removed += self._cascade(kind, standalone or {"id": entity_id})
        if standalone is not None and self.store.delete(kind.collection, entity_id):
            removed += 1
        if embedded is not None:
            try:
                self.store.pull(kind.parent_collection, parent_id, kind.embed_field, entity_id)
            except StoreError as exc:
                logger.error("pull of %s %s from %s %s failed: %s", kind.name, entity_id, kind.parent, parent_id, exc)
                raise PartialWriteError(kind.name, entity_id, "pull", cause=exc) from exc

        logger.debug("deleted %s %s and %d documents", kind.name, entity_id, removed)
        return removed

    def _cascade(self, kind: EntityKind, doc: dict) -> int:
        """Delete every standalone child of ``doc``, depth first."""
        child_kind = KINDS[kind.child]
        child_ids = [e["id"] for e in doc.get(kind.children_field) or [] if e.get("id")]
        for child in self.store.find_by(child_kind.collection, child_kind.parent_field, doc["id"]):
            if child["id"] not in child_ids:
                child_ids.append(child["id"])

        removed = 0
        for child_id in child_ids:
            child = self.store.find(child_kind.collection, child_id)
            if child is None or child.get(child_kind.parent_field) != doc["id"]:
                continue
            if child_kind.child is not None:
                removed += self._cascade(child_kind, child)
            if self.store.delete(child_kind.collection, child_id):
                removed += 1
        return removed
