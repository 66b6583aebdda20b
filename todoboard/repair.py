"""Read-time consistency check for embedded arrays.

Every mutation writes twice (standalone document, then the embedded copy in
the parent) without a transaction, so a crash or a failed second write can
leave the two out of step. Whenever a parent is loaded for display its
embedded array is checked against the standalone collection:

- an embedded copy whose standalone document is gone (or now belongs to
  another parent) is pulled from the array;
- an embedded copy whose fields differ from the standalone document is
  rewritten from it, the standalone document being canonical;
- a standalone child the parent does not embed is only reported. It is not
  clear which parent should own it, so it is left alone.

Repair write failures are logged and reported; they never abort the read.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List

from .errors import StoreError
from .models import KINDS, EntityKind, embedded_copy, same_fields
from .store import DocumentStore

logger = logging.getLogger(__name__)


@dataclass
class RepairReport:
    kind: str
    parent_id: str
    dropped: List[str] = field(default_factory=list)
    refreshed: List[str] = field(default_factory=list)
    orphans: List[str] = field(default_factory=list)
    failures: List[str] = field(default_factory=list)

    @property
    def repaired(self) -> bool:
        return bool(self.dropped or self.refreshed)

    @property
    def warnings(self) -> List[str]:
        out = []
        for child_id in self.dropped:
            out.append(f"removed stale entry {child_id} from {self.kind} {self.parent_id}")
        for child_id in self.orphans:
            out.append(f"{child_id} refers to {self.kind} {self.parent_id} but is not listed in it")
        for message in self.failures:
            out.append(f"repair failed: {message}")
        return out


class ReadRepair:
    def __init__(self, store: DocumentStore, reverse_scan: bool = True, budget: int = 200) -> None:
        self.store = store
        self.reverse_scan = reverse_scan
        self.budget = budget

    def check(self, kind: EntityKind, parent: dict) -> RepairReport:
        """Check ``parent`` (a document of ``kind``) against its children's collection."""
        report = RepairReport(kind=kind.name, parent_id=parent["id"])
        if kind.child is None:
            return report
        child_kind = KINDS[kind.child]
        array = kind.children_field
        elements = parent.get(array) or []

        for element in elements:
            child_id = element.get("id")
            try:
                child = self.store.find(child_kind.collection, child_id) if child_id else None
            except StoreError as exc:
                report.failures.append(str(exc))
                logger.error("read-repair: could not read %s %s: %s", child_kind.name, child_id, exc)
                continue
            if child is None or child.get(child_kind.parent_field) != parent["id"]:
                self._drop(report, kind, parent["id"], array, child_id)
            elif not same_fields(child_kind, child, element):
                self._refresh(report, kind, child_kind, parent["id"], array, child)

        if self.reverse_scan and self.budget > 0:
            listed = {e.get("id") for e in elements}
            try:
                children = self.store.find_by(
                    child_kind.collection, child_kind.parent_field, parent["id"], limit=self.budget
                )
            except StoreError as exc:
                report.failures.append(str(exc))
                logger.error("read-repair: reverse scan of %s %s failed: %s", kind.name, parent["id"], exc)
                children = []
            for child in children:
                if child["id"] not in listed:
                    report.orphans.append(child["id"])
                    logger.warning(
                        "read-repair: %s %s points at %s %s but has no embedded copy",
                        child_kind.name,
                        child["id"],
                        kind.name,
                        parent["id"],
                    )
        return report

    def _drop(self, report: RepairReport, kind: EntityKind, parent_id: str, array: str, child_id) -> None:
        try:
            self.store.pull(kind.collection, parent_id, array, child_id)
        except StoreError as exc:
            report.failures.append(str(exc))
            logger.error("read-repair: could not drop %s from %s %s: %s", child_id, kind.name, parent_id, exc)
            return
        report.dropped.append(child_id)
        logger.warning("read-repair: dropped orphaned embedded %s from %s %s", child_id, kind.name, parent_id)

    def _refresh(
        self,
        report: RepairReport,
        kind: EntityKind,
        child_kind: EntityKind,
        parent_id: str,
        array: str,
        child: dict,
    ) -> None:
        values = embedded_copy(child_kind, child)
        values.pop("id")
        try:
            self.store.set_element(kind.collection, parent_id, array, child["id"], values)
        except StoreError as exc:
            report.failures.append(str(exc))
            logger.error("read-repair: could not refresh %s in %s %s: %s", child["id"], kind.name, parent_id, exc)
            return
        report.refreshed.append(child["id"])
        logger.warning("read-repair: refreshed embedded %s in %s %s", child["id"], kind.name, parent_id)
