from __future__ import annotations
import copy
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Union
from uuid import uuid4

from pydantic import BaseModel

logger = logging.getLogger(__name__)

Record = Union[BaseModel, Mapping[str, Any]]


def to_record(item: Record) -> Dict[str, Any]:
    if isinstance(item, BaseModel):
        return item.model_dump(mode="json")
    return dict(item)


class Repository:
    """
    Repo générique (clé primaire configurable) avec transaction bufferisée.
    - begin(): charge une copie de travail; lectures/écritures passent par elle
    - commit(): persiste une seule fois si quelque chose a changé
    - rollback(): jette la copie de travail
    Les sous-classes fournissent _load_rows / _persist_rows.
    """

    def __init__(self, entity_name: str = "entity", key: str = "id") -> None:
        self.entity_name = entity_name
        self.key = key
        self._tx_rows: Optional[List[Dict[str, Any]]] = None
        self._dirty = False

    # ---------------- backend ---------------- #

    def _load_rows(self) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def _persist_rows(self, rows: List[Dict[str, Any]]) -> None:
        raise NotImplementedError

    # ---------------- transaction ---------------- #

    @property
    def in_transaction(self) -> bool:
        return self._tx_rows is not None

    def begin(self) -> None:
        self._tx_rows = copy.deepcopy(self._load_rows())
        self._dirty = False

    def commit(self) -> None:
        rows, dirty = self._tx_rows, self._dirty
        self._tx_rows, self._dirty = None, False
        if dirty and rows is not None:
            self._persist_rows(rows)
            logger.debug("%s: %d enregistrement(s) persisté(s)", self.entity_name, len(rows))

    def rollback(self) -> None:
        self._tx_rows, self._dirty = None, False

    def _read(self) -> List[Dict[str, Any]]:
        if self._tx_rows is not None:
            return self._tx_rows
        return self._load_rows()

    def _write(self, rows: List[Dict[str, Any]]) -> None:
        if self._tx_rows is not None:
            self._tx_rows = rows
            self._dirty = True
        else:
            self._persist_rows(rows)

    def _matches(self, row: Dict[str, Any], obj_id: Any) -> bool:
        return str(row.get(self.key)) == str(obj_id)

    # ---------------- CRUD ---------------- #

    def list_all(self) -> List[Dict[str, Any]]:
        return copy.deepcopy(self._read())

    def get_by_id(self, obj_id: Any) -> Optional[Dict[str, Any]]:
        for it in self._read():
            if self._matches(it, obj_id):
                return copy.deepcopy(it)
        return None

    def add(self, item: Record) -> Dict[str, Any]:
        record = to_record(item)
        k = self.key
        if not record.get(k):
            record[k] = uuid4().hex
        data = list(self._read())
        if any(self._matches(d, record[k]) for d in data):
            raise ValueError(f"{self.entity_name} with {k}={record[k]} already exists")
        data.append(record)
        self._write(data)
        return copy.deepcopy(record)

    def update(self, item: Record) -> Dict[str, Any]:
        record = to_record(item)
        k = self.key
        obj_id = record.get(k)
        if not obj_id:
            raise ValueError(f"Cannot update {self.entity_name} without '{k}'")
        data = list(self._read())
        for idx, existing in enumerate(data):
            if self._matches(existing, obj_id):
                # remplacement complet: les lignes d'un document ne se fusionnent pas
                data[idx] = record
                self._write(data)
                return copy.deepcopy(record)
        raise KeyError(f"{self.entity_name} with {k}={obj_id} not found")

    def upsert(self, item: Record) -> Dict[str, Any]:
        record = to_record(item)
        if record.get(self.key) and self.get_by_id(record[self.key]) is not None:
            return self.update(record)
        return self.add(record)

    def delete(self, obj_id: Any) -> bool:
        data = self._read()
        new_data = [d for d in data if not self._matches(d, obj_id)]
        changed = len(new_data) != len(data)
        if changed:
            self._write(new_data)
        return changed

    # ---------------- Recherches ---------------- #

    def find(self, predicate: Callable[[Dict[str, Any]], bool]) -> List[Dict[str, Any]]:
        return [copy.deepcopy(r) for r in self._read() if predicate(r)]

    def find_one(self, predicate: Callable[[Dict[str, Any]], bool]) -> Optional[Dict[str, Any]]:
        for r in self._read():
            if predicate(r):
                return copy.deepcopy(r)
        return None


class MemoryRepository(Repository):
    """Backend en mémoire (tests, intégration avec un autre stockage)."""

    def __init__(self, entity_name: str = "entity", key: str = "id", rows: Optional[List[Dict[str, Any]]] = None) -> None:
        super().__init__(entity_name=entity_name, key=key)
        self._rows: List[Dict[str, Any]] = [to_record(r) for r in (rows or [])]

    def _load_rows(self) -> List[Dict[str, Any]]:
        return self._rows

    def _persist_rows(self, rows: List[Dict[str, Any]]) -> None:
        self._rows = copy.deepcopy(rows)
