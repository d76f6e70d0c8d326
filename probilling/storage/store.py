from __future__ import annotations

import fcntl
import logging
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Union

from probilling.errors import StorageError
from probilling.storage.json_repo import JsonRepository
from probilling.storage.repo import MemoryRepository, Repository

logger = logging.getLogger(__name__)

LOCK_FILENAME = ".probilling.lock"

# (attribut, fichier, clé primaire)
_COLLECTIONS = (
    ("quotes", "quotes.json", "id"),
    ("invoices", "invoices.json", "id"),
    ("recurring_cursors", "recurring_cursors.json", "project_service_id"),
    ("sequences", "sequences.json", "id"),
    ("projects", "projects.json", "id"),
    ("project_services", "project_services.json", "id"),
    ("services", "services.json", "id"),
    ("products", "products.json", "id"),
)


# ---------- Verrous ---------- #

_registry_lock = threading.Lock()
_DIR_LOCKS: Dict[str, "DirectoryLock"] = {}


class DirectoryLock:
    """
    Verrou exclusif d'un répertoire de données:
    - un RLock partagé par tous les stores du process ouverts sur ce répertoire
    - un flock sur <data_dir>/.probilling.lock pour les autres process
    Ré-entrant dans un même thread; le flock est pris au premier niveau seulement.
    Sans chemin (store en mémoire), seul le RLock s'applique.
    """

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = path
        self._rlock = threading.RLock()
        self._depth = 0
        self._fd: Optional[int] = None

    @classmethod
    def for_dir(cls, data_dir: Union[str, Path]) -> "DirectoryLock":
        key = str(Path(data_dir).resolve())
        with _registry_lock:
            lock = _DIR_LOCKS.get(key)
            if lock is None:
                lock = _DIR_LOCKS[key] = cls(Path(key) / LOCK_FILENAME)
            return lock

    def _lock_file(self) -> None:
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
        except OSError:
            os.close(fd)
            raise
        self._fd = fd

    def _unlock_file(self) -> None:
        fd, self._fd = self._fd, None
        if fd is None:
            return
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    def acquire(self) -> None:
        self._rlock.acquire()
        if self._depth == 0 and self.path is not None:
            try:
                self._lock_file()
            except OSError as e:
                self._rlock.release()
                raise StorageError(f"Verrou impossible sur {self.path}: {e}") from e
        self._depth += 1

    def release(self) -> None:
        self._depth -= 1
        try:
            if self._depth == 0:
                self._unlock_file()
        finally:
            self._rlock.release()

    def __enter__(self) -> "DirectoryLock":
        self.acquire()
        return self

    def __exit__(self, *exc) -> None:
        self.release()


# ---------- Store ---------- #

class BillingStore:
    """
    Regroupe les repos de la facturation et fournit atomic():
    section critique ré-entrante + transaction bufferisée sur tous les repos.
    Une erreur dans le bloc annule toutes les écritures du bloc.

    Les stores ouverts sur un même répertoire partagent le même DirectoryLock:
    relecture, validation et écriture se font sans concurrent, y compris
    d'un autre process.
    """

    def __init__(self, repos: dict[str, Repository], lock: Optional[DirectoryLock] = None) -> None:
        missing = [name for name, _, _ in _COLLECTIONS if name not in repos]
        if missing:
            raise ValueError(f"Repos manquants: {', '.join(missing)}")
        self._repos = dict(repos)
        self._lock = lock or DirectoryLock()
        self._depth = 0

        self.quotes = repos["quotes"]
        self.invoices = repos["invoices"]
        self.recurring_cursors = repos["recurring_cursors"]
        self.sequences = repos["sequences"]
        self.projects = repos["projects"]
        self.project_services = repos["project_services"]
        self.services = repos["services"]
        self.products = repos["products"]

    # ---------- Fabriques ---------- #

    @classmethod
    def open(cls, data_dir: Union[str, Path], *, backup_keep: int = 5) -> "BillingStore":
        base = Path(data_dir)
        repos = {
            name: JsonRepository(base / filename, entity_name=name, key=key, backup_keep=backup_keep)
            for name, filename, key in _COLLECTIONS
        }
        return cls(repos, lock=DirectoryLock.for_dir(base))

    @classmethod
    def in_memory(cls) -> "BillingStore":
        return cls({name: MemoryRepository(entity_name=name, key=key) for name, _, key in _COLLECTIONS})

    # ---------- Transactions ---------- #

    @property
    def repositories(self) -> List[Repository]:
        return list(self._repos.values())

    @contextmanager
    def atomic(self) -> Iterator["BillingStore"]:
        with self._lock:
            if self._depth:
                # bloc imbriqué: rejoint la transaction englobante
                self._depth += 1
                try:
                    yield self
                finally:
                    self._depth -= 1
                return

            self._depth = 1
            try:
                # begin() sous verrou: relit l'état committé par les autres stores
                for repo in self.repositories:
                    repo.begin()
                yield self
            except BaseException:
                for repo in self.repositories:
                    repo.rollback()
                logger.debug("Transaction annulée")
                raise
            else:
                self._commit()
            finally:
                self._depth = 0

    def _commit(self) -> None:
        """
        Persiste repo par repo (un fichier chacun). Si une écriture échoue,
        les repos suivants sont abandonnés, mais ceux déjà écrits le restent:
        l'état disque peut alors être partiel, ce qui est journalisé en ERROR.
        """
        written: List[str] = []
        error: Optional[BaseException] = None
        failed: Optional[str] = None
        for repo in self.repositories:
            if error is not None:
                repo.rollback()
                continue
            try:
                repo.commit()
                written.append(repo.entity_name)
            except BaseException as e:
                error, failed = e, repo.entity_name
        if error is not None:
            logger.error(
                "Commit partiel: échec sur %s (%s), déjà écrits: %s",
                failed, error, ", ".join(written) or "aucun",
            )
            raise error
