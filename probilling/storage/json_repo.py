from __future__ import annotations

import glob
import json
import logging
import os
import shutil
import tempfile
import threading
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Union

from probilling.errors import StorageError
from probilling.storage.repo import Repository

logger = logging.getLogger(__name__)


def _json_default(o: Any) -> Any:
    if isinstance(o, (date, datetime)):
        return o.isoformat()
    return str(o)


class JsonRepository(Repository):
    """
    Repo JSON (un fichier = une liste d'enregistrements).
    - Écriture atomique (fichier temporaire + os.replace)
    - Rotation de backups (backup_enabled, backup_keep)
    - N'écrit pas si le contenu ne change pas (réduction du bruit et des .bak)
    """

    def __init__(
        self,
        filepath: Union[str, Path],
        entity_name: str = "entity",
        key: str = "id",
        *,
        backup_enabled: bool = True,
        backup_keep: int = 5,
    ) -> None:
        super().__init__(entity_name=entity_name, key=key)
        self.filepath = Path(filepath)
        self._lock = threading.Lock()
        self.backup_enabled = backup_enabled
        self.backup_keep = max(0, int(backup_keep))

        try:
            self.filepath.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Impossible de créer {self.filepath.parent}: {e}") from e
        if not self.filepath.exists():
            self._write_raw([])

    # ---------------- I/O bas niveau ---------------- #

    def _read_raw(self) -> List[Dict[str, Any]]:
        try:
            with self.filepath.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return []
        except json.JSONDecodeError as e:
            # Fichier corrompu -> on ne repart pas silencieusement de zéro
            raise StorageError(f"{self.filepath} illisible: {e}") from e
        except OSError as e:
            raise StorageError(f"Lecture impossible de {self.filepath}: {e}") from e
        if not isinstance(data, list):
            raise StorageError(f"{self.filepath}: liste JSON attendue")
        return data

    def _rotate_backups(self) -> None:
        if not self.backup_enabled or self.backup_keep <= 0:
            return
        pattern = str(self.filepath.with_suffix(".*.bak.json"))
        files = sorted(glob.glob(pattern))
        # garde les plus récents
        if len(files) > self.backup_keep:
            for old in files[: len(files) - self.backup_keep]:
                try:
                    Path(old).unlink(missing_ok=True)
                except OSError as e:
                    logger.warning("Backup %s non supprimé: %s", old, e)

    def _write_raw(self, data: Iterable[Mapping[str, Any]]) -> None:
        with self._lock:
            new_dump = json.dumps(list(data), ensure_ascii=False, indent=2, default=_json_default)

            # si contenu identique -> ne rien faire
            if self.filepath.exists():
                try:
                    if self.filepath.read_text(encoding="utf-8") == new_dump:
                        return
                except OSError:
                    pass

            try:
                # backup
                if self.backup_enabled and self.filepath.exists():
                    ts = datetime.now().strftime("%Y%m%d-%H%M%S-%f")
                    backup = self.filepath.with_suffix(f".{ts}.bak.json")
                    shutil.copy2(self.filepath, backup)
                    logger.debug("Backup %s", backup.name)
                    self._rotate_backups()

                # write
                fd, tmp = tempfile.mkstemp(dir=str(self.filepath.parent), prefix=self.filepath.name, suffix=".tmp")
                try:
                    with os.fdopen(fd, "w", encoding="utf-8") as f:
                        f.write(new_dump)
                    os.replace(tmp, self.filepath)
                except BaseException:
                    Path(tmp).unlink(missing_ok=True)
                    raise
            except OSError as e:
                raise StorageError(f"Écriture impossible de {self.filepath}: {e}") from e

    # ---------------- backend Repository ---------------- #

    def _load_rows(self) -> List[Dict[str, Any]]:
        return self._read_raw()

    def _persist_rows(self, rows: List[Dict[str, Any]]) -> None:
        self._write_raw(rows)
