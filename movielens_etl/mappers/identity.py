"""Thread-safe allocation of dense sequential indices for natural dataset ids."""

from __future__ import annotations

import logging
import threading
from pathlib import Path

import pandas as pd

from movielens_etl.data.records import coerce_numeric, read_table
from movielens_etl.errors import SourceError
from movielens_etl.models import RunStats

log = logging.getLogger(__name__)


class IdentityMapper:
    """Bijective map from a natural id (movieId, userId) to a zero-based index.

    Reads go straight to the dict and never take the lock. Allocation takes
    the lock and re-checks membership first, so concurrent callers asking for
    the same unseen id all observe the one index that was allocated for it.
    """

    def __init__(self, initial: dict[int, int] | None = None, id_column: str = "id", idx_column: str = "idx"):
        self._mapping: dict[int, int] = dict(initial or {})
        if len(set(self._mapping.values())) != len(self._mapping):
            raise ValueError("initial mapping assigns the same index to more than one id")
        self._next = max(self._mapping.values(), default=-1) + 1
        self._changed = False
        self._lock = threading.Lock()
        self.id_column = id_column
        self.idx_column = idx_column

    def get(self, natural_id: int) -> int | None:
        return self._mapping.get(natural_id)

    def get_or_create(self, natural_id: int) -> int:
        idx = self._mapping.get(natural_id)
        if idx is not None:
            return idx

        with self._lock:
            idx = self._mapping.get(natural_id)
            if idx is not None:
                return idx
            idx = self._next
            self._mapping[natural_id] = idx
            self._next += 1
            self._changed = True
            return idx

    def has_changed(self) -> bool:
        return self._changed

    def snapshot(self) -> dict[int, int]:
        with self._lock:
            return dict(self._mapping)

    def count(self) -> int:
        return len(self._mapping)

    @property
    def next_index(self) -> int:
        return self._next

    def __len__(self) -> int:
        return self.count()

    def __contains__(self, natural_id: int) -> bool:
        return natural_id in self._mapping

    def to_frame(self) -> pd.DataFrame:
        """Mapping as a two-column frame ordered by index, not by id."""
        items = sorted(self.snapshot().items(), key=lambda kv: kv[1])
        return pd.DataFrame(items, columns=[self.id_column, self.idx_column])

    def save(self, path: Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.to_frame().to_csv(path, index=False)
        log.info("Saved %d %s mappings to %s", self.count(), self.id_column, path)


def load_identity_map(
    path: Path,
    id_column: str,
    idx_column: str,
    stats: RunStats | None = None,
) -> IdentityMapper:
    """Load a persisted (id, index) table.

    Raises SourceError when the file is missing or unreadable, leaving the
    empty-mapper fallback to the caller.
    """
    source = Path(path).stem
    mapping: dict[int, int] = {}
    for chunk in read_table(path, [id_column, idx_column], source=source, stats=stats):
        chunk = coerce_numeric(chunk, int_cols=[id_column, idx_column], source=source, stats=stats)
        chunk = chunk[chunk[idx_column] >= 0]
        mapping.update(zip(chunk[id_column].tolist(), chunk[idx_column].tolist()))

    if len(set(mapping.values())) != len(mapping):
        raise SourceError(path, f"duplicate {idx_column} values")

    log.info("Loaded %d %s mappings from %s", len(mapping), id_column, path)
    return IdentityMapper(mapping, id_column=id_column, idx_column=idx_column)


def load_or_empty(path: Path, id_column: str, idx_column: str, stats: RunStats | None = None) -> IdentityMapper:
    """Seed a mapper from `path`, or start empty when the file is absent or can't be used.

    An absent file is a first run and is recorded in `new_mappings`; an
    unreadable one is recorded in `degraded_sources`.
    """
    if not Path(path).exists():
        log.info("No %s yet, starting a new mapping", Path(path).name)
        if stats is not None:
            stats.new_mappings.append(Path(path).name)
        return IdentityMapper(id_column=id_column, idx_column=idx_column)
    try:
        return load_identity_map(path, id_column, idx_column, stats=stats)
    except SourceError as e:
        log.warning("Could not load %s, starting with an empty mapping: %s", Path(path).name, e)
        if stats is not None:
            stats.degraded_sources.append(Path(path).name)
        return IdentityMapper(id_column=id_column, idx_column=idx_column)


def persist_if_changed(mapper: IdentityMapper, path: Path, enabled: bool) -> bool:
    """Write the mapping back only when enabled and something was allocated."""
    if not enabled or not mapper.has_changed():
        return False
    mapper.save(path)
    return True
