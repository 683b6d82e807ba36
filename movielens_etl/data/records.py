"""CSV record reading and NDJSON writing shared by every stage."""

from __future__ import annotations

import csv
import json
import logging
import os
from collections.abc import Iterator
from pathlib import Path

import pandas as pd

from movielens_etl.errors import SourceError
from movielens_etl.models import RunStats

log = logging.getLogger(__name__)


def _align_columns(df: pd.DataFrame, columns: list[str]) -> pd.DataFrame:
    """Select `columns` by header name, falling back to their position."""
    out = {}
    for pos, name in enumerate(columns):
        if name in df.columns:
            out[name] = df[name]
        elif pos < len(df.columns):
            out[name] = df.iloc[:, pos]
        else:
            out[name] = pd.Series([""] * len(df), index=df.index, dtype=object)
    return pd.DataFrame(out, index=df.index)


def read_table(
    path: Path,
    columns: list[str],
    source: str | None = None,
    stats: RunStats | None = None,
    chunksize: int | None = None,
) -> Iterator[pd.DataFrame]:
    """Yield the table at `path` as string-typed frames with canonical column names.

    Lines with more fields than the header are skipped and counted against
    `source`. Any failure to open or tokenize the file raises SourceError.
    """
    path = Path(path)
    source = source or path.stem
    if not path.exists():
        raise SourceError(path, "file not found")

    def _bad_line(fields: list[str]) -> None:
        if stats is not None:
            stats.skip(source)
        return None

    try:
        reader = pd.read_csv(
            path,
            dtype=str,
            keep_default_na=False,
            engine="python",
            on_bad_lines=_bad_line,
            chunksize=chunksize,
        )
        if chunksize is None:
            yield _align_columns(reader, columns)
            return
        with reader:
            for chunk in reader:
                yield _align_columns(chunk, columns)
    except pd.errors.EmptyDataError as e:
        raise SourceError(path, "file is empty") from e
    except (pd.errors.ParserError, UnicodeDecodeError, csv.Error, OSError) as e:
        raise SourceError(path, str(e)) from e


def check_readable(path: Path) -> None:
    """Raise SourceError unless `path` exists and has a parseable header row."""
    path = Path(path)
    if not path.exists():
        raise SourceError(path, "file not found")
    try:
        pd.read_csv(path, dtype=str, nrows=0)
    except pd.errors.EmptyDataError as e:
        raise SourceError(path, "file is empty") from e
    except (pd.errors.ParserError, UnicodeDecodeError, csv.Error, OSError) as e:
        raise SourceError(path, str(e)) from e


def coerce_numeric(
    df: pd.DataFrame,
    int_cols: list[str] = (),
    float_cols: list[str] = (),
    source: str = "",
    stats: RunStats | None = None,
) -> pd.DataFrame:
    """Parse numeric columns, dropping (and counting) rows that don't parse.

    Integer columns must hold whole numbers; `"3.5"` in an id column is a bad row.
    """
    df = df.copy()
    valid = pd.Series(True, index=df.index)
    for col in list(int_cols) + list(float_cols):
        df[col] = pd.to_numeric(df[col].str.strip(), errors="coerce")
        valid &= df[col].notna()
    for col in int_cols:
        valid &= df[col].fillna(0) % 1 == 0

    skipped = int((~valid).sum())
    if skipped and stats is not None:
        stats.skip(source, skipped)

    df = df[valid].copy()
    for col in int_cols:
        df[col] = df[col].astype("int64")
    return df


class NdjsonWriter:
    """Write one JSON document per line.

    Lines go to a sibling ".tmp" file that replaces `path` only when the block
    exits cleanly; on error the temp file is removed and `path` is untouched.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self.tmp_path = self.path.with_name(self.path.name + ".tmp")
        self.count = 0
        self._fh = None

    def __enter__(self) -> "NdjsonWriter":
        self._fh = open(self.tmp_path, "w", encoding="utf-8", newline="\n")
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self._fh.close()
        self._fh = None
        if exc_type is None:
            os.replace(self.tmp_path, self.path)
        else:
            self.tmp_path.unlink(missing_ok=True)

    def write(self, doc: dict) -> None:
        self._fh.write(json.dumps(doc, ensure_ascii=False))
        self._fh.write("\n")
        self.count += 1


def read_ndjson(path: Path) -> Iterator[dict]:
    """Yield documents from an NDJSON file, skipping blank lines."""
    with open(path, encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if line:
                yield json.loads(line)
