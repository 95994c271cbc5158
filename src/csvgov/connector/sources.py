"""CSV desired-state source."""

from __future__ import annotations

import csv
import logging
from pathlib import Path

from csvgov.connector.models import Row, Table

logger = logging.getLogger(__name__)

CSV_SUFFIX = ".csv"


class DataSourceError(Exception):
    """The CSV file could not be read or parsed."""


def _clean_row(raw: dict[str | None, str | list[str] | None]) -> Row:
    row: Row = {}
    for key, value in raw.items():
        # Surplus cells land under the None key
        if key is None:
            continue
        row[key.strip()] = value.strip() if isinstance(value, str) else ""
    return row


def read_table(path: str | Path) -> Table:
    """Parse a CSV file with a header row.

    Values are trimmed and fully blank lines dropped. A UTF-8 BOM is accepted.
    """
    p = Path(path)
    if not p.is_file():
        raise DataSourceError(f"CSV file not found: {p}")

    try:
        with p.open(newline="", encoding="utf-8-sig") as fh:
            reader = csv.DictReader(fh, skipinitialspace=True)
            header = [name.strip() for name in (reader.fieldnames or [])]
            rows = []
            for raw in reader:
                row = _clean_row(raw)
                if not any(row.values()):
                    continue
                rows.append(row)
    except (OSError, UnicodeDecodeError, csv.Error) as e:
        raise DataSourceError(f"Failed to read CSV file {p}: {e}") from e

    logger.info("Loaded %d rows (%d columns) from %s", len(rows), len(header), p)
    return Table(header=header, rows=rows)


def read_rows(path: str | Path) -> list[Row]:
    return read_table(path).rows


def list_candidate_files(directory: str | Path = ".") -> list[Path]:
    """CSV files directly inside ``directory``, sorted by name."""
    d = Path(directory)
    if not d.is_dir():
        return []
    return sorted(p for p in d.iterdir() if p.is_file() and p.suffix.lower() == CSV_SUFFIX)
