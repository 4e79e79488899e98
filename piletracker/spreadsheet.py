"""Reading uploaded CSV/XLSX files into raw-cell frames with a detected header row."""
from __future__ import annotations

import logging
from io import BytesIO, StringIO
from pathlib import Path
from typing import Callable, Mapping, Optional, Sequence, Tuple

import pandas as pd

from .column_mapping import dedupe_headers, header_row_score
from .normalizers import normalize_text

LOGGER = logging.getLogger(__name__)

EXCEL_SUFFIXES = (".xlsx", ".xlsm", ".xls")
CSV_SUFFIXES = (".csv", ".txt")
HEADER_SEARCH_ROWS = 20
MIN_HEADER_SCORE = 2.0


def file_kind(filename: str) -> str:
    suffix = Path(filename or "").suffix.lower()
    if suffix in EXCEL_SUFFIXES:
        return "excel"
    if suffix in CSV_SUFFIXES:
        return "csv"
    raise ValueError(f"Unsupported file type '{suffix or filename}'. Upload a CSV or XLSX file.")


def _csv_width(text: str) -> int:
    # Upper bound: quoted commas only add blank trailing columns, which are trimmed later.
    return max((line.count(",") for line in text.splitlines()), default=0) + 1


def _read_csv_raw(content: bytes) -> pd.DataFrame:
    # Ragged rows (title lines above the header) are padded to the widest line.
    for encoding in ("utf-8-sig", "latin-1"):
        try:
            text = content.decode(encoding)
        except UnicodeDecodeError:
            LOGGER.debug("CSV is not %s encoded; retrying", encoding)
            continue
        try:
            return pd.read_csv(
                StringIO(text),
                header=None,
                names=list(range(_csv_width(text))),
                dtype=object,
                keep_default_na=False,
                skip_blank_lines=False,
                index_col=False,
                engine="python",
            )
        except (pd.errors.ParserError, pd.errors.EmptyDataError) as exc:
            raise ValueError(f"Unable to parse the CSV file: {exc}") from exc
    raise ValueError("Unable to decode the CSV file.")


def _read_excel_raw(
    content: bytes,
    sheet_picker: Callable[[Sequence[str]], str] | None,
) -> Tuple[pd.DataFrame, str]:
    with pd.ExcelFile(BytesIO(content)) as workbook:
        names = list(workbook.sheet_names)
        if not names:
            raise ValueError("The workbook has no sheets.")
        sheet = sheet_picker(names) if sheet_picker else names[0]
        frame = workbook.parse(sheet_name=sheet, header=None, dtype=object)
    return frame, sheet


def find_header_row(
    df_raw: pd.DataFrame,
    patterns: Mapping[str, Sequence[str]] | None = None,
    search_rows: int = HEADER_SEARCH_ROWS,
) -> Optional[int]:
    """Locate the header row within the top ``search_rows`` by pattern score."""

    best: Optional[Tuple[int, float]] = None
    nrows = min(search_rows, df_raw.shape[0])
    for r in range(nrows):
        values = list(df_raw.iloc[r, :].values)
        non_empty = sum(1 for v in values if normalize_text(v))
        if not non_empty:
            continue
        score = header_row_score(values, patterns)
        if best is None or score > best[1]:
            best = (r, score)
    if best is None or best[1] < MIN_HEADER_SCORE:
        return None
    return best[0]


def read_tabular_file(
    content: bytes,
    filename: str,
    *,
    patterns: Mapping[str, Sequence[str]] | None = None,
    sheet_picker: Callable[[Sequence[str]], str] | None = None,
) -> pd.DataFrame:
    """Return the data rows of an uploaded file with deduplicated string headers.

    Cells keep their raw values (text for CSV, typed cells for XLSX). The
    index holds the 1-based spreadsheet row number of each data row. Entirely
    blank rows are dropped.
    """

    if not content:
        raise ValueError("The uploaded file is empty.")
    kind = file_kind(filename)
    sheet = None
    if kind == "excel":
        df_raw, sheet = _read_excel_raw(content, sheet_picker)
    else:
        df_raw = _read_csv_raw(content)
    if df_raw.empty:
        raise ValueError("The uploaded file contains no rows.")

    header_row = find_header_row(df_raw, patterns)
    if header_row is None:
        header_row = next(
            (r for r in range(df_raw.shape[0]) if any(normalize_text(v) for v in df_raw.iloc[r].values)),
            0,
        )

    headers = dedupe_headers(df_raw.iloc[header_row].values)
    data = df_raw.iloc[header_row + 1 :].copy()
    data.columns = headers
    data.index = [header_row + 2 + offset for offset in range(len(data))]
    if len(data):
        blank = data.apply(lambda row: all(not normalize_text(v) for v in row.values), axis=1)
        data = data.loc[~blank]

    # Trailing all-blank "Column X" headers add nothing to the mapping dialog.
    keep = [
        col for col in data.columns
        if not (col.startswith("Column ") and data[col].map(normalize_text).eq("").all())
    ]
    data = data[keep]
    LOGGER.info(
        "Read %s (%s%s): header_row=%d rows=%d cols=%d",
        filename,
        kind,
        f", sheet={sheet}" if sheet else "",
        header_row + 1,
        len(data),
        len(keep),
    )
    if data.empty:
        raise ValueError("The uploaded file has a header row but no data rows.")
    return data
