"""
Clinic Ingestion Service — Tabular Parser
tabular_parser.py

Uploaded bytes -> rows. Every cell comes back as a string (blank cells are
''), so normalization happens in one place: the ingesters.
"""
from __future__ import annotations
import csv
import io
import logging
import zipfile
from dataclasses import dataclass, field
from pathlib import PurePath

import pandas as pd

from exceptions import FileParseError

logger = logging.getLogger(__name__)

CSV_ENCODINGS = ('utf-8-sig', 'iso-8859-1')
EXCEL_EXTENSIONS = {'.xlsx', '.xlsm'}


@dataclass
class ParsedTable:
    headers: list[str] = field(default_factory=list)
    rows: list[dict[str, str]] = field(default_factory=list)


def file_extension(file_name: str) -> str:
    return PurePath(file_name).suffix.lower()


def _decode(content: bytes) -> tuple[str, str]:
    """(text, encoding) using the first encoding that fits."""
    last_error: Exception | None = None
    for encoding in CSV_ENCODINGS:
        try:
            return content.decode(encoding), encoding
        except UnicodeDecodeError as e:
            logger.info("CSV is not %s, retrying", encoding)
            last_error = e
    raise FileParseError(f"Could not decode CSV: {last_error}")


def _read_csv(content: bytes, header: int | None) -> pd.DataFrame:
    text, encoding = _decode(content)
    if header is not None:
        # A row wider than the header means a stray delimiter; refuse the file
        return pd.read_csv(
            io.StringIO(text),
            dtype=str,
            keep_default_na=False,
            header=header,
            skip_blank_lines=True,
            on_bad_lines='error',
        )

    # Headerless rows may differ in width; size the frame to the widest one
    width = max((len(r) for r in csv.reader(io.StringIO(text))), default=0)
    if width == 0:
        raise pd.errors.EmptyDataError(f"No columns in {encoding} CSV")
    return pd.read_csv(
        io.StringIO(text),
        dtype=str,
        keep_default_na=False,
        header=None,
        names=list(range(width)),
        engine='python',
        skip_blank_lines=True,
    )


def _read_frame(file_name: str, content: bytes, header: int | None) -> pd.DataFrame:
    if not content:
        raise FileParseError(f"{file_name} is empty")

    ext = file_extension(file_name)
    try:
        if ext in EXCEL_EXTENSIONS:
            df = pd.read_excel(
                io.BytesIO(content), sheet_name=0, header=header,
                dtype=str, keep_default_na=False, engine='openpyxl',
            )
        else:
            df = _read_csv(content, header)
    except FileParseError:
        raise
    except pd.errors.EmptyDataError as e:
        raise FileParseError(f"{file_name} has no data") from e
    except (pd.errors.ParserError, csv.Error, zipfile.BadZipFile, ValueError, KeyError) as e:
        raise FileParseError(f"Could not parse {file_name}: {e}") from e

    # Fully blank rows carry nothing
    df = df.fillna('')
    if not df.empty:
        df = df[~(df.astype(str).apply(lambda col: col.str.strip()) == '').all(axis=1)]
    return df


def parse_table(file_name: str, content: bytes) -> ParsedTable:
    """First row is the header; returns header-keyed string rows."""
    df = _read_frame(file_name, content, header=0)
    df.columns = [str(c).strip() for c in df.columns]
    headers = list(df.columns)
    rows = [
        {k: str(v).strip() for k, v in record.items()}
        for record in df.to_dict(orient='records')
    ]
    logger.info("Parsed %s: %d rows, %d columns", file_name, len(rows), len(headers))
    return ParsedTable(headers=headers, rows=rows)


def parse_positional(file_name: str, content: bytes) -> list[list[str]]:
    """
    Headerless exports: every row, including any header-looking one, as a
    list. Rows of any width are kept; short ones are padded with ''.
    """
    df = _read_frame(file_name, content, header=None)
    rows = [[str(v).strip() for v in values] for values in df.itertuples(index=False, name=None)]
    logger.info("Parsed %s positionally: %d rows", file_name, len(rows))
    return rows
