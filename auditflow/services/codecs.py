"""File codecs turning uploads into row mappings and records into downloads."""

from __future__ import annotations

import json
import re
import zipfile
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from io import BytesIO
from pathlib import PurePath
from time import perf_counter
from typing import Any

import pandas as pd
import structlog
from openpyxl.utils.exceptions import InvalidFileException

from ..core.exceptions import CorruptSource, UnsupportedFormat
from .metrics import codec_seconds
from .pdf_generation import render_table_pdf

LOGGER = structlog.get_logger(__name__)

Records = list[dict[str, Any]]
Dataset = Records | Mapping[str, Records]

DATASET_COLUMN = "dataset"
_SCALARS = (str, int, float, bool, type(None))
_INVALID_SHEET_CHARS = re.compile(r"[\[\]:*?/\\]")


class FileFormat(str, Enum):
    """File formats understood by the codec layer."""

    CSV = "csv"
    EXCEL = "excel"
    JSON = "json"
    PDF = "pdf"

    @property
    def content_type(self) -> str:
        return _CONTENT_TYPES[self]

    @property
    def extension(self) -> str:
        return _EXTENSIONS[self]

    @classmethod
    def coerce(cls, value: "FileFormat | str") -> "FileFormat":
        """Return the matching format or raise :class:`UnsupportedFormat`."""

        if isinstance(value, FileFormat):
            return value
        normalized = str(value or "").strip().lower().lstrip(".")
        normalized = _ALIASES.get(normalized, normalized)
        try:
            return cls(normalized)
        except ValueError as exc:
            raise UnsupportedFormat(str(value)) from exc


_CONTENT_TYPES = {
    FileFormat.CSV: "text/csv",
    FileFormat.EXCEL: "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    FileFormat.JSON: "application/json",
    FileFormat.PDF: "application/pdf",
}
_EXTENSIONS = {
    FileFormat.CSV: "csv",
    FileFormat.EXCEL: "xlsx",
    FileFormat.JSON: "json",
    FileFormat.PDF: "pdf",
}
_ALIASES = {"xlsx": "excel", "xls": "excel"}
PARSEABLE_FORMATS = frozenset({FileFormat.CSV, FileFormat.EXCEL, FileFormat.JSON})


@dataclass(frozen=True, slots=True)
class GeneratedFile:
    """Bytes produced by :func:`generate` plus how to serve them."""

    content: bytes
    content_type: str
    extension: str

    @property
    def size(self) -> int:
        return len(self.content)

    def filename(self, base: str) -> str:
        return f"{base}.{self.extension}"


def detect_format(filename: str) -> FileFormat:
    """Map a file name's extension to a :class:`FileFormat`."""

    suffix = PurePath(filename or "").suffix.lower().lstrip(".")
    if not suffix:
        raise UnsupportedFormat("", {"filename": filename})
    try:
        return FileFormat.coerce(suffix)
    except UnsupportedFormat as exc:
        raise UnsupportedFormat(suffix, {"filename": filename}) from exc


def apply_mapping(rows: Iterable[dict[str, Any]], mapping: Mapping[str, str] | None) -> Records:
    """Rename row keys according to ``mapping``; unmapped keys are kept."""

    if not mapping:
        return list(rows)
    return [{mapping.get(key, key): value for key, value in row.items()} for row in rows]


def parse(content: bytes, declared_format: FileFormat | str) -> Records:
    """Decode ``content`` into a list of flat row mappings in source order."""

    file_format = FileFormat.coerce(declared_format)
    if file_format not in PARSEABLE_FORMATS:
        raise UnsupportedFormat(file_format.value, {"operation": "parse"})

    start = perf_counter()
    if file_format is FileFormat.CSV:
        rows = _parse_csv(content)
    elif file_format is FileFormat.EXCEL:
        rows = _parse_excel(content)
    else:
        rows = _parse_json(content)
    codec_seconds.labels(format=file_format.value, operation="parse").observe(
        perf_counter() - start
    )
    LOGGER.info("source_parsed", format=file_format.value, rows=len(rows))
    return rows


def _frame_to_rows(df: pd.DataFrame) -> Records:
    cleaned = df.copy()
    cleaned.columns = [str(column).strip() for column in cleaned.columns]
    cleaned = cleaned.fillna("")
    return cleaned.to_dict(orient="records")


def _parse_csv(content: bytes) -> Records:
    try:
        df = pd.read_csv(BytesIO(content), dtype=str, keep_default_na=False)
    except pd.errors.EmptyDataError as exc:
        raise CorruptSource("CSV file has no header row") from exc
    except (pd.errors.ParserError, UnicodeDecodeError) as exc:
        raise CorruptSource("CSV file could not be parsed", {"error": str(exc)}) from exc
    # pandas turns leading surplus fields into an implicit index.
    if len(df.index) and not isinstance(df.index, pd.RangeIndex):
        raise CorruptSource(
            "CSV rows have more fields than the header",
            {"header_fields": len(df.columns), "row": 1},
        )
    return _frame_to_rows(df)


def _parse_excel(content: bytes) -> Records:
    try:
        df = pd.read_excel(BytesIO(content), sheet_name=0, dtype=str, keep_default_na=False)
    except (ValueError, KeyError, OSError, zipfile.BadZipFile, InvalidFileException) as exc:
        raise CorruptSource("Excel file could not be parsed", {"error": str(exc)}) from exc
    return _frame_to_rows(df)


def _parse_json(content: bytes) -> Records:
    try:
        payload = json.loads(content.decode("utf-8-sig"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise CorruptSource("JSON file could not be parsed", {"error": str(exc)}) from exc

    if isinstance(payload, dict) and "data" in payload and "export_info" in payload:
        payload = payload["data"]
    if isinstance(payload, dict):
        payload = [payload]
    if not isinstance(payload, list):
        raise CorruptSource("JSON root must be an object or an array of objects")

    rows: Records = []
    for index, item in enumerate(payload, start=1):
        if not isinstance(item, dict):
            raise CorruptSource("JSON rows must be objects", {"row": index})
        for key, value in item.items():
            if not isinstance(value, _SCALARS):
                raise CorruptSource(
                    "JSON rows must be flat key/value mappings", {"row": index, "field": key}
                )
        rows.append(dict(item))
    return rows


def _column_order(records: Records, preferred: Sequence[str] | None = None) -> list[str]:
    columns: list[str] = list(preferred or [])
    seen = set(columns)
    for record in records:
        for key in record:
            if key not in seen:
                seen.add(key)
                columns.append(key)
    return columns


def _frame(records: Records, columns: Sequence[str] | None = None) -> pd.DataFrame:
    return pd.DataFrame(records, columns=_column_order(records, columns), dtype=object)


def sheet_name(name: str, taken: set[str]) -> str:
    """Return a valid, unique Excel sheet name derived from ``name``."""

    base = _INVALID_SHEET_CHARS.sub("_", name).strip("'") or "Sheet"
    candidate = base[:31]
    counter = 2
    while candidate.lower() in taken:
        suffix = f"_{counter}"
        candidate = f"{base[: 31 - len(suffix)]}{suffix}"
        counter += 1
    taken.add(candidate.lower())
    return candidate


def generate(
    file_format: FileFormat | str,
    data: Dataset,
    *,
    info: Mapping[str, Any] | None = None,
    columns: Sequence[str] | None = None,
) -> GeneratedFile:
    """Encode records, or a ``dataset -> records`` mapping, as ``file_format``."""

    resolved = FileFormat.coerce(file_format)
    start = perf_counter()
    if resolved is FileFormat.CSV:
        content = _generate_csv(data, columns)
    elif resolved is FileFormat.EXCEL:
        content = _generate_excel(data, columns)
    elif resolved is FileFormat.JSON:
        content = _generate_json(data, info)
    else:
        content = _generate_pdf(data, info, columns)
    codec_seconds.labels(format=resolved.value, operation="generate").observe(
        perf_counter() - start
    )
    return GeneratedFile(
        content=content, content_type=resolved.content_type, extension=resolved.extension
    )


def _datasets(data: Dataset) -> dict[str, Records] | None:
    if isinstance(data, Mapping):
        return {str(name): list(records) for name, records in data.items()}
    return None


def _generate_csv(data: Dataset, columns: Sequence[str] | None) -> bytes:
    datasets = _datasets(data)
    if datasets is None:
        df = _frame(list(data), columns)
    else:
        combined = [
            {DATASET_COLUMN: name, **record}
            for name, records in datasets.items()
            for record in records
        ]
        df = _frame(combined, [DATASET_COLUMN])
    return df.to_csv(index=False).encode("utf-8")


def _generate_excel(data: Dataset, columns: Sequence[str] | None) -> bytes:
    datasets = _datasets(data)
    sheets = datasets if datasets is not None else {"Export": list(data)}
    buffer = BytesIO()
    taken: set[str] = set()
    with pd.ExcelWriter(buffer, engine="openpyxl") as writer:
        if not sheets:
            pd.DataFrame().to_excel(writer, sheet_name="Export", index=False)
        for name, records in sheets.items():
            frame = _frame(records, columns if datasets is None else None)
            frame.to_excel(writer, sheet_name=sheet_name(name, taken), index=False)
    return buffer.getvalue()


def _export_info(data: Dataset, info: Mapping[str, Any] | None) -> dict[str, Any]:
    datasets = _datasets(data)
    if datasets is None:
        record_count = len(data)
    else:
        record_count = sum(len(records) for records in datasets.values())
    return {
        "exported_at": datetime.now(timezone.utc).isoformat(),
        "record_count": record_count,
        **(info or {}),
    }


def _generate_json(data: Dataset, info: Mapping[str, Any] | None) -> bytes:
    datasets = _datasets(data)
    envelope = {
        "export_info": _export_info(data, info),
        "data": datasets if datasets is not None else list(data),
    }
    return json.dumps(envelope, indent=2, default=str).encode("utf-8")


def _generate_pdf(
    data: Dataset, info: Mapping[str, Any] | None, columns: Sequence[str] | None
) -> bytes:
    datasets = _datasets(data)
    sections = datasets if datasets is not None else {"Records": list(data)}
    prepared = {
        name: (_column_order(records, columns if datasets is None else None), records)
        for name, records in sections.items()
    }
    details = _export_info(data, info)
    title = str(details.pop("export_name", None) or "Data Export")
    return render_table_pdf(title, prepared, details)


__all__ = [
    "DATASET_COLUMN",
    "FileFormat",
    "GeneratedFile",
    "PARSEABLE_FORMATS",
    "apply_mapping",
    "detect_format",
    "generate",
    "parse",
    "sheet_name",
]
