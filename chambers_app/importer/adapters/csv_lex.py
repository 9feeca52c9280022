"""CSV adapter for LEX matter extracts.

Validates the header row against the LEX contract, enforces the row cap and
streams rows keyed by canonical column name. Row numbers follow the
spreadsheet convention: the header is row 1, so the first record is row 2.
"""

from __future__ import annotations

import csv
from dataclasses import dataclass, field
from typing import IO, Iterator, Sequence

from chambers_app.importer.contracts import (
    FieldSpec,
    get_lex_alias_map,
    get_lex_field_specs,
    get_lex_required_headers,
    normalize_header,
)

HEADER_ROW_OFFSET = 2


class CSVAdapterError(Exception):
    """Base exception for CSV adapter failures."""


class CSVFileError(CSVAdapterError):
    """Raised when the file cannot be decoded or parsed as CSV at all."""


class CSVRowLimitError(CSVAdapterError):
    """Raised when the file holds more data rows than the configured cap."""

    def __init__(self, limit: int) -> None:
        super().__init__(f"CSV exceeds the maximum of {limit} data rows.")
        self.limit = limit


class CSVHeaderError(CSVAdapterError):
    """Raised when the CSV header row does not meet contract requirements."""

    def __init__(
        self,
        *,
        missing: Sequence[str] | None = None,
        duplicates: Sequence[str] | None = None,
    ) -> None:
        details: list[str] = []
        if missing:
            details.append(f"Missing required columns: {', '.join(sorted(missing))}.")
        if duplicates:
            details.append(
                "Duplicate columns detected: "
                + ", ".join(sorted(duplicates))
                + ". Ensure each LEX column appears only once."
            )

        message = "CSV header validation failed. " + " ".join(details) if details else "CSV header validation failed."
        super().__init__(message)
        self.missing = tuple(missing or ())
        self.duplicates = tuple(duplicates or ())


@dataclass(frozen=True)
class HeaderValidationResult:
    raw_headers: tuple[str, ...]
    canonical_headers: tuple[str | None, ...]
    ignored: tuple[str, ...] = ()


@dataclass(frozen=True)
class LexCSVRow:
    """A parsed LEX record keyed by canonical column names."""

    row_number: int
    source_line: int
    values: dict[str, str | None]


@dataclass
class LexCSVStatistics:
    rows_read: int = 0
    rows_skipped_blank: int = 0
    ignored_columns: list[str] = field(default_factory=list)


def _sanitize_header(header: str | None) -> str:
    token = (header or "").strip()
    return token.lstrip("\ufeff")


def _validate_headers(raw_headers: Sequence[str]) -> HeaderValidationResult:
    sanitized_headers = tuple(_sanitize_header(header) for header in raw_headers)
    alias_map = get_lex_alias_map()
    duplicates: list[str] = []
    ignored: list[str] = []
    seen: set[str] = set()
    canonical_headers: list[str | None] = []

    for header in sanitized_headers:
        canonical = alias_map.get(normalize_header(header))
        if canonical is None:
            ignored.append(header)
            canonical_headers.append(None)
            continue
        if canonical in seen:
            duplicates.append(canonical)
        seen.add(canonical)
        canonical_headers.append(canonical)

    missing = sorted(set(get_lex_required_headers()) - seen)
    if missing or duplicates:
        raise CSVHeaderError(missing=missing, duplicates=duplicates)

    return HeaderValidationResult(
        raw_headers=sanitized_headers,
        canonical_headers=tuple(canonical_headers),
        ignored=tuple(ignored),
    )


def _row_is_blank(row: Sequence[str]) -> bool:
    return all(not (value or "").strip() for value in row)


class LexCSVAdapter:
    """CSV reader that enforces the LEX ingest contract."""

    def __init__(self, file_obj: IO[str], *, max_rows: int | None = None, skip_blank_rows: bool = True) -> None:
        self._file_obj = file_obj
        self.max_rows = max_rows
        self.skip_blank_rows = skip_blank_rows
        self._header_result: HeaderValidationResult | None = None
        self.statistics = LexCSVStatistics()
        self._field_specs = {spec.name: spec for spec in get_lex_field_specs()}

    @property
    def header(self) -> HeaderValidationResult | None:
        return self._header_result

    def iter_rows(self) -> Iterator[LexCSVRow]:
        self._file_obj.seek(0)
        reader = csv.reader(self._file_obj)
        try:
            raw_headers = next(reader, None)
            if raw_headers is None:
                raise CSVHeaderError(missing=get_lex_required_headers())
            header_result = _validate_headers(raw_headers)
            self._header_result = header_result
            self.statistics.ignored_columns = list(header_result.ignored)

            for index, raw_row in enumerate(reader):
                if self.skip_blank_rows and _row_is_blank(raw_row):
                    self.statistics.rows_skipped_blank += 1
                    continue
                if self.max_rows is not None and self.statistics.rows_read >= self.max_rows:
                    raise CSVRowLimitError(self.max_rows)
                self.statistics.rows_read += 1
                yield LexCSVRow(
                    row_number=index + HEADER_ROW_OFFSET,
                    source_line=reader.line_num,
                    values=self._map_row(header_result, raw_row),
                )
        except csv.Error as exc:
            raise CSVFileError(f"Malformed CSV near line {reader.line_num}: {exc}") from exc
        except UnicodeDecodeError as exc:
            raise CSVFileError("CSV file is not valid UTF-8.") from exc

    def read_all(self) -> list[LexCSVRow]:
        return list(self.iter_rows())

    def _map_row(self, header: HeaderValidationResult, raw_row: Sequence[str]) -> dict[str, str | None]:
        values: dict[str, str | None] = {}
        for position, canonical in enumerate(header.canonical_headers):
            if canonical is None:
                continue
            value: str | None = raw_row[position] if position < len(raw_row) else None
            spec: FieldSpec | None = self._field_specs.get(canonical)
            if spec is not None and spec.normalizer is not None:
                value = spec.normalizer(value)  # type: ignore[assignment]
            values[canonical] = value
        return values
