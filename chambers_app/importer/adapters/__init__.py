"""Source adapters feeding the LEX import pipeline."""

from .csv_lex import (
    CSVAdapterError,
    CSVFileError,
    CSVHeaderError,
    CSVRowLimitError,
    LexCSVAdapter,
    LexCSVRow,
)

__all__ = [
    "CSVAdapterError",
    "CSVFileError",
    "CSVHeaderError",
    "CSVRowLimitError",
    "LexCSVAdapter",
    "LexCSVRow",
]
