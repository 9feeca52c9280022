"""Ingest contract helpers for importer adapters."""

from __future__ import annotations

from .lex import (
    EXPORT_COLUMNS,
    LEX_CLIENT_TYPES,
    LEX_FIELDS,
    LEX_STATUSES,
    FieldSpec,
    get_lex_alias_map,
    get_lex_field_specs,
    get_lex_required_headers,
    normalize_header,
)

__all__ = [
    "FieldSpec",
    "LEX_FIELDS",
    "LEX_STATUSES",
    "LEX_CLIENT_TYPES",
    "EXPORT_COLUMNS",
    "get_lex_field_specs",
    "get_lex_required_headers",
    "get_lex_alias_map",
    "normalize_header",
]
