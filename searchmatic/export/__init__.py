"""Export module for Searchmatic."""

from .exporters import (
    ExportService,
    ExportResult,
    to_csv,
    to_json,
    to_bibtex,
    to_endnote,
    to_prisma,
    to_xlsx,
)

__all__ = [
    "ExportService",
    "ExportResult",
    "to_csv",
    "to_json",
    "to_bibtex",
    "to_endnote",
    "to_prisma",
    "to_xlsx",
]
