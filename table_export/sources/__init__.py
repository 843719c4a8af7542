"""
table_export.sources - Readers for the tables being exported.
"""

from table_export.sources.fusiontables import TableCsv, TableSource

__all__ = [
    "TableCsv",
    "TableSource",
]
