"""Fusion Tables source: table lookup, CSV download and map styles.

This module provides the TableSource class that reads everything an export
needs to know about one source table. Table files and their sharing
permissions live in Drive; rows, columns and styles come from the Fusion
Tables v2 API.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

import requests

from ..core.state import Credentials, TableItem
from ..utils.drive import DRIVE_API_BASE, escape_query_value
from ..utils.http import DEFAULT_MAX_RETRIES, DEFAULT_TIMEOUT, ApiClient
from ..utils.logging import get_logger


FUSIONTABLES_API_BASE = "https://www.googleapis.com/fusiontables/v2"
FUSIONTABLE_MIME_TYPE = "application/vnd.google-apps.fusiontable"
DEFAULT_PAGE_SIZE = 100

# Column types holding points, lines or polygons
GEOMETRY_COLUMN_TYPES = frozenset({"LOCATION"})

# Only these permission fields can be sent back when sharing a new file
PERMISSION_FIELDS = ("role", "type", "emailAddress", "domain")
TABLE_FIELDS = "id,name,permissions(role,type,emailAddress,domain)"


@dataclass
class TableCsv:
    """CSV export of a table.

    Attributes:
        data: Raw CSV bytes, header row first.
        has_geometry_data: Whether any column holds geometry.
    """

    data: bytes
    has_geometry_data: bool = False

    @property
    def size(self) -> int:
        return len(self.data)


def _clean_permission(permission: Dict[str, Any]) -> Dict[str, Any]:
    return {key: permission[key] for key in PERMISSION_FIELDS if permission.get(key)}


def _table_from_file(data: Dict[str, Any], table_id: str = "") -> TableItem:
    table_id = data.get("id") or table_id
    return TableItem(
        id=table_id,
        name=data.get("name") or table_id,
        permissions=tuple(
            _clean_permission(permission) for permission in data.get("permissions", [])
        ),
    )


class TableSource(ApiClient):
    """Reads source tables on behalf of the signed-in user."""

    def __init__(
        self,
        credentials: Credentials,
        session: Optional[requests.Session] = None,
        timeout: int = DEFAULT_TIMEOUT,
        max_retries: int = DEFAULT_MAX_RETRIES,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        super().__init__(
            credentials,
            session=session,
            timeout=timeout,
            max_retries=max_retries,
            logger=logger or get_logger("sources.fusiontables"),
        )

    def get_table(self, table_id: str) -> TableItem:
        """Look up a table's name and sharing permissions.

        Raises:
            ApiNotFoundError: If the table does not exist or is not visible.
        """
        data = self._request_json(
            "GET",
            f"{DRIVE_API_BASE}/files/{table_id}",
            f"get_table({table_id})",
            params={"fields": TABLE_FIELDS},
        )
        return _table_from_file(data, table_id)

    def get_tables(self, table_ids: Iterable[str]) -> List[TableItem]:
        """Look up several tables, keeping the given order and dropping duplicates."""
        tables: List[TableItem] = []
        seen = set()
        for table_id in table_ids:
            table_id = table_id.strip()
            if not table_id or table_id in seen:
                continue
            seen.add(table_id)
            tables.append(self.get_table(table_id))
        return tables

    def find_tables(
        self,
        name_filter: Optional[str] = None,
        page_token: Optional[str] = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> Tuple[List[TableItem], Optional[str]]:
        """List the tables the user can see in Drive, one page at a time.

        Args:
            name_filter: Only return tables whose name contains this text.
            page_token: Token of the page to fetch, from a previous call.
            page_size: Maximum number of tables per page.

        Returns:
            Tuple of (tables on this page sorted by name, next page token or
            None on the last page).
        """
        query = f"mimeType = '{FUSIONTABLE_MIME_TYPE}' and trashed = false"
        if name_filter:
            query += f" and name contains '{escape_query_value(name_filter)}'"

        params: Dict[str, Any] = {
            "q": query,
            "spaces": "drive",
            "orderBy": "name",
            "pageSize": page_size,
            "fields": f"nextPageToken,files({TABLE_FIELDS})",
        }
        if page_token:
            params["pageToken"] = page_token

        data = self._request_json(
            "GET",
            f"{DRIVE_API_BASE}/files",
            f"find_tables({name_filter or '*'})",
            params=params,
        )
        tables = [_table_from_file(file) for file in data.get("files", [])]
        return tables, data.get("nextPageToken") or None

    def get_columns(self, table_id: str) -> List[Dict[str, Any]]:
        data = self._request_json(
            "GET",
            f"{FUSIONTABLES_API_BASE}/tables/{table_id}/columns",
            f"get_columns({table_id})",
        )
        return data.get("items", [])

    def fetch_csv(self, table: TableItem) -> TableCsv:
        """Download all rows of a table as CSV.

        Args:
            table: The table to download.

        Returns:
            TableCsv with the data and whether the table has geometry.
        """
        columns = self.get_columns(table.id)
        has_geometry_data = any(
            str(column.get("type", "")).upper() in GEOMETRY_COLUMN_TYPES for column in columns
        )

        response = self._send(
            "GET",
            f"{FUSIONTABLES_API_BASE}/query",
            f"fetch_csv({table.id})",
            params={"sql": f"SELECT * FROM {table.id}", "alt": "csv"},
        )
        self._logger.debug(f"Fetched {len(response.content):,} bytes of CSV for {table.id}")

        return TableCsv(data=response.content, has_geometry_data=has_geometry_data)

    def get_styles(self, table_id: str) -> List[Dict[str, Any]]:
        """Return the map styles defined on a table."""
        data = self._request_json(
            "GET",
            f"{FUSIONTABLES_API_BASE}/tables/{table_id}/styles",
            f"get_styles({table_id})",
        )
        return data.get("items", [])
