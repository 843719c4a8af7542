"""Google Drive and Sheets REST client.

This module provides the DriveClient class used to provision export folders,
upload exported tables, share them and keep the archive index spreadsheet
up to date.
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any, Dict, List, Optional

import requests

from ..core.state import Credentials
from .http import DEFAULT_MAX_RETRIES, DEFAULT_TIMEOUT, ApiClient
from .logging import get_logger


DRIVE_API_BASE = "https://www.googleapis.com/drive/v3"
DRIVE_UPLOAD_URL = "https://www.googleapis.com/upload/drive/v3/files"
SHEETS_API_BASE = "https://sheets.googleapis.com/v4/spreadsheets"

FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
SPREADSHEET_MIME_TYPE = "application/vnd.google-apps.spreadsheet"
CSV_MIME_TYPE = "text/csv"


def escape_query_value(value: str) -> str:
    """Escape a literal for use inside a Drive search query."""
    return value.replace("\\", "\\\\").replace("'", "\\'")


class DriveClient(ApiClient):
    """Client for the Drive v3 and Sheets v4 calls an export needs."""

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
            logger=logger or get_logger("utils.drive"),
        )

    def get_about(self) -> Dict[str, Any]:
        """Return the signed-in user's Drive profile (display name and email)."""
        data = self._request_json(
            "GET",
            f"{DRIVE_API_BASE}/about",
            "get_about",
            params={"fields": "user(displayName,emailAddress)"},
        )
        return data.get("user", {})

    def get_file(self, file_id: str, fields: str = "id,name") -> Dict[str, Any]:
        return self._request_json(
            "GET",
            f"{DRIVE_API_BASE}/files/{file_id}",
            f"get_file({file_id})",
            params={"fields": fields},
        )

    def find_file(
        self,
        name: str,
        mime_type: str,
        parent_id: Optional[str] = None,
    ) -> Optional[str]:
        """Find a non-trashed file by exact name and MIME type.

        Args:
            name: Exact file name.
            mime_type: MIME type the file must have.
            parent_id: Optional folder the file must be in.

        Returns:
            The ID of the first match, or None.
        """
        query = (
            f"name = '{escape_query_value(name)}' "
            f"and mimeType = '{mime_type}' and trashed = false"
        )
        if parent_id:
            query += f" and '{escape_query_value(parent_id)}' in parents"

        data = self._request_json(
            "GET",
            f"{DRIVE_API_BASE}/files",
            f"find_file({name})",
            params={"q": query, "spaces": "drive", "fields": "files(id,name)", "pageSize": 1},
        )
        files: List[Dict[str, Any]] = data.get("files", [])
        return files[0]["id"] if files else None

    def find_folder(self, name: str, parent_id: Optional[str] = None) -> Optional[str]:
        return self.find_file(name, FOLDER_MIME_TYPE, parent_id)

    def _create_file(self, name: str, mime_type: str, parent_id: Optional[str]) -> str:
        metadata: Dict[str, Any] = {"name": name, "mimeType": mime_type}
        if parent_id:
            metadata["parents"] = [parent_id]

        data = self._request_json(
            "POST",
            f"{DRIVE_API_BASE}/files",
            f"create_file({name})",
            params={"fields": "id"},
            json=metadata,
        )
        self._logger.debug(f"Created {mime_type} {name!r}: {data['id']}")
        return data["id"]

    def create_folder(self, name: str, parent_id: Optional[str] = None) -> str:
        return self._create_file(name, FOLDER_MIME_TYPE, parent_id)

    def find_or_create_folder(self, name: str, parent_id: Optional[str] = None) -> str:
        return self.find_folder(name, parent_id) or self.create_folder(name, parent_id)

    def create_spreadsheet(self, name: str, parent_id: Optional[str] = None) -> str:
        return self._create_file(name, SPREADSHEET_MIME_TYPE, parent_id)

    def upload_csv(
        self,
        folder_id: str,
        name: str,
        data: bytes,
        convert: bool = False,
    ) -> Dict[str, Any]:
        """Upload CSV data into a folder with a multipart upload.

        Args:
            folder_id: Destination folder ID.
            name: File name on Drive.
            data: CSV content.
            convert: If True, Drive converts the CSV into a spreadsheet.

        Returns:
            Drive file resource with id, name and webViewLink.
        """
        metadata = {
            "name": name,
            "parents": [folder_id],
            "mimeType": SPREADSHEET_MIME_TYPE if convert else CSV_MIME_TYPE,
        }
        boundary = uuid.uuid4().hex
        body = b"".join(
            [
                f"--{boundary}\r\n".encode("utf-8"),
                b"Content-Type: application/json; charset=UTF-8\r\n\r\n",
                json.dumps(metadata).encode("utf-8"),
                f"\r\n--{boundary}\r\n".encode("utf-8"),
                f"Content-Type: {CSV_MIME_TYPE}\r\n\r\n".encode("utf-8"),
                data,
                f"\r\n--{boundary}--\r\n".encode("utf-8"),
            ]
        )

        self._logger.debug(f"Uploading {name!r} ({len(data):,} bytes) to folder {folder_id}")
        return self._request_json(
            "POST",
            DRIVE_UPLOAD_URL,
            f"upload_csv({name})",
            params={"uploadType": "multipart", "fields": "id,name,webViewLink"},
            data=body,
            headers={"Content-Type": f"multipart/related; boundary={boundary}"},
        )

    def add_permission(self, file_id: str, permission: Dict[str, Any]) -> Dict[str, Any]:
        """Share a file according to a Drive permission resource."""
        return self._request_json(
            "POST",
            f"{DRIVE_API_BASE}/files/{file_id}/permissions",
            f"add_permission({file_id})",
            params={"sendNotificationEmail": "false", "fields": "id"},
            json=permission,
        )

    def append_row(
        self,
        spreadsheet_id: str,
        values: List[Any],
        sheet_range: str = "A1",
    ) -> Dict[str, Any]:
        """Append one row below the data of a spreadsheet's first sheet."""
        return self._request_json(
            "POST",
            f"{SHEETS_API_BASE}/{spreadsheet_id}/values/{sheet_range}:append",
            f"append_row({spreadsheet_id})",
            params={"valueInputOption": "USER_ENTERED", "insertDataOption": "INSERT_ROWS"},
            json={"values": [values]},
        )
