"""Drive-backed implementations of export provisioning and table transfer.

DriveProvisioner prepares the archive folder, the folder of one export and
the archive index spreadsheet. TableTransfer moves a single table: fetch
CSV -> upload -> fetch styles -> log in index -> copy sharing permissions.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ..core.pipeline import ExportConfig, ExportDestination
from ..core.state import Credentials, ExportResult, ItemOutcome, TableItem
from ..sources.fusiontables import TableSource
from ..utils.drive import SPREADSHEET_MIME_TYPE, DriveClient
from ..utils.http import ApiError
from ..utils.logging import get_logger


INDEX_SHEET_HEADER = [
    "Export",
    "Table name",
    "Source table ID",
    "Drive file",
    "Has geometry",
    "Styles",
]

DriveFactory = Callable[[Credentials], DriveClient]
SourceFactory = Callable[[Credentials], TableSource]


def folder_link(folder_id: str) -> str:
    return f"https://drive.google.com/drive/folders/{folder_id}"


def file_link(file_id: str) -> str:
    return f"https://drive.google.com/open?id={file_id}"


def _default_drive_factory(config: ExportConfig) -> DriveFactory:
    def factory(credentials: Credentials) -> DriveClient:
        return DriveClient(
            credentials,
            timeout=config.request_timeout,
            max_retries=config.max_retries,
        )

    return factory


def _default_source_factory(config: ExportConfig) -> SourceFactory:
    def factory(credentials: Credentials) -> TableSource:
        return TableSource(
            credentials,
            timeout=config.request_timeout,
            max_retries=config.max_retries,
        )

    return factory


class DriveProvisioner:
    """Sets up the Drive locations shared by all tables of one export."""

    def __init__(
        self,
        config: Optional[ExportConfig] = None,
        drive_factory: Optional[DriveFactory] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.config = config or ExportConfig()
        self._drive_factory = drive_factory or _default_drive_factory(self.config)
        self.logger = logger or get_logger("core.transfer")

    def _get_index_sheet(self, drive: DriveClient, archive_folder_id: str) -> str:
        name = self.config.index_sheet_name
        sheet_id = drive.find_file(name, SPREADSHEET_MIME_TYPE, archive_folder_id)
        if sheet_id:
            return sheet_id

        self.logger.info(f"Creating archive index sheet {name!r}")
        sheet_id = drive.create_spreadsheet(name, archive_folder_id)
        drive.append_row(sheet_id, INDEX_SHEET_HEADER)
        return sheet_id

    def provision(self, credentials: Credentials) -> ExportDestination:
        """Create the export folder and register it in the archive index.

        Raises:
            ApiError: If any Drive or Sheets call fails.
        """
        drive = self._drive_factory(credentials)

        archive_folder_id = drive.find_or_create_folder(self.config.archive_folder_name)
        folder_name = datetime.now().strftime(self.config.upload_folder_format)
        folder_id = drive.create_folder(folder_name, archive_folder_id)

        index_sheet_id = self._get_index_sheet(drive, archive_folder_id)
        drive.append_row(
            index_sheet_id,
            [f'=HYPERLINK("{folder_link(folder_id)}", "{folder_name}")'],
        )

        self.logger.debug(f"Provisioned export folder {folder_name!r}: {folder_id}")
        return ExportDestination(
            folder_id=folder_id,
            archive_folder_id=archive_folder_id,
            index_sheet_id=index_sheet_id,
        )


class TableTransfer:
    """Exports one table into the export folder.

    Tables at or below the large table threshold are converted into Google
    Sheets on upload; larger ones are stored as plain CSV files.
    """

    def __init__(
        self,
        config: Optional[ExportConfig] = None,
        source_factory: Optional[SourceFactory] = None,
        drive_factory: Optional[DriveFactory] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.config = config or ExportConfig()
        self._source_factory = source_factory or _default_source_factory(self.config)
        self._drive_factory = drive_factory or _default_drive_factory(self.config)
        self.logger = logger or get_logger("core.transfer")

    def __call__(
        self,
        credentials: Credentials,
        item: TableItem,
        destination: ExportDestination,
    ) -> ItemOutcome:
        source = self._source_factory(credentials)
        drive = self._drive_factory(credentials)
        drive_file: Optional[Dict[str, Any]] = None

        try:
            csv = source.fetch_csv(item)
            is_large = csv.size > self.config.large_table_threshold
            drive_file = drive.upload_csv(
                destination.folder_id, item.name, csv.data, convert=not is_large
            )
            styles = source.get_styles(item.id)

            if destination.index_sheet_id:
                self._log_in_index(
                    drive,
                    destination.index_sheet_id,
                    item,
                    drive_file,
                    styles,
                    csv.has_geometry_data,
                )

            self._copy_permissions(drive, drive_file["id"], item)
        except ApiError as e:
            message = str(e)
            if drive_file is not None:
                # Already uploaded; keep a pointer to the stray file
                message += f" (uploaded as Drive file {drive_file['id']})"
            self.logger.warning(f"Table {item.id} could not be exported: {message}")
            return ItemOutcome.failed(message)

        return ItemOutcome.succeeded(
            ExportResult(
                drive_file_id=drive_file["id"],
                drive_file_name=drive_file.get("name", item.name),
                web_view_link=drive_file.get("webViewLink"),
                is_large=is_large,
                has_geometry_data=csv.has_geometry_data,
                styles=tuple(styles),
            )
        )

    def _log_in_index(
        self,
        drive: DriveClient,
        index_sheet_id: str,
        item: TableItem,
        drive_file: Dict[str, Any],
        styles: List[Dict[str, Any]],
        has_geometry_data: bool,
    ) -> None:
        link = drive_file.get("webViewLink") or file_link(drive_file["id"])
        drive.append_row(
            index_sheet_id,
            [
                "",
                item.name,
                item.id,
                link,
                "yes" if has_geometry_data else "no",
                len(styles),
            ],
        )

    def _copy_permissions(self, drive: DriveClient, file_id: str, item: TableItem) -> None:
        for permission in item.permissions:
            # Ownership cannot be granted through a plain permission insert
            if permission.get("role") == "owner":
                continue
            drive.add_permission(file_id, dict(permission))
