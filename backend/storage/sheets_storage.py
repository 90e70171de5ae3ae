# storage/sheets_storage.py
# ============================================================================
# REALTYLEADSAI FULFILLMENT - GOOGLE SHEETS STORAGE
# ============================================================================
# Optional spreadsheet artifact: one sheet per delivered order, created in the
# configured Drive folder (or the service account's root as a fallback)
# ============================================================================

import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, List, Optional

from googleapiclient.errors import HttpError

from pipeline.errors import SheetsUnavailableError
from schemas.orders import Lead, Order
from services.lead_exports import build_sheet_values

logger = logging.getLogger("RealtyLeads.Sheets")

SCOPES = [
    "https://www.googleapis.com/auth/drive.file",
    "https://www.googleapis.com/auth/spreadsheets",
]
SPREADSHEET_MIME = "application/vnd.google-apps.spreadsheet"


def sheet_url(spreadsheet_id: str) -> str:
    return f"https://docs.google.com/spreadsheets/d/{spreadsheet_id}"


class ISheetsStorage(ABC):
    @abstractmethod
    async def create_lead_sheet(self, order: Order, leads: List[Lead]) -> str:
        """Create a populated sheet and return its URL. Raises SheetsUnavailableError."""
        pass


class GoogleSheetsStorage(ISheetsStorage):
    """
    Google Sheets writer backed by a service account.

    Handles:
    - Lazy credential loading (file path or inline JSON)
    - Spreadsheet creation in the target folder, with a root-folder retry
    - Appending the header plus one row per lead
    """

    def __init__(
        self,
        folder_id: Optional[str],
        credentials_file: Optional[str] = None,
        credentials_json: Optional[str] = None,
    ):
        self.folder_id = folder_id
        self.credentials_file = credentials_file
        self.credentials_json = credentials_json
        self._drive = None
        self._sheets = None
        self._initialized = False

    @property
    def configured(self) -> bool:
        has_credentials = bool(self.credentials_json) or bool(
            self.credentials_file and os.path.exists(self.credentials_file)
        )
        return has_credentials and bool(self.folder_id)

    async def initialize(self) -> None:
        """Build the Drive and Sheets clients. Raises SheetsUnavailableError."""
        if self._initialized:
            return

        if not self.configured:
            raise SheetsUnavailableError("Google Sheets credentials or folder not configured")

        from google.oauth2 import service_account
        from googleapiclient.discovery import build

        def connect():
            if self.credentials_json:
                info = json.loads(self.credentials_json)
                credentials = service_account.Credentials.from_service_account_info(info, scopes=SCOPES)
            else:
                credentials = service_account.Credentials.from_service_account_file(
                    self.credentials_file, scopes=SCOPES
                )
            drive = build("drive", "v3", credentials=credentials, cache_discovery=False)
            sheets = build("sheets", "v4", credentials=credentials, cache_discovery=False)
            return drive, sheets

        try:
            self._drive, self._sheets = await asyncio.get_running_loop().run_in_executor(None, connect)
        except (ValueError, OSError) as e:
            raise SheetsUnavailableError(f"Invalid Google service account credentials: {e}") from e

        self._initialized = True
        logger.info("Google Sheets storage initialized")

    async def _create_file(self, name: str, parent_id: Optional[str]) -> str:
        body: dict[str, Any] = {"name": name, "mimeType": SPREADSHEET_MIME}
        if parent_id:
            body["parents"] = [parent_id]

        def create():
            return self._drive.files().create(body=body, fields="id").execute()

        result = await asyncio.get_running_loop().run_in_executor(None, create)
        return result["id"]

    async def _append_values(self, spreadsheet_id: str, values: List[List[str]]) -> None:
        def append():
            return self._sheets.spreadsheets().values().append(
                spreadsheetId=spreadsheet_id,
                range="A1",
                valueInputOption="RAW",
                body={"values": values},
            ).execute()

        await asyncio.get_running_loop().run_in_executor(None, append)

    async def create_lead_sheet(self, order: Order, leads: List[Lead]) -> str:
        await self.initialize()

        owner = order.customer_name or order.customer_email or order.id
        name = f"RealtyLeadsAI - {owner} - {datetime.now(timezone.utc):%m/%d/%Y}"

        try:
            spreadsheet_id = await self._create_file(name, self.folder_id)
        except HttpError as e:
            # Folder missing or not shared with the service account
            logger.warning(f"Sheet create in folder failed, retrying in root: {e}")
            spreadsheet_id = await self._create_file(name, None)

        await self._append_values(spreadsheet_id, build_sheet_values(leads))
        logger.info(f"Created lead sheet {spreadsheet_id} for order {order.id[:8]}")
        return sheet_url(spreadsheet_id)


class DisabledSheetsStorage(ISheetsStorage):
    """Used when no service account is configured."""

    async def create_lead_sheet(self, order: Order, leads: List[Lead]) -> str:
        raise SheetsUnavailableError("Google Sheets export is disabled")
