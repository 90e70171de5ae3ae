# storage/__init__.py
# ============================================================================
# REALTYLEADSAI FULFILLMENT - STORAGE MODULE
# ============================================================================
# Artifact storage (Supabase bucket, Google Sheets) and the auth directory
# ============================================================================

from storage.document_storage import (
    IDocumentStorage,
    SupabaseDocumentStorage,
    InMemoryDocumentStorage,
    artifact_path,
)

from storage.sheets_storage import (
    ISheetsStorage,
    GoogleSheetsStorage,
    DisabledSheetsStorage,
)

from storage.supabase_accounts import (
    IAccountDirectory,
    SupabaseAccountDirectory,
    InMemoryAccountDirectory,
)

__all__ = [
    # Documents
    "IDocumentStorage",
    "SupabaseDocumentStorage",
    "InMemoryDocumentStorage",
    "artifact_path",
    # Sheets
    "ISheetsStorage",
    "GoogleSheetsStorage",
    "DisabledSheetsStorage",
    # Accounts
    "IAccountDirectory",
    "SupabaseAccountDirectory",
    "InMemoryAccountDirectory",
]
