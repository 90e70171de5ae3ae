# storage/document_storage.py
# ============================================================================
# REALTYLEADSAI FULFILLMENT - DOCUMENT STORAGE
# ============================================================================
# Artifact uploads to a Supabase Storage bucket, returning public URLs
# ============================================================================

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional

from supabase import Client, create_client

from pipeline.errors import ArtifactError

logger = logging.getLogger("RealtyLeads.Storage")

CONTENT_TYPES = {
    "csv": "text/csv;charset=utf-8",
    "pdf": "application/pdf",
}


def artifact_path(order_id: str, extension: str) -> str:
    """`<order_id>/leads-<order_id>.<ext>`"""
    return f"{order_id}/leads-{order_id}.{extension}"


class IDocumentStorage(ABC):
    """Durable artifact store with public links"""

    @abstractmethod
    async def upload(self, path: str, content: bytes, content_type: str) -> str:
        """Upload (overwriting) and return the public URL. Raises ArtifactError."""
        pass

    async def upload_artifact(self, order_id: str, extension: str, content: bytes) -> str:
        content_type = CONTENT_TYPES.get(extension, "application/octet-stream")
        return await self.upload(artifact_path(order_id, extension), content, content_type)


class SupabaseDocumentStorage(IDocumentStorage):
    """
    Supabase Storage bucket.

    The supabase client is synchronous, so every call runs in the default
    executor, the same way the Drive adapter has always done it.
    """

    def __init__(
        self,
        supabase_url: str,
        service_role_key: str,
        bucket: str = "lead-csvs",
        client: Optional[Client] = None,
    ):
        self.bucket = bucket
        self._client = client or create_client(supabase_url, service_role_key)

    async def upload(self, path: str, content: bytes, content_type: str) -> str:
        bucket = self._client.storage.from_(self.bucket)

        def put():
            bucket.upload(
                path=path,
                file=content,
                file_options={"content-type": content_type, "upsert": "true"},
            )
            return bucket.get_public_url(path)

        try:
            url = await asyncio.get_running_loop().run_in_executor(None, put)
        except Exception as e:
            logger.error(f"Upload to {self.bucket}/{path} failed: {e}")
            raise ArtifactError(f"Upload failed for {path}: {e}") from e

        logger.info(f"Uploaded {path} ({len(content)} bytes)")
        return url.rstrip("?")


class InMemoryDocumentStorage(IDocumentStorage):
    """Keeps uploads in a dict; handy for tests and local runs."""

    def __init__(self, base_url: str = "https://storage.local/lead-csvs"):
        self.base_url = base_url.rstrip("/")
        self.files: Dict[str, bytes] = {}
        self.fail_extensions: set[str] = set()

    async def upload(self, path: str, content: bytes, content_type: str) -> str:
        extension = path.rsplit(".", 1)[-1]
        if extension in self.fail_extensions:
            raise ArtifactError(f"Upload failed for {path}")
        self.files[path] = content
        return f"{self.base_url}/{path}"
