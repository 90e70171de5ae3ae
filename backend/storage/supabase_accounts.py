# storage/supabase_accounts.py
# ============================================================================
# REALTYLEADSAI FULFILLMENT - ACCOUNT DIRECTORY
# ============================================================================
# Server-side account lookups against Supabase Auth (admin API)
# ============================================================================

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional

from supabase import Client, create_client

logger = logging.getLogger("RealtyLeads.Accounts")


class IAccountDirectory(ABC):
    """Auth-identity lookups keyed by email (case-insensitive)"""

    @abstractmethod
    async def find_user_id_by_email(self, email: str) -> Optional[str]:
        pass

    @abstractmethod
    async def is_returning_account(self, email: str) -> bool:
        """True when the account exists and its email has been confirmed."""
        pass

    @abstractmethod
    async def generate_password_setup_link(self, email: str, redirect_to: Optional[str] = None) -> str:
        pass


class SupabaseAccountDirectory(IAccountDirectory):
    """
    Supabase Auth admin client (service-role key).

    The client is synchronous; calls are pushed to the default executor.
    """

    def __init__(
        self,
        supabase_url: str,
        service_role_key: str,
        client: Optional[Client] = None,
        page_size: int = 1000,
    ):
        self._client = client or create_client(supabase_url, service_role_key)
        self.page_size = page_size

    async def _find_user(self, email: str):
        target = email.strip().lower()
        admin = self._client.auth.admin

        def scan():
            page = 1
            while True:
                users = admin.list_users(page=page, per_page=self.page_size)
                for user in users:
                    if (user.email or "").lower() == target:
                        return user
                if len(users) < self.page_size:
                    return None
                page += 1

        return await asyncio.get_running_loop().run_in_executor(None, scan)

    async def find_user_id_by_email(self, email: str) -> Optional[str]:
        if not email:
            return None
        user = await self._find_user(email)
        return str(user.id) if user else None

    async def is_returning_account(self, email: str) -> bool:
        if not email:
            return False
        user = await self._find_user(email)
        return bool(user and user.email_confirmed_at)

    async def generate_password_setup_link(self, email: str, redirect_to: Optional[str] = None) -> str:
        params = {"type": "recovery", "email": email}
        if redirect_to:
            params["options"] = {"redirect_to": redirect_to}

        def generate():
            return self._client.auth.admin.generate_link(params)

        response = await asyncio.get_running_loop().run_in_executor(None, generate)
        link = response.properties.action_link if response and response.properties else ""
        if not link:
            raise ValueError(f"No recovery link returned for {email}")
        logger.debug(f"Generated password setup link for {email}")
        return link


class InMemoryAccountDirectory(IAccountDirectory):
    """Email -> (user_id, confirmed) map."""

    def __init__(self):
        self._accounts: Dict[str, tuple[str, bool]] = {}
        self.links_generated: list[str] = []
        self.fail_link_generation = False

    def add(self, email: str, user_id: str, confirmed: bool = True) -> None:
        self._accounts[email.strip().lower()] = (user_id, confirmed)

    async def find_user_id_by_email(self, email: str) -> Optional[str]:
        account = self._accounts.get((email or "").strip().lower())
        return account[0] if account else None

    async def is_returning_account(self, email: str) -> bool:
        account = self._accounts.get((email or "").strip().lower())
        return bool(account and account[1])

    async def generate_password_setup_link(self, email: str, redirect_to: Optional[str] = None) -> str:
        if self.fail_link_generation:
            raise RuntimeError("link generation unavailable")
        self.links_generated.append(email)
        return f"https://auth.local/recover?email={email}"
