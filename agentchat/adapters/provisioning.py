"""XMPP account provisioning through Prosody's mod_admin_rest.

Each agent chats from its own account (``<agent-id>@<domain>``). The
account is created when the agent is created and deleted when it is
killed or quits.
"""
from __future__ import annotations

import logging
import secrets
from urllib.parse import quote

import aiohttp

from agentchat.engine.errors import ProvisioningError

logger = logging.getLogger(__name__)

PASSWORD_BYTES = 8  # 16 hex characters


def generate_password() -> str:
    return secrets.token_hex(PASSWORD_BYTES)


class XmppProvisioner:
    """Creates and deletes agent accounts with HTTP Basic admin auth."""

    def __init__(
        self,
        base_url: str,
        domain: str,
        admin_username: str,
        admin_password: str,
        *,
        session: aiohttp.ClientSession | None = None,
        timeout: float = 15.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._domain = domain
        self._auth = aiohttp.BasicAuth(admin_username, admin_password)
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    def jid_for(self, username: str) -> str:
        return username if "@" in username else f"{username}@{self._domain}"

    def _user_url(self, jid: str) -> str:
        return f"{self._base_url}/admin/user/{quote(jid, safe='')}"

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
        self._session = None

    async def create(self, username: str, password: str) -> str:
        """Create the account. An existing account (409) counts as success."""
        jid = self.jid_for(username)
        try:
            async with self._get_session().post(
                self._user_url(jid), json={"password": password}, auth=self._auth,
            ) as resp:
                if resp.status == 409:
                    logger.info("XMPP user already exists: %s", jid)
                    return jid
                if resp.status >= 300:
                    detail = await resp.text()
                    raise ProvisioningError("create", jid, resp.status, detail[:200])
        except aiohttp.ClientError as exc:
            raise ProvisioningError("create", jid, 0, str(exc)) from exc
        logger.info("Created XMPP user: %s", jid)
        return jid

    async def delete(self, username: str) -> None:
        """Delete the account. A missing account (404) counts as success."""
        jid = self.jid_for(username)
        try:
            async with self._get_session().delete(
                self._user_url(jid), auth=self._auth,
            ) as resp:
                if resp.status == 404:
                    logger.info("XMPP user already deleted: %s", jid)
                    return
                if resp.status >= 300:
                    detail = await resp.text()
                    raise ProvisioningError("delete", jid, resp.status, detail[:200])
        except aiohttp.ClientError as exc:
            raise ProvisioningError("delete", jid, 0, str(exc)) from exc
        logger.info("Deleted XMPP user: %s", jid)
