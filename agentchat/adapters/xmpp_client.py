"""XMPP chat session built on slixmpp.

One XmppSession per account (the manager, and one per agent). Adds
what the bridge needs on top of the raw client:

- reconnect with exponential backoff (1s, 2s, 4s ... capped at 60s)
  after an established session drops;
- messages sent while offline are buffered and flushed on reconnect;
- stanzas carrying an XEP-0203 ``<delay>`` (offline storage replays)
  are ignored so nothing is processed twice after a reconnect.
"""
from __future__ import annotations

import asyncio
import logging
import ssl
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Protocol

import slixmpp

from agentchat.engine.errors import TransportError

logger = logging.getLogger(__name__)

# Signature: async def handler(from_bare_jid, body) -> None
MessageHandler = Callable[[str, str], Awaitable[None]]

DELAY_TAG = "{urn:xmpp:delay}delay"
MAX_RECONNECT_DELAY = 60.0
OFFLINE_QUEUE_SIZE = 100
OFFLINE_MAX_AGE = 300.0


class ChatTransport(Protocol):
    """What bridges and the manager bot need from a chat session."""

    @property
    def jid(self) -> str: ...

    @property
    def is_connected(self) -> bool: ...

    def on_message(self, handler: MessageHandler) -> None: ...

    async def send_message(self, to: str, body: str) -> None: ...

    def send_typing(self, to: str) -> None: ...

    async def connect(self) -> None: ...

    async def disconnect(self) -> None: ...


@dataclass
class _OfflineMessage:
    to: str
    body: str
    queued_at: float = field(default_factory=time.monotonic)


def reconnect_delay(attempt: int, cap: float = MAX_RECONNECT_DELAY) -> float:
    """Backoff before reconnect ``attempt`` (0-based)."""
    return min(2.0 ** attempt, cap)


class XmppSession:
    """A logged-in XMPP account with offline buffering and reconnect."""

    def __init__(
        self,
        jid: str,
        password: str,
        *,
        host: str,
        port: int = 5222,
        use_tls: bool = True,
        verify_certificates: bool = False,
        connect_timeout: float = 30.0,
    ) -> None:
        self._jid = jid
        self._password = password
        self._host = host
        self._port = port
        self._use_tls = use_tls
        self._verify = verify_certificates
        self._connect_timeout = connect_timeout
        self._handlers: list[MessageHandler] = []
        self._offline: deque[_OfflineMessage] = deque(maxlen=OFFLINE_QUEUE_SIZE)
        self._online = asyncio.Event()
        self._offline_event = asyncio.Event()
        self._offline_event.set()
        self._auth_failed = False
        self._should_reconnect = False
        self._reconnect_attempts = 0
        self._reconnect_task: asyncio.Task | None = None
        self._client: slixmpp.ClientXMPP | None = None

    @property
    def jid(self) -> str:
        return self._jid

    @property
    def is_connected(self) -> bool:
        return self._online.is_set()

    @property
    def queued_count(self) -> int:
        return len(self._offline)

    def on_message(self, handler: MessageHandler) -> None:
        self._handlers.append(handler)

    # ── Connection ──

    def _build_client(self) -> slixmpp.ClientXMPP:
        client = slixmpp.ClientXMPP(self._jid, self._password)
        client.register_plugin("xep_0030")  # service discovery
        client.register_plugin("xep_0085")  # chat states
        client.register_plugin("xep_0199", {"keepalive": True})
        if not self._verify:
            # Self-hosted servers typically run self-signed certificates.
            client.ssl_context.check_hostname = False
            client.ssl_context.verify_mode = ssl.CERT_NONE
        client.add_event_handler("session_start", self._on_session_start)
        client.add_event_handler("message", self._on_message)
        client.add_event_handler("disconnected", self._on_disconnected)
        client.add_event_handler("failed_auth", self._on_failed_auth)
        client.add_event_handler("connection_failed", self._on_connection_failed)
        return client

    def _start_connect(self) -> None:
        assert self._client is not None
        self._client.connect(
            (self._host, self._port),
            use_ssl=self._use_tls,
            force_starttls=False,
        )

    async def connect(self) -> None:
        """Connect and wait for the session to start.

        Raises TransportError on authentication failure or timeout.
        """
        if self._client is not None and self.is_connected:
            return
        self._should_reconnect = True
        self._auth_failed = False
        if self._client is None:
            self._client = self._build_client()
        logger.info(
            "Connecting %s to %s:%d (tls=%s)",
            self._jid, self._host, self._port, self._use_tls,
        )
        self._start_connect()
        try:
            await asyncio.wait_for(self._online.wait(), self._connect_timeout)
        except asyncio.TimeoutError:
            self._should_reconnect = False
            self._client.abort()
            reason = "authentication failed" if self._auth_failed else "connect timed out"
            raise TransportError(self._jid, reason) from None

    async def disconnect(self) -> None:
        self._should_reconnect = False
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            self._reconnect_task = None
        client = self._client
        if client is None:
            return
        if self.is_connected:
            client.send_presence(ptype="unavailable")
            client.disconnect()
            try:
                await asyncio.wait_for(self._offline_event.wait(), 5.0)
            except asyncio.TimeoutError:
                logger.warning("%s: disconnect timed out, aborting", self._jid)
                client.abort()
        self._online.clear()
        self._client = None
        logger.info("Disconnected %s", self._jid)

    # ── Sending ──

    async def send_message(self, to: str, body: str) -> None:
        if not self.is_connected or self._client is None:
            self._prune_offline()
            self._offline.append(_OfflineMessage(to, body))
            logger.debug(
                "%s offline, queued message to %s (%d queued)",
                self._jid, to, len(self._offline),
            )
            return
        self._client.send_message(mto=to, mbody=body, mtype="chat")

    def send_typing(self, to: str) -> None:
        """XEP-0085 ``composing`` notification. Dropped while offline."""
        if not self.is_connected or self._client is None:
            return
        msg = self._client.make_message(mto=to, mtype="chat")
        msg["chat_state"] = "composing"
        msg.send()

    def _prune_offline(self) -> None:
        cutoff = time.monotonic() - OFFLINE_MAX_AGE
        while self._offline and self._offline[0].queued_at < cutoff:
            self._offline.popleft()

    async def _flush_offline(self) -> None:
        self._prune_offline()
        if not self._offline:
            return
        logger.info("%s: flushing %d queued message(s)", self._jid, len(self._offline))
        while self._offline and self.is_connected:
            msg = self._offline.popleft()
            await self.send_message(msg.to, msg.body)

    # ── slixmpp events ──

    async def _on_session_start(self, event) -> None:
        assert self._client is not None
        self._client.send_presence()
        self._reconnect_attempts = 0
        self._offline_event.clear()
        self._online.set()
        logger.info("XMPP session started for %s", self._jid)
        await self._flush_offline()

    def _on_failed_auth(self, event) -> None:
        self._auth_failed = True
        logger.error("XMPP authentication failed for %s", self._jid)

    def _on_connection_failed(self, error) -> None:
        logger.warning("XMPP connection failed for %s: %s", self._jid, error)

    def _on_disconnected(self, event) -> None:
        was_online = self.is_connected
        self._online.clear()
        self._offline_event.set()
        if was_online:
            logger.warning("XMPP session lost for %s", self._jid)
        # Keep backing off until a session starts again.
        retrying = was_online or self._reconnect_attempts > 0
        if self._should_reconnect and retrying and self._reconnect_task is None:
            self._reconnect_task = asyncio.get_running_loop().create_task(
                self._reconnect(), name=f"xmpp-reconnect-{self._jid}",
            )

    async def _reconnect(self) -> None:
        try:
            delay = reconnect_delay(self._reconnect_attempts)
            self._reconnect_attempts += 1
            logger.info(
                "Reconnecting %s in %.0fs (attempt %d)",
                self._jid, delay, self._reconnect_attempts,
            )
            await asyncio.sleep(delay)
            if self._should_reconnect and self._client is not None:
                self._start_connect()
        finally:
            self._reconnect_task = None

    async def _on_message(self, msg) -> None:
        if msg["type"] not in ("chat", "normal"):
            return
        body = msg["body"]
        if not body:
            return
        sender = msg["from"].bare
        if msg.xml.find(DELAY_TAG) is not None:
            logger.info("%s: ignoring delayed message from %s", self._jid, sender)
            return
        for handler in list(self._handlers):
            try:
                await handler(sender, body)
            except Exception:
                logger.exception("%s: message handler failed", self._jid)


class XmppSessionFactory:
    """Builds XmppSession objects that share server settings."""

    def __init__(
        self,
        host: str,
        port: int = 5222,
        *,
        use_tls: bool = True,
        verify_certificates: bool = False,
    ) -> None:
        self._host = host
        self._port = port
        self._use_tls = use_tls
        self._verify = verify_certificates

    def create(self, jid: str, password: str) -> XmppSession:
        return XmppSession(
            jid,
            password,
            host=self._host,
            port=self._port,
            use_tls=self._use_tls,
            verify_certificates=self._verify,
        )
