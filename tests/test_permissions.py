"""Permission correlation: matching operator replies to pending requests."""

from __future__ import annotations

import asyncio
import logging

import pytest

from agentchat.engine import permissions as permissions_module
from agentchat.engine.errors import PermissionIdExhaustedError
from agentchat.engine.models import AgentRecord, AgentStatus
from agentchat.engine.permissions import (
    REASON_AGENT_NOT_FOUND,
    REASON_CANCELLED,
    REASON_SEND_FAILED,
    REASON_TIMEOUT,
    REASON_USER_DENIED,
    PermissionEngine,
)
from agentchat.engine.registry import AgentRegistry
from agentchat.shared.services.persistence import StatePersistence


class _ScriptedIds:
    """randrange() hands out scripted permission ids."""

    def __init__(self, *values: int) -> None:
        self._values = list(values)

    def randrange(self, stop: int) -> int:
        if len(self._values) > 1:
            return self._values.pop(0)
        return self._values[0]


class _Outbox:
    def __init__(self, fail: bool = False) -> None:
        self.sent: list[tuple[str, str]] = []
        self.fail = fail

    async def __call__(self, agent_id: str, text: str) -> None:
        if self.fail:
            raise ConnectionError("offline")
        self.sent.append((agent_id, text))


@pytest.fixture
def registry(tmp_path):
    registry = AgentRegistry(StatePersistence(tmp_path / "state.json"))
    for agent_id in ("bold-bear", "calm-owl"):
        registry.register(AgentRecord(
            id=agent_id,
            session_address=f"{agent_id}@example.org",
            work_directory="/work/x",
            created_by="op@example.org",
            status=AgentStatus.RUNNING,
        ))
    return registry


async def _wait_pending(engine: PermissionEngine, agent_id: str, count: int) -> None:
    for _ in range(100):
        if len(engine.pending_for(agent_id)) >= count:
            return
        await asyncio.sleep(0)
    raise AssertionError(f"expected {count} pending requests for {agent_id}")


@pytest.mark.asyncio
async def test_reply_without_id_resolves_oldest(registry):
    outbox = _Outbox()
    engine = PermissionEngine(registry, outbox)

    first = asyncio.create_task(engine.request("bold-bear", "Bash", "Run command: ls"))
    await _wait_pending(engine, "bold-bear", 1)
    second = asyncio.create_task(engine.request("bold-bear", "Write", "Write file: a"))
    third = asyncio.create_task(engine.request("bold-bear", "Read", "Read file: b"))
    await _wait_pending(engine, "bold-bear", 3)

    assert engine.resolve("bold-bear", "yes") is True
    result = await asyncio.wait_for(first, 1)
    assert result.approved is True
    assert not second.done() and not third.done()

    assert engine.resolve("bold-bear", "  NO ") is True
    result = await asyncio.wait_for(second, 1)
    assert result.approved is False
    assert result.reason == REASON_USER_DENIED
    assert [p.action for p in engine.pending_for("bold-bear")] == ["Read"]

    engine.cancel_all("bold-bear")
    await third


@pytest.mark.asyncio
async def test_reply_with_id_resolves_that_request(registry):
    engine = PermissionEngine(registry, _Outbox(), rng=_ScriptedIds(0xAAAA, 0xBBBB))

    first = asyncio.create_task(engine.request("bold-bear", "Bash", "one"))
    await _wait_pending(engine, "bold-bear", 1)
    second = asyncio.create_task(engine.request("bold-bear", "Bash", "two"))
    await _wait_pending(engine, "bold-bear", 2)

    assert engine.resolve("bold-bear", "bbbb approve") is True
    assert (await asyncio.wait_for(second, 1)).approved is True
    assert not first.done()
    assert engine.has_pending("aaaa")

    engine.cancel_all("bold-bear")
    assert (await first).reason == REASON_CANCELLED


@pytest.mark.asyncio
async def test_unmatched_id_is_consumed_without_state_change(registry):
    outbox = _Outbox()
    engine = PermissionEngine(registry, outbox, rng=_ScriptedIds(0xC3D4))

    task = asyncio.create_task(engine.request("bold-bear", "Bash", "Run command: make"))
    await _wait_pending(engine, "bold-bear", 1)
    sent_before = list(outbox.sent)

    assert engine.resolve("bold-bear", "a1b2 yes") is True

    assert engine.has_pending("c3d4")
    assert not task.done()
    assert outbox.sent == sent_before

    engine.cancel_all("bold-bear")
    await task


@pytest.mark.asyncio
async def test_id_belonging_to_other_agent_does_not_resolve(registry):
    engine = PermissionEngine(registry, _Outbox(), rng=_ScriptedIds(0x1234))
    task = asyncio.create_task(engine.request("bold-bear", "Bash", "x"))
    await _wait_pending(engine, "bold-bear", 1)

    assert engine.resolve("calm-owl", "1234 yes") is True
    assert engine.has_pending("1234")
    assert engine.resolve("calm-owl", "yes") is True
    assert engine.has_pending("1234")

    engine.cancel_all("bold-bear")
    await task


def test_non_reply_text_is_not_consumed(registry):
    engine = PermissionEngine(registry, _Outbox())
    assert engine.resolve("bold-bear", "yes please do it") is False
    assert engine.resolve("bold-bear", "fix the bug") is False
    assert engine.resolve("bold-bear", "zzzz yes") is False


@pytest.mark.asyncio
async def test_timeout_denies_exactly_once(registry, caplog):
    engine = PermissionEngine(registry, _Outbox(), timeout_seconds=0.05)

    with caplog.at_level(logging.INFO, logger="agentchat.audit"):
        result = await asyncio.wait_for(
            engine.request("bold-bear", "Bash", "Run command: rm -rf build"), 2,
        )

    assert result.approved is False
    assert result.reason == REASON_TIMEOUT
    assert engine.pending_for("bold-bear") == []
    # A late reply is swallowed and changes nothing.
    assert engine.resolve("bold-bear", "yes") is True
    audit = [r for r in caplog.records if r.name == "agentchat.audit"]
    assert len(audit) == 1
    assert "reason=timeout" in audit[0].getMessage()


@pytest.mark.asyncio
async def test_per_request_timeout_overrides_default(registry):
    engine = PermissionEngine(registry, _Outbox(), timeout_seconds=300)
    result = await asyncio.wait_for(
        engine.request("bold-bear", "Bash", "x", timeout=0.01), 2,
    )
    assert result.reason == REASON_TIMEOUT


@pytest.mark.asyncio
async def test_prompt_is_sent_to_agent_chat(registry):
    outbox = _Outbox()
    engine = PermissionEngine(registry, outbox, rng=_ScriptedIds(0x00AF))
    task = asyncio.create_task(
        engine.request("bold-bear", "Bash", "Run command: ls", {"command": "ls"}),
    )
    await _wait_pending(engine, "bold-bear", 1)

    agent_id, text = outbox.sent[0]
    assert agent_id == "bold-bear"
    assert "Permission #00af" in text
    assert "Command: ls" in text
    assert "00af yes" in text

    engine.resolve("bold-bear", "y")
    assert (await task).approved is True


@pytest.mark.asyncio
async def test_unknown_or_stopped_agent_is_denied(registry):
    outbox = _Outbox()
    engine = PermissionEngine(registry, outbox)
    registry.update("calm-owl", status=AgentStatus.STOPPED)

    for agent_id in ("ghost-goat", "calm-owl"):
        result = await engine.request(agent_id, "Bash", "x")
        assert result.approved is False
        assert result.reason == REASON_AGENT_NOT_FOUND
    assert outbox.sent == []


@pytest.mark.asyncio
async def test_send_failure_is_denied_immediately(registry):
    engine = PermissionEngine(registry, _Outbox(fail=True))
    result = await engine.request("bold-bear", "Bash", "x")
    assert result.approved is False
    assert result.reason == REASON_SEND_FAILED
    assert engine.pending_for("bold-bear") == []


@pytest.mark.asyncio
async def test_cancel_all_only_touches_one_agent(registry):
    engine = PermissionEngine(registry, _Outbox())
    a1 = asyncio.create_task(engine.request("bold-bear", "Bash", "1"))
    a2 = asyncio.create_task(engine.request("bold-bear", "Bash", "2"))
    b1 = asyncio.create_task(engine.request("calm-owl", "Bash", "3"))
    await _wait_pending(engine, "bold-bear", 2)
    await _wait_pending(engine, "calm-owl", 1)

    assert engine.cancel_all("bold-bear") == 2
    assert (await a1).reason == REASON_CANCELLED
    assert (await a2).reason == REASON_CANCELLED
    assert not b1.done()
    assert engine.cancel_all("bold-bear") == 0

    engine.cancel_all("calm-owl")
    await b1


@pytest.mark.asyncio
async def test_cancelled_caller_drops_pending_entry(registry):
    engine = PermissionEngine(registry, _Outbox())
    task = asyncio.create_task(engine.request("bold-bear", "Bash", "x"))
    await _wait_pending(engine, "bold-bear", 1)

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert engine.pending_for("bold-bear") == []


@pytest.mark.asyncio
async def test_id_exhaustion_raises(registry, monkeypatch):
    engine = PermissionEngine(registry, _Outbox(), rng=_ScriptedIds(0))
    first = asyncio.create_task(engine.request("bold-bear", "Bash", "x"))
    await _wait_pending(engine, "bold-bear", 1)
    assert engine.has_pending("0000")

    # 8192000 ms is 0x7d0000, so the fallback id "0000" is taken too.
    monkeypatch.setattr(permissions_module.time, "time", lambda: 8192.0)
    with pytest.raises(PermissionIdExhaustedError):
        await engine.request("bold-bear", "Bash", "y")

    engine.cancel_all("bold-bear")
    await first


@pytest.mark.asyncio
async def test_timestamp_fallback_when_random_ids_collide(registry, monkeypatch):
    engine = PermissionEngine(registry, _Outbox(), rng=_ScriptedIds(0))
    first = asyncio.create_task(engine.request("bold-bear", "Bash", "x"))
    await _wait_pending(engine, "bold-bear", 1)

    monkeypatch.setattr(permissions_module.time, "time", lambda: 100.0)  # 0x186a0 ms
    second = asyncio.create_task(engine.request("bold-bear", "Bash", "y"))
    await _wait_pending(engine, "bold-bear", 2)
    assert engine.has_pending("86a0")

    engine.cancel_all("bold-bear")
    await first
    await second


class _YieldingOutbox(_Outbox):
    """Suspends inside send so concurrent requests interleave."""

    async def __call__(self, agent_id: str, text: str) -> None:
        await asyncio.sleep(0)
        await super().__call__(agent_id, text)


@pytest.mark.asyncio
async def test_concurrent_requests_never_share_an_id(registry, monkeypatch):
    monkeypatch.setattr(permissions_module.time, "time", lambda: 100.0)  # 0x186a0 ms
    engine = PermissionEngine(
        registry, _YieldingOutbox(), timeout_seconds=0.05, rng=_ScriptedIds(0xABCD),
    )
    first = asyncio.create_task(engine.request("bold-bear", "Bash", "x"))
    second = asyncio.create_task(engine.request("calm-owl", "Bash", "y"))
    await _wait_pending(engine, "bold-bear", 1)
    await _wait_pending(engine, "calm-owl", 1)

    assert [p.id for p in engine.pending_for("bold-bear")] == ["abcd"]
    assert [p.id for p in engine.pending_for("calm-owl")] == ["86a0"]

    results = await asyncio.wait_for(asyncio.gather(first, second), 2.0)
    assert [r.reason for r in results] == [REASON_TIMEOUT, REASON_TIMEOUT]
    assert not engine.has_pending("abcd")
    assert not engine.has_pending("86a0")


@pytest.mark.asyncio
async def test_reply_arriving_while_prompt_is_sending_is_matched(registry):
    engine = PermissionEngine(registry, _YieldingOutbox(), rng=_ScriptedIds(0x1111))
    task = asyncio.create_task(engine.request("bold-bear", "Bash", "x"))
    await _wait_pending(engine, "bold-bear", 1)

    assert engine.resolve("bold-bear", "1111 yes") is True
    result = await asyncio.wait_for(task, 1.0)
    assert result.approved is True
