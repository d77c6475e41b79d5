"""Tests for session mailboxes."""

from datetime import timedelta

import pytest
import pytest_asyncio

import hive.core.mailbox as mailbox_module
from hive.core.schemas import EnvelopeInput, EnvelopeStatus, SessionInput
from hive.errors import NotFoundError
from hive.utils import utcnow


@pytest_asyncio.fixture
async def inbox(hive, agent):
    return await hive.directory.create_session(SessionInput(name="Inbox", agent_id=agent.id))


def _envelope(to: str, **kw) -> EnvelopeInput:
    kw.setdefault("payload", "hello")
    return EnvelopeInput(to_session_id=to, **kw)


async def test_send_and_list(hive, inbox, chat_session):
    sent = await hive.send_envelope(
        _envelope(inbox.id, type="handoff", from_session_id=chat_session.id, correlation_id="c-1")
    )
    assert sent.status == EnvelopeStatus.NEW
    assert sent.type == "handoff"
    assert sent.expires_at is None

    [listed] = await hive.list_mailbox(inbox.id)
    assert listed.id == sent.id
    assert listed.from_session_id == chat_session.id
    assert listed.correlation_id == "c-1"

    # Addressed to inbox only.
    assert await hive.list_mailbox(chat_session.id) == []


async def test_type_defaults_to_message(hive, inbox):
    sent = await hive.send_envelope(_envelope(inbox.id, type="  "))
    assert sent.type == "message"


async def test_newest_first_and_limit(hive, inbox):
    ids = [(await hive.send_envelope(_envelope(inbox.id, payload=str(i)))).id for i in range(3)]
    listed = await hive.list_mailbox(inbox.id)
    assert [e.id for e in listed] == list(reversed(ids))
    assert len(await hive.list_mailbox(inbox.id, limit=2)) == 2
    assert len(await hive.list_mailbox(inbox.id, limit=0)) == 1


async def test_ack(hive, inbox):
    sent = await hive.send_envelope(_envelope(inbox.id))
    acked = await hive.ack_envelope(inbox.id, sent.id)
    assert acked.status == EnvelopeStatus.ACK
    assert acked.acked_at is not None

    assert await hive.list_mailbox(inbox.id) == []
    [listed] = await hive.list_mailbox(inbox.id, include_acked=True)
    assert listed.status == EnvelopeStatus.ACK

    # Acking twice keeps the first ack time.
    again = await hive.ack_envelope(inbox.id, sent.id)
    assert again.acked_at == acked.acked_at


async def test_ack_unknown_or_foreign(hive, inbox, chat_session):
    sent = await hive.send_envelope(_envelope(inbox.id))
    assert await hive.ack_envelope(inbox.id, "missing") is None
    assert await hive.ack_envelope(chat_session.id, sent.id) is None


async def test_ttl_is_clamped(hive, inbox, settings):
    sent = await hive.send_envelope(_envelope(inbox.id, ttl_sec=10**9))
    assert sent.expires_at - sent.created_at == timedelta(seconds=settings.mailbox_max_ttl_sec)

    never = await hive.send_envelope(_envelope(inbox.id, ttl_sec=-5))
    assert never.expires_at is None


async def test_expired_envelopes_hidden_and_pruned(hive, inbox, monkeypatch):
    await hive.send_envelope(_envelope(inbox.id, ttl_sec=60))
    keeper = await hive.send_envelope(_envelope(inbox.id))

    later = utcnow() + timedelta(minutes=2)
    monkeypatch.setattr(mailbox_module, "utcnow", lambda: later)

    assert [e.id for e in await hive.list_mailbox(inbox.id, include_acked=True)] == [keeper.id]
    result = await hive.clear_mailbox(inbox.id)
    assert (result.before, result.after) == (1, 0)


async def test_clear_only_acked(hive, inbox):
    first = await hive.send_envelope(_envelope(inbox.id))
    await hive.send_envelope(_envelope(inbox.id))
    await hive.ack_envelope(inbox.id, first.id)

    result = await hive.clear_mailbox(inbox.id, include_acked=False)
    assert (result.before, result.after) == (2, 1)
    assert len(await hive.list_mailbox(inbox.id)) == 1


async def test_clear_all(hive, inbox):
    for _ in range(2):
        await hive.send_envelope(_envelope(inbox.id))
    result = await hive.clear_mailbox(inbox.id)
    assert (result.before, result.after) == (2, 0)


async def test_unknown_session(hive):
    with pytest.raises(NotFoundError):
        await hive.send_envelope(_envelope("missing"))
    with pytest.raises(NotFoundError):
        await hive.list_mailbox("missing")
    with pytest.raises(NotFoundError):
        await hive.clear_mailbox("missing")
