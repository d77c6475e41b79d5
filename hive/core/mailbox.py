"""Session mailbox -- typed, TTL-bounded, ack-able envelopes between sessions.

Expiry is lazy: expired envelopes are hidden from every read and deleted
the next time the recipient's mailbox is written to. There is no sweeper.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy import and_, delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from hive.config import Settings
from hive.core.directory import DirectoryManager
from hive.core.schemas import EnvelopeDetail, EnvelopeInput, EnvelopeStatus, MailboxClearResult
from hive.errors import NotFoundError
from hive.events import Notifier
from hive.storage.database import Database, commit_or_conflict
from hive.storage.models import MailboxEnvelope
from hive.utils import clamp_int, new_id, utcnow

logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 50


def _live(now):
    return (MailboxEnvelope.expires_at.is_(None)) | (MailboxEnvelope.expires_at > now)


class MailboxManager:
    """Per-session inboxes."""

    def __init__(
        self,
        db: Database,
        settings: Settings,
        directory: DirectoryManager,
        notifier: Notifier | None = None,
    ) -> None:
        self.db = db
        self.settings = settings
        self.directory = directory
        self.notifier = notifier or Notifier()

    async def _require_session(self, session_id: str, session: AsyncSession) -> None:
        if not await self.directory.session_exists(session_id, session):
            raise NotFoundError(f"Session {session_id} not found")

    async def _prune_expired(self, session_id: str, session: AsyncSession) -> int:
        result = await session.execute(
            delete(MailboxEnvelope)
            .where(MailboxEnvelope.to_session_id == session_id)
            .where(MailboxEnvelope.expires_at.is_not(None))
            .where(MailboxEnvelope.expires_at <= utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def send_envelope(self, input: EnvelopeInput) -> EnvelopeDetail:
        """Deliver an envelope to ``input.to_session_id``.

        ``ttl_sec`` is clamped to [0, mailbox_max_ttl_sec]; 0 or missing means
        the envelope never expires.
        """
        max_ttl = self.settings.mailbox_max_ttl_sec
        ttl = clamp_int(input.ttl_sec, 0, 0, max_ttl) if input.ttl_sec is not None else 0
        now = utcnow()
        async with self.db.session() as session:
            await self._require_session(input.to_session_id, session)
            await self._prune_expired(input.to_session_id, session)
            envelope = MailboxEnvelope(
                id=new_id(),
                type=(input.type or "").strip() or "message",
                payload=input.payload or "",
                from_session_id=input.from_session_id or None,
                from_agent_id=input.from_agent_id or None,
                to_session_id=input.to_session_id,
                to_agent_id=input.to_agent_id or None,
                correlation_id=input.correlation_id or None,
                status=EnvelopeStatus.NEW,
                created_at=now,
                expires_at=now + timedelta(seconds=ttl) if ttl else None,
            )
            session.add(envelope)
            await session.commit()
        logger.info(
            "Mailbox %s <- %s: %s envelope %s",
            input.to_session_id, input.from_session_id or "external", envelope.type, envelope.id,
        )
        await self.notifier.notify("mailbox", "create", input.to_session_id)
        return self._to_detail(envelope)

    async def list_mailbox(
        self,
        session_id: str,
        limit: int = DEFAULT_LIST_LIMIT,
        include_acked: bool = False,
    ) -> list[EnvelopeDetail]:
        """Newest-first envelopes addressed to ``session_id``. Expired ones never appear."""
        limit = clamp_int(limit, DEFAULT_LIST_LIMIT, 1, 500)
        async with self.db.session() as session:
            await self._require_session(session_id, session)
            q = (
                select(MailboxEnvelope)
                .where(MailboxEnvelope.to_session_id == session_id)
                .where(_live(utcnow()))
                .order_by(MailboxEnvelope.created_at.desc())
                .limit(limit)
            )
            if not include_acked:
                q = q.where(MailboxEnvelope.status != EnvelopeStatus.ACK)
            result = await session.execute(q)
            return [self._to_detail(e) for e in result.scalars().all()]

    async def ack_envelope(self, session_id: str, envelope_id: str) -> EnvelopeDetail | None:
        """Mark an envelope acked. None if it is unknown, expired, or addressed elsewhere."""
        async with self.db.session() as session:
            await self._require_session(session_id, session)
            await self._prune_expired(session_id, session)
            result = await session.execute(
                select(MailboxEnvelope)
                .where(MailboxEnvelope.id == envelope_id)
                .where(MailboxEnvelope.to_session_id == session_id)
            )
            envelope = result.scalars().first()
            if envelope is None:
                await session.commit()
                return None
            if envelope.status != EnvelopeStatus.ACK:
                envelope.status = EnvelopeStatus.ACK
                envelope.acked_at = utcnow()
            await commit_or_conflict(session, f"Envelope {envelope_id}")
        await self.notifier.notify("mailbox", "update", session_id)
        return self._to_detail(envelope)

    async def clear_mailbox(self, session_id: str, include_acked: bool = True) -> MailboxClearResult:
        """Bulk clear. ``include_acked=True`` empties the mailbox; False drops only acked envelopes."""
        async with self.db.session() as session:
            await self._require_session(session_id, session)
            await self._prune_expired(session_id, session)
            before = await session.scalar(
                select(func.count()).select_from(MailboxEnvelope).where(MailboxEnvelope.to_session_id == session_id)
            )
            condition = MailboxEnvelope.to_session_id == session_id
            if not include_acked:
                condition = and_(condition, MailboxEnvelope.status == EnvelopeStatus.ACK)
            await session.execute(
                delete(MailboxEnvelope).where(condition).execution_options(synchronize_session=False)
            )
            after = await session.scalar(
                select(func.count()).select_from(MailboxEnvelope).where(MailboxEnvelope.to_session_id == session_id)
            )
            await session.commit()
        logger.info("Cleared mailbox %s (%d -> %d)", session_id, before, after)
        await self.notifier.notify("mailbox", "update", session_id)
        return MailboxClearResult(before=before or 0, after=after or 0)

    def _to_detail(self, envelope: MailboxEnvelope) -> EnvelopeDetail:
        return EnvelopeDetail(
            id=envelope.id,
            type=envelope.type,
            payload=envelope.payload,
            from_session_id=envelope.from_session_id,
            from_agent_id=envelope.from_agent_id,
            to_session_id=envelope.to_session_id,
            to_agent_id=envelope.to_agent_id,
            correlation_id=envelope.correlation_id,
            status=EnvelopeStatus(envelope.status),
            created_at=envelope.created_at,
            expires_at=envelope.expires_at,
            acked_at=envelope.acked_at,
        )
