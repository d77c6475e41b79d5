"""Agent and session directory.

Agents are looked up to validate ``agent_id`` before a task is enqueued or
a schedule fires. Sessions carry the conversation history that session runs
append to, the heartbeat flags, and the main-loop event feed shown in the
main chat.
"""

from __future__ import annotations

import logging

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from hive.config import Settings
from hive.core.schemas import (
    AgentDetail,
    AgentInput,
    SessionDetail,
    SessionInput,
    SessionMessage,
)
from hive.errors import ConflictError, NotFoundError
from hive.events import Notifier
from hive.storage.database import Database, retry_on_conflict
from hive.storage.models import Agent, ChatSession
from hive.utils import new_id, utcnow

logger = logging.getLogger(__name__)

MAIN_SESSION_NAME = "__main__"
MAIN_SESSION_PREFIX = "main-"


def is_main_session(row: ChatSession) -> bool:
    return bool(row.main_session) or row.name == MAIN_SESSION_NAME or row.id.startswith(MAIN_SESSION_PREFIX)


class DirectoryManager:
    """Agents and sessions."""

    def __init__(self, db: Database, settings: Settings, notifier: Notifier | None = None) -> None:
        self.db = db
        self.settings = settings
        self.notifier = notifier or Notifier()

    # ------------------------------------------------------------------
    # Agents
    # ------------------------------------------------------------------

    async def create_agent(self, input: AgentInput) -> AgentDetail:
        agent_id = input.id or new_id()
        now = utcnow()
        async with self.db.session() as session:
            if await session.get(Agent, agent_id) is not None:
                raise ConflictError(f"Agent {agent_id} already exists")
            agent = Agent(
                id=agent_id,
                name=input.name,
                system_prompt=input.system_prompt,
                thread_session_id=input.thread_session_id,
                created_at=now,
                updated_at=now,
            )
            session.add(agent)
            await session.commit()
        logger.info("Created agent %s (%s)", agent_id, input.name)
        await self.notifier.notify("agents", "create", agent_id)
        return self._agent_detail(agent)

    async def get_agent(self, agent_id: str, session: AsyncSession | None = None) -> AgentDetail | None:
        if session is None:
            async with self.db.session() as session:
                return await self.get_agent(agent_id, session)
        agent = await session.get(Agent, agent_id)
        return self._agent_detail(agent) if agent else None

    async def agent_exists(self, agent_id: str | None, session: AsyncSession) -> bool:
        if not agent_id:
            return False
        return await session.get(Agent, agent_id) is not None

    async def list_agents(self) -> list[AgentDetail]:
        async with self.db.session() as session:
            result = await session.execute(select(Agent).order_by(Agent.created_at))
            return [self._agent_detail(a) for a in result.scalars().all()]

    async def delete_agent(self, agent_id: str) -> None:
        async with self.db.session() as session:
            agent = await session.get(Agent, agent_id)
            if agent is None:
                raise NotFoundError(f"Agent {agent_id} not found")
            await session.delete(agent)
            await session.commit()
        await self.notifier.notify("agents", "delete", agent_id)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def create_session(self, input: SessionInput, session: AsyncSession | None = None) -> SessionDetail:
        if session is None:
            async with self.db.session() as session:
                result = await self._create_session(input, session)
                await session.commit()
                await self.notifier.notify("sessions", "create", result.id)
                return result
        return await self._create_session(input, session)

    async def _create_session(self, input: SessionInput, session: AsyncSession) -> SessionDetail:
        session_id = input.id or new_id()
        if await session.get(ChatSession, session_id) is not None:
            raise ConflictError(f"Session {session_id} already exists")
        now = utcnow()
        row = ChatSession(
            id=session_id,
            name=input.name,
            agent_id=input.agent_id,
            user=input.user,
            main_session=input.main_session,
            heartbeat_enabled=input.heartbeat_enabled,
            heartbeat_interval_sec=input.heartbeat_interval_sec,
            messages=[],
            main_loop_events=[],
            created_at=now,
            last_active_at=now,
        )
        session.add(row)
        await session.flush()
        logger.info("Created session %s (%s)", session_id, input.name)
        return self._session_detail(row)

    async def get_session(self, session_id: str, session: AsyncSession | None = None) -> SessionDetail | None:
        if session is None:
            async with self.db.session() as session:
                return await self.get_session(session_id, session)
        row = await session.get(ChatSession, session_id)
        return self._session_detail(row) if row else None

    async def session_exists(self, session_id: str | None, session: AsyncSession) -> bool:
        if not session_id:
            return False
        return await session.get(ChatSession, session_id) is not None

    async def list_sessions(self) -> list[SessionDetail]:
        async with self.db.session() as session:
            result = await session.execute(
                select(ChatSession).order_by(ChatSession.last_active_at.desc())
            )
            return [self._session_detail(s) for s in result.scalars().all()]

    async def append_messages(self, session_id: str, messages: list[SessionMessage]) -> None:
        """Append messages to a session's history in order."""
        if not messages:
            return

        async def _append(session: AsyncSession) -> None:
            row = await session.get(ChatSession, session_id)
            if row is None:
                raise NotFoundError(f"Session {session_id} not found")
            row.messages = [*row.messages, *(m.model_dump(mode="json") for m in messages)]
            row.last_active_at = utcnow()

        await retry_on_conflict(self.db, _append)
        await self.notifier.notify("sessions", "update", session_id)

    async def disable_heartbeat(self, session_id: str | None, session: AsyncSession | None = None) -> bool:
        """Turn off heartbeats for a session. Returns True if anything changed.

        Uses a bulk UPDATE that bumps ``version`` so it composes with the
        caller's transaction without reading the session row.
        """
        if not session_id:
            return False
        if session is None:
            async with self.db.session() as session:
                changed = await self.disable_heartbeat(session_id, session)
                await session.commit()
                return changed
        result = await session.execute(
            update(ChatSession)
            .where(ChatSession.id == session_id)
            .where(or_(ChatSession.heartbeat_enabled.is_(None), ChatSession.heartbeat_enabled.is_(True)))
            .values(
                heartbeat_enabled=False,
                last_active_at=utcnow(),
                version=ChatSession.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.info("Disabled heartbeat on session %s (task finished)", session_id)
        return bool(result.rowcount)

    async def disable_all_heartbeats(self) -> int:
        async with self.db.session() as session:
            result = await session.execute(
                update(ChatSession)
                .where(or_(ChatSession.heartbeat_enabled.is_(None), ChatSession.heartbeat_enabled.is_(True)))
                .values(heartbeat_enabled=False, version=ChatSession.version + 1)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        count = result.rowcount or 0
        if count:
            logger.info("Disabled heartbeat on %d session(s)", count)
            await self.notifier.notify("sessions")
        return count

    async def append_main_loop_event(self, event_type: str, text: str, user: str | None = None) -> int:
        """Append an event to every main session's feed. Returns sessions updated.

        The feed keeps the newest ``main_loop_event_limit`` entries and skips
        an event identical to the one already at the tail.
        """
        limit = self.settings.main_loop_event_limit
        entry = {"type": event_type, "text": text, "time": utcnow().isoformat()}

        async def _append(session: AsyncSession) -> int:
            result = await session.execute(select(ChatSession))
            updated = 0
            for row in result.scalars().all():
                if not is_main_session(row):
                    continue
                if user and row.user and row.user != user:
                    continue
                events = list(row.main_loop_events or [])
                if events and events[-1].get("type") == event_type and events[-1].get("text") == text:
                    continue
                events.append(entry)
                row.main_loop_events = events[-limit:]
                updated += 1
            return updated

        return await retry_on_conflict(self.db, _append)

    # ------------------------------------------------------------------
    # Conversion
    # ------------------------------------------------------------------

    def _agent_detail(self, agent: Agent) -> AgentDetail:
        return AgentDetail(
            id=agent.id,
            name=agent.name,
            system_prompt=agent.system_prompt,
            thread_session_id=agent.thread_session_id,
            created_at=agent.created_at,
            updated_at=agent.updated_at,
        )

    def _session_detail(self, row: ChatSession) -> SessionDetail:
        return SessionDetail(
            id=row.id,
            name=row.name,
            agent_id=row.agent_id,
            user=row.user,
            main_session=bool(row.main_session),
            heartbeat_enabled=row.heartbeat_enabled,
            heartbeat_interval_sec=row.heartbeat_interval_sec,
            messages=[SessionMessage.model_validate(m) for m in row.messages or []],
            main_loop_events=list(row.main_loop_events or []),
            created_at=row.created_at,
            last_active_at=row.last_active_at,
        )
