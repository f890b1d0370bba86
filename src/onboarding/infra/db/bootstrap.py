from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from src.onboarding.clock import Clock, utcnow
from src.onboarding.config import Settings
from src.onboarding.infra.db.inmemory import (
    InMemoryMessageRepository,
    InMemorySessionRepository,
    InMemoryTranscriptionRepository,
)
from src.onboarding.infra.db.models import Base
from src.onboarding.infra.db.repositories import MessageRepository, SessionRepository, TranscriptionRepository
from src.onboarding.infra.db.session import create_sqlalchemy_engine, create_sqlalchemy_session_factory
from src.onboarding.infra.db.sql_repositories import (
    SqlMessageRepository,
    SqlSessionRepository,
    SqlTranscriptionRepository,
)

logger = logging.getLogger("onboarding")


@dataclass
class Repositories:
    sessions: SessionRepository
    messages: MessageRepository
    transcriptions: TranscriptionRepository


def init_in_memory_repositories(clock: Clock = utcnow) -> Repositories:
    return Repositories(
        sessions=InMemorySessionRepository(clock),
        messages=InMemoryMessageRepository(),
        transcriptions=InMemoryTranscriptionRepository(clock),
    )


def init_sql_repositories(database_url: str, clock: Clock = utcnow) -> Repositories:
    """Build SQL-backed repositories, creating the tables if they do not exist.

    In a real deployment the schema should come from migrations; create_all
    is convenient for single-node setups and tests.
    """

    engine = create_sqlalchemy_engine(database_url)
    Base.metadata.create_all(engine)
    session_factory = create_sqlalchemy_session_factory(engine)

    return Repositories(
        sessions=SqlSessionRepository(session_factory, clock),
        messages=SqlMessageRepository(session_factory),
        transcriptions=SqlTranscriptionRepository(session_factory, clock),
    )


def init_repositories(source: Settings, clock: Clock = utcnow, database_url: Optional[str] = None) -> Repositories:
    """Pick repositories from configuration.

    SQL repositories are used when USE_SQL_REPOS is enabled and a database URL
    is configured; otherwise the in-memory ones stay active.
    """

    if not source.use_sql_repos:
        return init_in_memory_repositories(clock)

    db_url = database_url or source.database_url
    if not db_url:
        logger.warning("USE_SQL_REPOS is enabled but DATABASE_URL is not set; using in-memory repositories")
        return init_in_memory_repositories(clock)

    return init_sql_repositories(db_url, clock)
