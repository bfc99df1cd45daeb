import asyncio
import logging
from typing import Callable, Generator, Optional, Tuple

from fastapi import Request
from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session, declarative_base

from gateway.errors import ArchiveFailure
from gateway.utils import utc_now_iso

logger = logging.getLogger(__name__)

Base = declarative_base()


def create_db_engine(database_url: str) -> Engine:
    # check_same_thread=False lets archive writes run on worker threads
    connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
    return create_engine(database_url, connect_args=connect_args, echo=False)


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(engine: Engine) -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database at {engine.url}")
    try:
        # Import models to register them with Base.metadata
        from gateway.models import ChatRecord, LoginState  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def get_db(request: Request) -> Generator[Session, None, None]:
    """
    Dependency yielding a session from the app's session factory.
    The session is closed after use.
    """
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


def check_db_health(engine: Engine) -> bool:
    """
    Check if the database is reachable and the archive schema is applied.
    """
    logger.debug("Checking database health...")
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        if not inspect(engine).has_table("chat_records"):
            logger.error("Database schema not applied: 'chat_records' table not found")
            return False
        logger.debug("Database health check passed")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Chat Record Repository Functions
# =============================================================================

def create_chat_record(
    db: Session,
    user_id: str,
    question: str,
    answer: str,
    created_at: Optional[str] = None,
):
    """
    Append one completed exchange to the archive.

    Raises:
        ArchiveFailure: the record could not be committed
    """
    from gateway.models import ChatRecord

    logger.debug(f"Archiving chat record for user {user_id}")
    try:
        record = ChatRecord(
            user_id=user_id,
            question=question,
            answer=answer,
            created_at=created_at or utc_now_iso(),
        )
        db.add(record)
        db.commit()
        db.refresh(record)
        logger.info(f"Chat record {record.id} saved for user {user_id}")
        return record
    except Exception as e:
        db.rollback()
        raise ArchiveFailure(f"failed to save chat record for user {user_id}: {e}") from e


def get_chat_records(
    db: Session,
    limit: int = 50,
    offset: int = 0,
    user_id: Optional[str] = None,
) -> Tuple[list, int]:
    """
    Retrieve archived chat records, newest first.

    Returns:
        Tuple of (records list, total count matching filters)
    """
    from gateway.models import ChatRecord

    query = db.query(ChatRecord)
    if user_id:
        query = query.filter(ChatRecord.user_id == user_id)

    total = query.count()
    records = (
        query.order_by(ChatRecord.created_at.desc(), ChatRecord.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    logger.info(f"Retrieved {len(records)} of {total} chat records")
    return records, total


# =============================================================================
# Login State Repository Functions
# =============================================================================

def save_login_state(db: Session, ticket: str, user_id: str):
    """Bind a scan ticket to the user who scanned it. Re-scans overwrite."""
    from gateway.models import LoginState

    try:
        state = db.merge(LoginState(ticket=ticket, user_id=user_id, created_at=utc_now_iso()))
        db.commit()
        logger.info(f"Login state saved: ticket={ticket}, user={user_id}")
        return state
    except Exception:
        db.rollback()
        raise


def get_login_state(db: Session, ticket: str):
    from gateway.models import LoginState

    return db.query(LoginState).filter(LoginState.ticket == ticket).first()


# =============================================================================
# Async adapters used by the background worker
# =============================================================================

class SqlChatArchive:
    """Archive collaborator backed by the chat_records table."""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def _save(self, user_id: str, question: str, answer: str, created_at: str) -> None:
        with self._session_factory() as db:
            create_chat_record(db, user_id, question, answer, created_at)

    async def save(self, user_id: str, question: str, answer: str, created_at: str) -> None:
        await asyncio.to_thread(self._save, user_id, question, answer, created_at)


class SqlLoginStateStore:
    """Login-binding collaborator backed by the login_states table."""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def _save(self, ticket: str, user_id: str) -> None:
        with self._session_factory() as db:
            save_login_state(db, ticket, user_id)

    async def save_login_state(self, ticket: str, user_id: str) -> None:
        await asyncio.to_thread(self._save, ticket, user_id)
