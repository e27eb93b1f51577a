import logging
import threading
from datetime import datetime
from typing import List, Optional

from sqlalchemy import create_engine, func, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.errors import MalformedTimestamp, StoreError
from app.models import Base, Message, MessageCandidate, StoredMessage
from app.utils import format_timestamp, parse_timestamp

logger = logging.getLogger(__name__)


def _is_sqlite_memory(database_url: str) -> bool:
    return database_url in ("sqlite://", "sqlite:///:memory:")


class MessageStore:
    """
    Durable store for ingested SMS messages.

    One lock guards the database handle. Each public operation holds it
    for the duration of that single operation and nothing else, so the
    poller and concurrent API requests interleave per operation.
    Uniqueness is not checked on insert; callers use exists() first.
    """

    def __init__(self, database_url: str):
        self.database_url = database_url

        # check_same_thread=False is required for SQLite: requests run in
        # FastAPI's threadpool and the poller uses worker threads
        connect_args = {}
        engine_kwargs = {}
        if database_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
            if _is_sqlite_memory(database_url):
                # Every session must see the same in-memory database
                engine_kwargs["poolclass"] = StaticPool

        self.engine = create_engine(
            database_url,
            connect_args=connect_args,
            echo=False,
            **engine_kwargs,
        )
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)
        self._lock = threading.Lock()

    def init_db(self) -> None:
        """
        Create the messages table and its indexes if missing.
        Called during application startup.
        """
        logger.debug(f"Initializing database with URL: {self.database_url}")
        try:
            with self._lock:
                Base.metadata.create_all(bind=self.engine)
        except SQLAlchemyError as e:
            logger.error(f"Failed to initialize database: {e}")
            raise StoreError(f"Failed to initialize database: {e}") from e
        logger.info("Database initialized successfully")

    def dispose(self) -> None:
        """Release pooled connections."""
        self.engine.dispose()

    # =========================================================================
    # Message operations
    # =========================================================================

    def exists(self, candidate: MessageCandidate) -> bool:
        """
        Check whether a message with the same dedup key is already stored.

        The dedup key is (device_identity, sender, text, timestamp).

        Raises:
            StoreError: if the database cannot be queried
        """
        ts = format_timestamp(candidate.timestamp)
        try:
            with self._lock, self.SessionLocal() as db:
                count = (
                    db.query(func.count(Message.id))
                    .filter(
                        Message.device_identity == candidate.device_identity,
                        Message.sender == candidate.sender,
                        Message.text == candidate.text,
                        Message.timestamp == ts,
                    )
                    .scalar()
                )
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to check for existing message: {e}") from e

        return bool(count)

    def insert(self, candidate: MessageCandidate) -> StoredMessage:
        """
        Append a new message row.

        Returns:
            The stored message, including its assigned id

        Raises:
            StoreError: if the write fails
        """
        row = Message(
            device_identity=candidate.device_identity,
            sender=candidate.sender,
            text=candidate.text,
            timestamp=format_timestamp(candidate.timestamp),
        )
        try:
            with self._lock, self.SessionLocal() as db:
                try:
                    db.add(row)
                    db.commit()
                    db.refresh(row)
                except SQLAlchemyError:
                    db.rollback()
                    raise
                stored = self._to_stored(row)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to insert message: {e}") from e

        logger.debug(f"Inserted message id={stored.id} for device {stored.device_identity}")
        return stored

    def query(
        self,
        device_identity: Optional[str] = None,
        after: Optional[datetime] = None,
    ) -> List[StoredMessage]:
        """
        Retrieve stored messages ordered by timestamp ascending.

        Args:
            device_identity: Only messages from this device (None = all devices)
            after: Only messages strictly later than this instant (None = no bound)

        Raises:
            StoreError: if the database cannot be queried
        """
        try:
            with self._lock, self.SessionLocal() as db:
                query = db.query(Message)

                if device_identity is not None:
                    query = query.filter(Message.device_identity == device_identity)

                if after is not None:
                    query = query.filter(Message.timestamp > format_timestamp(after))

                rows = query.order_by(Message.timestamp.asc(), Message.id.asc()).all()
                messages = [self._to_stored(row) for row in rows]
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to query messages: {e}") from e
        except MalformedTimestamp as e:
            raise StoreError(f"Corrupt timestamp in messages table: {e.value}") from e

        logger.debug(f"Retrieved {len(messages)} messages (device={device_identity}, after={after})")
        return messages

    def count(self) -> int:
        """Total number of stored messages."""
        try:
            with self._lock, self.SessionLocal() as db:
                return db.query(func.count(Message.id)).scalar() or 0
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to count messages: {e}") from e

    def check_health(self) -> bool:
        """
        Check if the database is reachable and schema is applied.

        Returns:
            True if DB is healthy and schema exists, False otherwise.
        """
        try:
            with self._lock, self.SessionLocal() as db:
                db.execute(text("SELECT 1"))
                result = db.execute(text(
                    "SELECT COUNT(*) FROM sqlite_master WHERE type='table' AND name='messages'"
                )).scalar()
        except SQLAlchemyError as e:
            logger.error(f"Database health check failed: {e}")
            return False

        if result == 0:
            logger.error("Database schema not applied: 'messages' table not found")
            return False
        return True

    @staticmethod
    def _to_stored(row: Message) -> StoredMessage:
        return StoredMessage(
            id=row.id,
            device_identity=row.device_identity,
            sender=row.sender,
            text=row.text,
            timestamp=parse_timestamp(row.timestamp),
        )
