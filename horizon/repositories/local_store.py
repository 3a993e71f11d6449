# horizon/repositories/local_store.py
import logging
from typing import Callable, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, SQLModel

from horizon.core.errors import LocalStorageError
from horizon.models.position import DevicePosition
from horizon.models.session import CollabSession
from horizon.models.user import User
from horizon.repositories.position_repo import PositionRepository
from horizon.repositories.session_repo import SessionRepository
from horizon.repositories.user_repo import UserRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LocalStore:
    """
    Adapter over the embedded database.

    Responsibilities:
      - stage inserts / deletes on the shared Session
      - `save()` flushes everything pending in one commit
      - predicate lookups through the repositories

    Every write path in the engine must get a successful `save()` before it
    talks to any remote backend. Failures surface as LocalStorageError
    with the SQLAlchemy error as the cause.
    """

    def __init__(
        self,
        session: Session,
        users: UserRepository | None = None,
        sessions: SessionRepository | None = None,
        positions: PositionRepository | None = None,
    ):
        self.session = session
        self.users = users or UserRepository()
        self.sessions = sessions or SessionRepository()
        self.positions = positions or PositionRepository()

    # ----- Writes -----

    def insert(self, entity: SQLModel) -> None:
        self.session.add(entity)

    def delete(self, entity: SQLModel) -> None:
        try:
            self.session.delete(entity)
        except SQLAlchemyError as e:
            raise LocalStorageError(e) from e

    def save(self) -> None:
        """Commit all pending changes, rolling back on failure."""
        try:
            self.session.commit()
        except SQLAlchemyError as e:
            logger.error("Local save failed: %s", e)
            self.session.rollback()
            raise LocalStorageError(e) from e

    def discard(self) -> None:
        """Drop pending changes after a failed operation."""
        self.session.rollback()

    # ----- Queries -----

    def _query(self, fn: Callable[[Session], T]) -> T:
        try:
            return fn(self.session)
        except SQLAlchemyError as e:
            logger.error("Local query failed: %s", e)
            raise LocalStorageError(e) from e

    def find_user_by_device_id(self, device_id: str) -> User | None:
        return self._query(lambda s: self.users.get_by_device_id(s, device_id))

    def find_user_by_email(self, email: str) -> User | None:
        return self._query(lambda s: self.users.get_by_email(s, email))

    def find_user_by_username(self, username: str) -> User | None:
        return self._query(lambda s: self.users.get_by_username(s, username))

    def find_user_by_reset_token(self, token: str) -> User | None:
        return self._query(lambda s: self.users.get_by_reset_token(s, token))

    def get_user(self, user_id: str) -> User | None:
        return self._query(lambda s: self.users.get_by_id(s, user_id))

    def get_session(self, session_id: str) -> CollabSession | None:
        return self._query(lambda s: self.sessions.get_by_id(s, session_id))

    def list_active_sessions(self) -> list[CollabSession]:
        return self._query(lambda s: self.sessions.list_active(s))

    def list_positions(self, session_id: str, limit: int | None = None) -> list[DevicePosition]:
        return self._query(lambda s: self.positions.list_for_session(s, session_id, limit))

    def prune_positions(self, session_id: str, keep: int) -> int:
        """Stage deletion of samples beyond the newest `keep`; caller saves."""
        return self._query(lambda s: self.positions.prune(s, session_id, keep))
