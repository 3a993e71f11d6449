# horizon/repositories/session_repo.py
from sqlmodel import Session, select

from horizon.models.session import CollabSession


class SessionRepository:
    """Data access layer for collaborative sessions (no commits)."""

    def get_by_id(self, session: Session, session_id: str) -> CollabSession | None:
        return session.get(CollabSession, session_id)

    def list_active(self, session: Session) -> list[CollabSession]:
        stmt = (
            select(CollabSession)
            .where(CollabSession.is_active == True)  # noqa: E712
            .order_by(CollabSession.last_active.desc())
        )
        return list(session.exec(stmt).all())
