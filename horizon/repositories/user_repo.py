# horizon/repositories/user_repo.py
from sqlalchemy import func
from sqlmodel import Session, select

from horizon.models.user import User


class UserRepository:
    """
    Data access layer for User.

    Responsibilities:
      - Pure DB queries
      - No commits here; LocalStore.save() flushes pending changes
    """

    def get_by_id(self, session: Session, user_id: str) -> User | None:
        """Return a User by primary key, or None if not found."""
        return session.get(User, user_id)

    def get_by_device_id(self, session: Session, device_id: str) -> User | None:
        stmt = select(User).where(User.device_id == device_id)
        return session.exec(stmt).first()

    def get_by_email(self, session: Session, email: str) -> User | None:
        """Case-insensitive exact match (emails are stored lowercase)."""
        stmt = select(User).where(func.lower(User.email) == email.lower())
        return session.exec(stmt).first()

    def get_by_username(self, session: Session, username: str) -> User | None:
        """Exact, case-sensitive match."""
        stmt = select(User).where(User.username == username)
        return session.exec(stmt).first()

    def get_by_reset_token(self, session: Session, token: str) -> User | None:
        stmt = select(User).where(User.password_reset_token == token)
        return session.exec(stmt).first()
