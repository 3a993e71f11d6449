# horizon/repositories/position_repo.py
from sqlmodel import Session, select

from horizon.models.position import DevicePosition


class PositionRepository:
    """
    Data access layer for DevicePosition samples.

    Samples are immutable: there is no update method. Old samples are
    removed only through `prune`, which the engine calls to enforce the
    per-session retention cap.
    """

    def list_for_session(
        self,
        session: Session,
        session_id: str,
        limit: int | None = None,
    ) -> list[DevicePosition]:
        """Newest first."""
        stmt = (
            select(DevicePosition)
            .where(DevicePosition.session_id == session_id)
            .order_by(DevicePosition.timestamp.desc(), DevicePosition.id.desc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(session.exec(stmt).all())

    def prune(self, session: Session, session_id: str, keep: int) -> int:
        """
        Mark every sample beyond the newest `keep` for deletion.

        Returns the number of rows deleted once the caller saves.
        """
        stale = self.list_for_session(session, session_id)[keep:]
        for row in stale:
            session.delete(row)
        return len(stale)
