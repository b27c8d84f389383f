"""Merging a provisional messaging-channel identity into a real account.

A user created from a bot contact has a ``messaging_id`` and no password: a
ghost. When a signed-in account claims that messaging id, every row the ghost
owns is repointed to the account and the ghost is removed. The repointing, the
ghost deletion and the re-attachment of the id commit together or not at all.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy import and_, delete, exists, select, update
from sqlalchemy.orm import Session, aliased

from models import OWNED_MODELS, Budget, User, UserSettings
from services import Conflict, NotFound

logger = logging.getLogger(__name__)


@dataclass
class MergeResult:
    success: bool
    message: str
    merged_user_id: int | None = None
    moved: dict[str, int] = field(default_factory=dict)


class IdentityService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _user(self, user_id: int) -> User:
        user = self.session.scalar(select(User).where(User.id == user_id))
        if not user:
            raise NotFound("User not found")
        return user

    def merge(self, primary_user_id: int, messaging_id: int) -> MergeResult:
        """Attach ``messaging_id`` to ``primary_user_id``, absorbing a ghost holder.

        Raises ``NotFound`` for an unknown primary and ``Conflict`` when the id
        belongs to another credentialed account; neither case writes anything.
        """
        primary = self._user(primary_user_id)
        holder = self.session.scalar(
            select(User).where(User.messaging_id == messaging_id)
        )

        if holder is None:
            primary.messaging_id = messaging_id
            self.session.commit()
            logger.info(
                f"messaging_linked: user_id={primary_user_id} merged=false"
            )
            return MergeResult(True, "Messaging account linked")

        if holder.id == primary.id:
            return MergeResult(True, "Messaging account already linked")

        if not holder.is_ghost:
            raise Conflict("This messaging account is already linked to another user")

        ghost_id = holder.id
        moved: dict[str, int] = {}
        try:
            # Budgets are unique per (user, category, month); the primary's row wins.
            kept = aliased(Budget)
            result = self.session.execute(
                delete(Budget)
                .where(
                    Budget.user_id == ghost_id,
                    exists().where(
                        and_(
                            kept.user_id == primary.id,
                            kept.category_id == Budget.category_id,
                            kept.month == Budget.month,
                            kept.year == Budget.year,
                        )
                    ),
                )
                .execution_options(synchronize_session=False)
            )
            dropped_budgets = result.rowcount or 0

            for model in OWNED_MODELS:
                result = self.session.execute(
                    update(model)
                    .where(model.user_id == ghost_id)
                    .values(user_id=primary.id)
                    .execution_options(synchronize_session=False)
                )
                moved[model.__tablename__] = result.rowcount or 0

            # The primary's settings win; the ghost's would collide on user_id.
            self.session.execute(
                delete(UserSettings)
                .where(UserSettings.user_id == ghost_id)
                .execution_options(synchronize_session=False)
            )
            self.session.execute(
                delete(User)
                .where(User.id == ghost_id)
                .execution_options(synchronize_session=False)
            )
            self.session.expunge(holder)
            primary.messaging_id = messaging_id
            self.session.flush()
            self.session.commit()
        except Exception:
            self.session.rollback()
            logger.exception(
                f"messaging_merge_failed: primary={primary_user_id} ghost={ghost_id}"
            )
            raise

        # Objects loaded before the bulk update still carry the ghost's id.
        self.session.expire_all()
        logger.info(
            f"messaging_merged: primary={primary_user_id} ghost={ghost_id} "
            f"moved={moved} dropped_budgets={dropped_budgets}"
        )
        return MergeResult(
            True,
            "Messaging account linked and history merged",
            merged_user_id=ghost_id,
            moved=moved,
        )

    def unlink(self, user_id: int) -> None:
        user = self._user(user_id)
        user.messaging_id = None
        self.session.commit()
