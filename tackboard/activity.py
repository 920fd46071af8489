from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from .db import ActivityLog, Database
from .errors import validation_error

_logger = logging.getLogger(__name__)

DEFAULT_DETAILS_MAX_BYTES = 65535


class ActivityAction(str, Enum):
    CREATE_CARD = "CREATE_CARD"
    UPDATE_CARD_TITLE = "UPDATE_CARD_TITLE"
    UPDATE_CARD_DESCRIPTION = "UPDATE_CARD_DESCRIPTION"
    UPDATE_CARD_PRIORITY = "UPDATE_CARD_PRIORITY"
    UPDATE_CARD_DUE_DATE = "UPDATE_CARD_DUE_DATE"
    UPDATE_CARD_WEIGHT = "UPDATE_CARD_WEIGHT"
    MOVE_CARD = "MOVE_CARD"
    DELETE_CARD = "DELETE_CARD"
    ADD_LABEL_TO_CARD = "ADD_LABEL_TO_CARD"
    REMOVE_LABEL_FROM_CARD = "REMOVE_LABEL_FROM_CARD"
    ADD_ASSIGNEE_TO_CARD = "ADD_ASSIGNEE_TO_CARD"
    REMOVE_ASSIGNEE_FROM_CARD = "REMOVE_ASSIGNEE_FROM_CARD"
    ADD_COMMENT = "ADD_COMMENT"
    UPDATE_COMMENT = "UPDATE_COMMENT"
    DELETE_COMMENT = "DELETE_COMMENT"
    ADD_ATTACHMENT = "ADD_ATTACHMENT"
    DELETE_ATTACHMENT = "DELETE_ATTACHMENT"
    MOVE_COLUMN = "MOVE_COLUMN"


@dataclass(frozen=True)
class ActivityEntry:
    action: ActivityAction
    card_id: str
    user_id: str | None = None
    details: Any = None


class ActivityLogHook:
    """Appends activity entries for the card mutations they describe.

    Entries are written in their own transaction, or in a savepoint of the
    caller's transaction through ``record_in``. Any failure, including
    invalid details, is logged and swallowed: the caller's mutation must
    not fail because of it.
    """

    def __init__(self, db: Database, details_max_bytes: int = DEFAULT_DETAILS_MAX_BYTES) -> None:
        self.db = db
        self.details_max_bytes = details_max_bytes

    def validate(self, entry: ActivityEntry) -> None:
        if not isinstance(entry.action, ActivityAction):
            raise validation_error(f"Invalid action type: {entry.action}")
        if not entry.card_id or not entry.card_id.strip():
            raise validation_error("Card ID cannot be empty")
        if entry.details is None:
            return
        try:
            serialized = json.dumps(entry.details)
        except (TypeError, ValueError) as err:
            raise validation_error("Activity details must be JSON serializable") from err
        if len(serialized.encode("utf-8")) > self.details_max_bytes:
            raise validation_error("Activity details are too large")

    def _add(self, session: Session, entries: list[ActivityEntry]) -> None:
        session.add_all(
            ActivityLog(
                action_type=entry.action.value,
                card_id=entry.card_id,
                user_id=entry.user_id,
                details=entry.details,
            )
            for entry in entries
        )

    def _insert(self, entries: list[ActivityEntry]) -> None:
        with self.db.transaction() as session:
            self._add(session, entries)

    def record_many(self, entries: list[ActivityEntry]) -> bool:
        """Returns False when the entries could not be stored."""
        if not entries:
            return True
        try:
            for entry in entries:
                self.validate(entry)
            self._insert(entries)
        except Exception:  # pylint: disable=broad-except
            _logger.exception(
                "Failed to record activity %s",
                [(str(e.action), e.card_id) for e in entries],
            )
            return False
        return True

    def record_in(self, session: Session, entries: list[ActivityEntry]) -> bool:
        """Like ``record_many`` but inside the caller's transaction.

        The entries go into a savepoint, so a failed insert rolls back only
        the savepoint and the caller's mutation carries on.
        """
        try:
            for entry in entries:
                self.validate(entry)
            with session.begin_nested():
                self._add(session, entries)
        except Exception:  # pylint: disable=broad-except
            _logger.exception(
                "Failed to record activity %s",
                [(str(e.action), e.card_id) for e in entries],
            )
            return False
        return True

    def record(
        self,
        action: ActivityAction,
        card_id: str,
        *,
        user_id: str | None = None,
        details: Any = None,
    ) -> bool:
        return self.record_many([ActivityEntry(action, card_id, user_id, details)])

    def list_for_card(self, card_id: str) -> list[ActivityLog]:
        with self.db.session() as session:
            return list(
                session.scalars(
                    select(ActivityLog)
                    .where(ActivityLog.card_id == card_id)
                    .order_by(ActivityLog.created_at.desc(), ActivityLog.id)
                )
            )
