"""Moving cards between columns and reordering columns within a board.

A move re-reads the entity and the complete sibling set of the target parent
inside one transaction, computes the new order from what it read, and writes
it. Nothing the caller knows about siblings is trusted, only the target
index. When the engine aborts the transaction because of a concurrent writer
the whole read-compute-write sequence runs again, see ``RetryPolicy``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import select

from .access import check_write, get_board, get_card, get_column
from .activity import ActivityAction, ActivityEntry, ActivityLogHook
from .db import Card, ColumnModel, Database
from .errors import business_rule_violation, validation_error
from .ids import is_temporary_id
from .ordering import Placement, plan_insertion, resolve_index
from .retry import RetryPolicy

_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MoveResult:
    entity_id: str
    moved: bool
    title: str | None = None
    old_parent_id: str | None = None
    new_parent_id: str | None = None
    old_order: int | None = None
    new_order: int | None = None
    index: int | None = None
    renumbered: int = 0
    # ids of the cards living in a moved column
    card_ids: tuple[str, ...] = ()


def place_among(siblings: list, index: int) -> Placement:
    """Plan an insertion at ``index`` and write any renumbering back onto ``siblings``.

    ``siblings`` are ORM rows in display order, excluding the entity being placed.
    """
    placement = plan_insertion([s.order for s in siblings], index)
    if placement.renumbered is not None:
        for sibling, order in zip(siblings, placement.renumbered):
            sibling.order = order
    return placement


def _skip_temporary(entity_id: str) -> MoveResult:
    _logger.debug("Ignoring move of not yet persisted entity %s", entity_id)
    return MoveResult(entity_id=entity_id, moved=False)


class MoveService:
    def __init__(
        self,
        db: Database,
        retry_policy: RetryPolicy,
        activity: ActivityLogHook,
    ) -> None:
        self.db = db
        self.retry_policy = retry_policy
        self.activity = activity

    # === Cards ===

    def move_card(
        self, card_id: str, target_column_id: str, index: int, user_id: str
    ) -> MoveResult:
        if is_temporary_id(card_id):
            return _skip_temporary(card_id)
        if index < 0:
            raise validation_error("Card order cannot be negative")

        result = self.retry_policy.run(
            lambda: self._move_card_once(card_id, target_column_id, index, user_id),
            self.db.is_transient_conflict,
        )
        if result.moved:
            self.activity.record(
                ActivityAction.MOVE_CARD,
                card_id,
                user_id=user_id,
                details={
                    "cardTitle": result.title,
                    "oldColumnId": result.old_parent_id,
                    "newColumnId": result.new_parent_id,
                    "oldOrder": result.old_order,
                    "newOrder": result.new_order,
                },
            )
        return result

    def _move_card_once(
        self, card_id: str, target_column_id: str, index: int, user_id: str
    ) -> MoveResult:
        with self.db.transaction() as session:
            card = get_card(session, card_id)
            target = get_column(session, target_column_id)
            if target.board_id != card.board_id:
                raise business_rule_violation("Cards cannot be moved to another board")
            board = get_board(session, card.board_id)
            check_write(session, board, user_id)

            siblings = list(
                session.scalars(
                    select(Card)
                    .where(Card.column_id == target.id)
                    .order_by(Card.order, Card.id)
                )
            )
            others = [c for c in siblings if c.id != card.id]
            index = resolve_index(len(others), index)
            old_column_id, old_order = card.column_id, card.order

            if old_column_id == target.id and siblings.index(card) == index:
                return MoveResult(entity_id=card.id, moved=False, index=index)

            placement = place_among(others, index)
            if placement.renumbered is not None:
                _logger.info(
                    "Renumbering %d cards of column %s", len(others), target.id
                )

            card.column_id = target.id
            card.order = placement.order

            return MoveResult(
                entity_id=card.id,
                moved=True,
                title=card.title,
                old_parent_id=old_column_id,
                new_parent_id=target.id,
                old_order=old_order,
                new_order=placement.order,
                index=index,
                renumbered=len(others) if placement.renumbered is not None else 0,
            )

    # === Columns ===

    def move_column(
        self,
        column_id: str,
        index: int,
        user_id: str,
        *,
        title: str | None = None,
        width: int | None = None,
    ) -> MoveResult:
        """Moves a column to ``index``; ``title`` and ``width`` commit with the move."""
        if is_temporary_id(column_id):
            return _skip_temporary(column_id)
        if index < 0:
            raise validation_error("Column order cannot be negative")

        result = self.retry_policy.run(
            lambda: self._move_column_once(column_id, index, user_id, title, width),
            self.db.is_transient_conflict,
        )
        if result.moved and result.card_ids:
            # activity entries hang off cards: one per card of the moved column
            details = {
                "columnTitle": result.title,
                "oldOrder": result.old_order,
                "newOrder": result.new_order,
            }
            self.activity.record_many(
                [
                    ActivityEntry(ActivityAction.MOVE_COLUMN, card_id, user_id, details)
                    for card_id in result.card_ids
                ]
            )
        return result

    def _move_column_once(
        self,
        column_id: str,
        index: int,
        user_id: str,
        title: str | None,
        width: int | None,
    ) -> MoveResult:
        with self.db.transaction() as session:
            column = get_column(session, column_id)
            board = get_board(session, column.board_id)
            check_write(session, board, user_id)
            if title is not None:
                column.title = title.strip()
            if width is not None:
                column.width = width

            siblings = list(
                session.scalars(
                    select(ColumnModel)
                    .where(ColumnModel.board_id == board.id)
                    .order_by(ColumnModel.order, ColumnModel.id)
                )
            )
            others = [c for c in siblings if c.id != column.id]
            index = resolve_index(len(others), index)
            if siblings.index(column) == index:
                return MoveResult(entity_id=column.id, moved=False, index=index)

            old_order = column.order
            placement = place_among(others, index)
            if placement.renumbered is not None:
                _logger.info("Renumbering %d columns of board %s", len(others), board.id)
            column.order = placement.order

            card_ids = tuple(
                session.scalars(select(Card.id).where(Card.column_id == column.id))
            )
            return MoveResult(
                entity_id=column.id,
                moved=True,
                title=column.title,
                old_parent_id=board.id,
                new_parent_id=board.id,
                old_order=old_order,
                new_order=placement.order,
                index=index,
                renumbered=len(others) if placement.renumbered is not None else 0,
                card_ids=card_ids,
            )
