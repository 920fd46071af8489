from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from .db import Board, BoardMembership, Card, ColumnModel
from .errors import forbidden, not_found

ROLE_RANK = {"reader": 1, "writer": 2, "admin": 3}


def get_board(session: Session, board_id: str) -> Board:
    board = session.get(Board, board_id)
    if board is None:
        raise not_found("Board", board_id)
    return board


def get_column(session: Session, column_id: str) -> ColumnModel:
    column = session.get(ColumnModel, column_id)
    if column is None:
        raise not_found("Column", column_id)
    return column


def get_card(session: Session, card_id: str) -> Card:
    card = session.get(Card, card_id)
    if card is None:
        raise not_found("Card", card_id)
    return card


def role_for_user(session: Session, board: Board, user_id: str | None) -> str | None:
    if user_id is None:
        return None
    if board.owner_id == user_id:
        return "admin"
    return session.scalar(
        select(BoardMembership.role).where(
            BoardMembership.board_id == board.id,
            BoardMembership.user_id == user_id,
        )
    )


def has_role(role: str | None, min_role: str) -> bool:
    if role is None:
        return False
    return ROLE_RANK.get(role, 0) >= ROLE_RANK[min_role]


def check_read(session: Session, board: Board, user_id: str) -> str:
    role = role_for_user(session, board, user_id)
    if has_role(role, "reader"):
        return role
    if board.is_public:
        return "reader"
    raise forbidden("You do not have access to this board")


def check_write(session: Session, board: Board, user_id: str) -> str:
    role = role_for_user(session, board, user_id)
    if not has_role(role, "writer"):
        raise forbidden()
    return role


def check_manage(session: Session, board: Board, user_id: str) -> None:
    if not has_role(role_for_user(session, board, user_id), "admin"):
        raise forbidden("Only board admins can manage this board")
