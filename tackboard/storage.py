from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from .access import (
    check_manage,
    check_read,
    check_write,
    get_board,
    get_card,
    get_column,
    has_role,
    role_for_user,
)
from .activity import ActivityAction, ActivityEntry, ActivityLogHook
from .db import (
    Attachment,
    Board,
    BoardMembership,
    Card,
    ColumnModel,
    Comment,
    Database,
    Label,
    User,
)
from .errors import business_rule_violation, conflict, forbidden, not_found
from .models import (
    ActivityOut,
    AttachmentIn,
    AttachmentOut,
    BoardCreate,
    BoardOut,
    BoardView,
    CardCreate,
    CardOut,
    CardUpdate,
    ColumnCreate,
    ColumnOut,
    ColumnUpdate,
    CommentIn,
    CommentOut,
    LabelCreate,
    LabelOut,
    MemberIn,
    MemberOut,
    Success,
    UserSummary,
)
from .moves import place_among

_logger = logging.getLogger(__name__)


# === Helpers ===


def _ensure_user(session: Session, user_id: str) -> User:
    """Returns the user row for ``user_id``, creating a bare one on first sight."""
    user = session.get(User, user_id)
    if user is None:
        user = User(id=user_id)
        session.add(user)
    return user


def board_out(board: Board, role: str) -> BoardOut:
    return BoardOut(
        id=board.id,
        title=board.title,
        theme=board.theme,
        ownerId=board.owner_id,
        isPublic=board.is_public,
        myRole=role,
        createdAt=board.created_at,
        updatedAt=board.updated_at,
    )


def column_out(column: ColumnModel) -> ColumnOut:
    return ColumnOut(
        id=column.id,
        boardId=column.board_id,
        title=column.title,
        width=column.width,
        order=column.order,
        createdAt=column.created_at,
        updatedAt=column.updated_at,
    )


def label_out(label: Label) -> LabelOut:
    return LabelOut(id=label.id, boardId=label.board_id, name=label.name, color=label.color)


def card_out(card: Card) -> CardOut:
    return CardOut(
        id=card.id,
        boardId=card.board_id,
        columnId=card.column_id,
        title=card.title,
        description=card.description,
        priority=card.priority,
        dueDate=card.due_date,
        weight=card.weight,
        order=card.order,
        labels=[label_out(label) for label in card.labels],
        assignees=[UserSummary(id=u.id, name=u.name, email=u.email) for u in card.assignees],
        createdAt=card.created_at,
        updatedAt=card.updated_at,
    )


def comment_out(comment: Comment) -> CommentOut:
    return CommentOut(
        id=comment.id,
        cardId=comment.card_id,
        userId=comment.user_id,
        content=comment.content,
        createdAt=comment.created_at,
        updatedAt=comment.updated_at,
    )


def attachment_out(attachment: Attachment) -> AttachmentOut:
    return AttachmentOut(
        id=attachment.id,
        cardId=attachment.card_id,
        name=attachment.name,
        url=attachment.url,
        type=attachment.type,
        size=attachment.size,
        createdAt=attachment.created_at,
    )


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class BoardStore:
    """Boards, columns, cards and card sub-resources on top of ``Database``.

    Positions are only assigned here on creation (last among siblings);
    every later change of position goes through ``MoveService``.
    """

    def __init__(self, db: Database, activity: ActivityLogHook) -> None:
        self.db = db
        self.activity = activity

    # === Board operations ===

    def create_board(self, owner_id: str, payload: BoardCreate) -> BoardOut:
        with self.db.transaction() as session:
            _ensure_user(session, owner_id)
            board = Board(
                title=payload.title.strip(),
                theme=payload.theme.value,
                owner_id=owner_id,
                is_public=payload.isPublic,
            )
            session.add(board)
            session.flush()
            return board_out(board, "admin")

    def get_board_view(self, board_id: str, user_id: str) -> BoardView:
        with self.db.session() as session:
            board = get_board(session, board_id)
            role = check_read(session, board, user_id)
            columns = list(board.columns)
            cards = [card for column in columns for card in column.cards]
            return BoardView(
                board=board_out(board, role),
                columns=[column_out(c) for c in columns],
                cards=[card_out(c) for c in cards],
            )

    def add_member(self, board_id: str, user_id: str, payload: MemberIn) -> MemberOut:
        with self.db.transaction() as session:
            board = get_board(session, board_id)
            check_manage(session, board, user_id)
            _ensure_user(session, payload.userId)
            membership = session.scalar(
                select(BoardMembership).where(
                    BoardMembership.board_id == board.id,
                    BoardMembership.user_id == payload.userId,
                )
            )
            if membership is None:
                membership = BoardMembership(board_id=board.id, user_id=payload.userId)
                session.add(membership)
            membership.role = payload.role.value
            return MemberOut(boardId=board.id, userId=payload.userId, role=payload.role)

    def create_label(self, board_id: str, user_id: str, payload: LabelCreate) -> LabelOut:
        with self.db.transaction() as session:
            board = get_board(session, board_id)
            check_write(session, board, user_id)
            name = payload.name.strip()
            duplicate = session.scalar(
                select(Label.id).where(Label.board_id == board.id, Label.name == name)
            )
            if duplicate is not None:
                raise conflict(f"A label named '{name}' already exists on this board")
            label = Label(board_id=board.id, name=name, color=payload.color)
            session.add(label)
            session.flush()
            return label_out(label)

    # === Column operations ===

    def create_column(self, user_id: str, payload: ColumnCreate) -> ColumnOut:
        with self.db.transaction() as session:
            board = get_board(session, payload.boardId)
            check_write(session, board, user_id)
            siblings = list(
                session.scalars(
                    select(ColumnModel)
                    .where(ColumnModel.board_id == board.id)
                    .order_by(ColumnModel.order, ColumnModel.id)
                )
            )
            column = ColumnModel(
                board_id=board.id,
                title=payload.title.strip(),
                width=payload.width,
                order=place_among(siblings, len(siblings)).order,
            )
            session.add(column)
            session.flush()
            return column_out(column)

    def get_column(self, column_id: str, user_id: str) -> ColumnOut:
        with self.db.session() as session:
            column = get_column(session, column_id)
            check_read(session, get_board(session, column.board_id), user_id)
            return column_out(column)

    def update_column(self, column_id: str, user_id: str, payload: ColumnUpdate) -> ColumnOut:
        with self.db.transaction() as session:
            column = get_column(session, column_id)
            check_write(session, get_board(session, column.board_id), user_id)
            if payload.title is not None:
                column.title = payload.title.strip()
            if payload.width is not None:
                column.width = payload.width
            session.flush()
            return column_out(column)

    def delete_column(self, column_id: str, user_id: str) -> None:
        with self.db.transaction() as session:
            column = get_column(session, column_id)
            check_write(session, get_board(session, column.board_id), user_id)
            # sibling orders are left as they are
            session.delete(column)

    # === Card operations ===

    def _card_for(self, session: Session, card_id: str, user_id: str, *, write: bool) -> Card:
        card = get_card(session, card_id)
        board = get_board(session, card.board_id)
        if write:
            check_write(session, board, user_id)
        else:
            check_read(session, board, user_id)
        return card

    def create_card(self, user_id: str, payload: CardCreate) -> CardOut:
        with self.db.transaction() as session:
            column = get_column(session, payload.columnId)
            check_write(session, get_board(session, column.board_id), user_id)
            siblings = list(
                session.scalars(
                    select(Card)
                    .where(Card.column_id == column.id)
                    .order_by(Card.order, Card.id)
                )
            )
            card = Card(
                board_id=column.board_id,
                column_id=column.id,
                title=payload.title.strip(),
                description=payload.description,
                priority=payload.priority.value,
                due_date=payload.dueDate,
                weight=payload.weight,
                order=place_among(siblings, len(siblings)).order,
            )
            session.add(card)
            session.flush()
            out = card_out(card)

        self.activity.record(
            ActivityAction.CREATE_CARD,
            out.id,
            user_id=user_id,
            details={"title": out.title, "columnId": out.columnId},
        )
        return out

    def get_card(self, card_id: str, user_id: str) -> CardOut:
        with self.db.session() as session:
            return card_out(self._card_for(session, card_id, user_id, write=False))

    def update_card(self, card_id: str, user_id: str, payload: CardUpdate) -> CardOut:
        for kind, added, removed in (
            ("label", payload.labelIdsToAdd, payload.labelIdsToRemove),
            ("assignee", payload.assigneeIdsToAdd, payload.assigneeIdsToRemove),
        ):
            both = sorted(set(added) & set(removed))
            if both:
                raise business_rule_violation(
                    f"Cannot add and remove the same {kind} in one request: {', '.join(both)}"
                )

        entries: list[ActivityEntry] = []

        def log(action: ActivityAction, details: dict) -> None:
            entries.append(ActivityEntry(action, card_id, user_id, details))

        with self.db.transaction() as session:
            card = self._card_for(session, card_id, user_id, write=True)

            if payload.title is not None and payload.title.strip() != card.title:
                log(ActivityAction.UPDATE_CARD_TITLE, {"old": card.title, "new": payload.title.strip()})
                card.title = payload.title.strip()
            if payload.description is not None and payload.description != card.description:
                log(
                    ActivityAction.UPDATE_CARD_DESCRIPTION,
                    {"old": card.description, "new": payload.description},
                )
                card.description = payload.description
            if payload.priority is not None and payload.priority.value != card.priority:
                log(ActivityAction.UPDATE_CARD_PRIORITY, {"old": card.priority, "new": payload.priority.value})
                card.priority = payload.priority.value
            if payload.dueDate is not None and _iso(payload.dueDate) != _iso(card.due_date):
                log(ActivityAction.UPDATE_CARD_DUE_DATE, {"old": _iso(card.due_date), "new": _iso(payload.dueDate)})
                card.due_date = payload.dueDate
            if payload.weight is not None and payload.weight != card.weight:
                log(ActivityAction.UPDATE_CARD_WEIGHT, {"old": card.weight, "new": payload.weight})
                card.weight = payload.weight

            for label_id in payload.labelIdsToAdd:
                label = session.get(Label, label_id)
                if label is None or label.board_id != card.board_id:
                    raise not_found("Label", label_id)
                if label not in card.labels:
                    card.labels.append(label)
                    log(ActivityAction.ADD_LABEL_TO_CARD, {"labelId": label.id, "labelName": label.name})
            for label_id in payload.labelIdsToRemove:
                label = next((lb for lb in card.labels if lb.id == label_id), None)
                if label is not None:
                    card.labels.remove(label)
                    log(ActivityAction.REMOVE_LABEL_FROM_CARD, {"labelId": label.id, "labelName": label.name})

            for assignee_id in payload.assigneeIdsToAdd:
                user = session.get(User, assignee_id)
                if user is None:
                    raise not_found("User", assignee_id)
                if user not in card.assignees:
                    card.assignees.append(user)
                    log(
                        ActivityAction.ADD_ASSIGNEE_TO_CARD,
                        {"assigneeId": user.id, "assigneeName": user.name or user.email or "Unknown User"},
                    )
            for assignee_id in payload.assigneeIdsToRemove:
                user = next((u for u in card.assignees if u.id == assignee_id), None)
                if user is not None:
                    card.assignees.remove(user)
                    log(
                        ActivityAction.REMOVE_ASSIGNEE_FROM_CARD,
                        {"assigneeId": user.id, "assigneeName": user.name or user.email or "Unknown User"},
                    )

            session.flush()
            out = card_out(card)

        self.activity.record_many(entries)
        return out

    def delete_card(self, card_id: str, user_id: str) -> Success:
        with self.db.transaction() as session:
            card = session.get(Card, card_id)
            if card is None:
                return Success(message="Card not found or already deleted.")
            check_write(session, get_board(session, card.board_id), user_id)
            details = {
                "title": card.title,
                "labelCount": len(card.labels),
                "assigneeCount": len(card.assignees),
            }
            # logged before the delete: entries of a card cascade with it
            self.activity.record_in(
                session, [ActivityEntry(ActivityAction.DELETE_CARD, card_id, user_id, details)]
            )
            session.delete(card)
        return Success()

    def list_activity(self, card_id: str, user_id: str) -> list[ActivityOut]:
        with self.db.session() as session:
            self._card_for(session, card_id, user_id, write=False)
        return [
            ActivityOut(
                id=entry.id,
                actionType=entry.action_type,
                details=entry.details,
                cardId=entry.card_id,
                userId=entry.user_id,
                createdAt=entry.created_at,
            )
            for entry in self.activity.list_for_card(card_id)
        ]

    # === Comments ===

    def add_comment(self, card_id: str, user_id: str, payload: CommentIn) -> CommentOut:
        with self.db.transaction() as session:
            card = self._card_for(session, card_id, user_id, write=False)
            comment = Comment(card_id=card.id, user_id=user_id, content=payload.content)
            session.add(comment)
            session.flush()
            out = comment_out(comment)

        self.activity.record(
            ActivityAction.ADD_COMMENT, card_id, user_id=user_id, details={"commentId": out.id}
        )
        return out

    def _comment_for(self, session: Session, card_id: str, comment_id: str) -> Comment:
        comment = session.get(Comment, comment_id)
        if comment is None or comment.card_id != card_id:
            raise not_found("Comment", comment_id)
        return comment

    def update_comment(
        self, card_id: str, comment_id: str, user_id: str, payload: CommentIn
    ) -> CommentOut:
        with self.db.transaction() as session:
            self._card_for(session, card_id, user_id, write=False)
            comment = self._comment_for(session, card_id, comment_id)
            if comment.user_id != user_id:
                raise forbidden("Only the author can edit a comment")
            comment.content = payload.content
            session.flush()
            out = comment_out(comment)

        self.activity.record(
            ActivityAction.UPDATE_COMMENT, card_id, user_id=user_id, details={"commentId": comment_id}
        )
        return out

    def delete_comment(self, card_id: str, comment_id: str, user_id: str) -> Success:
        with self.db.transaction() as session:
            card = self._card_for(session, card_id, user_id, write=False)
            comment = self._comment_for(session, card_id, comment_id)
            board = get_board(session, card.board_id)
            if comment.user_id != user_id and not has_role(
                role_for_user(session, board, user_id), "admin"
            ):
                raise forbidden("Only the author or a board admin can delete a comment")
            session.delete(comment)

        self.activity.record(
            ActivityAction.DELETE_COMMENT, card_id, user_id=user_id, details={"commentId": comment_id}
        )
        return Success()

    # === Attachments ===

    def add_attachment(self, card_id: str, user_id: str, payload: AttachmentIn) -> AttachmentOut:
        with self.db.transaction() as session:
            card = self._card_for(session, card_id, user_id, write=True)
            attachment = Attachment(
                card_id=card.id,
                name=payload.name,
                url=payload.url,
                type=payload.type,
                size=payload.size,
            )
            session.add(attachment)
            session.flush()
            out = attachment_out(attachment)

        self.activity.record(
            ActivityAction.ADD_ATTACHMENT,
            card_id,
            user_id=user_id,
            details={"attachmentId": out.id, "name": out.name},
        )
        return out

    def delete_attachment(self, card_id: str, attachment_id: str, user_id: str) -> Success:
        with self.db.transaction() as session:
            self._card_for(session, card_id, user_id, write=True)
            attachment = session.get(Attachment, attachment_id)
            if attachment is None or attachment.card_id != card_id:
                raise not_found("Attachment", attachment_id)
            name = attachment.name
            session.delete(attachment)

        self.activity.record(
            ActivityAction.DELETE_ATTACHMENT,
            card_id,
            user_id=user_id,
            details={"attachmentId": attachment_id, "name": name},
        )
        return Success()
