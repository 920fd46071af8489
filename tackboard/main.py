from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Optional, Union

from fastapi import Depends, FastAPI, Header, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .activity import ActivityLogHook
from .auth import get_current_user, user_from_header
from .db import Database
from .errors import DomainError, ErrorKind
from .ids import is_temporary_id
from .models import (
    ActivityOut,
    AttachmentIn,
    AttachmentOut,
    BoardCreate,
    BoardOut,
    BoardView,
    CardCreate,
    CardMove,
    CardOut,
    CardUpdate,
    ColumnCreate,
    ColumnMove,
    ColumnOut,
    ColumnUpdate,
    CommentIn,
    CommentOut,
    LabelCreate,
    LabelOut,
    MemberIn,
    MemberOut,
    Success,
    TemporaryAck,
)
from .moves import MoveService
from .retry import RetryPolicy
from .settings import Settings
from .storage import BoardStore

_logger = logging.getLogger(__name__)

VERSION = "0.1.0"


# === Dependencies ===


def get_store(request: Request) -> BoardStore:
    return request.app.state.store


def get_moves(request: Request) -> MoveService:
    return request.app.state.moves


def temporary_ack(entity_id: str, message: str) -> TemporaryAck:
    _logger.debug("Short-circuiting request against temporary id %s", entity_id)
    return TemporaryAck(id=entity_id, message=message)


# === Error handlers ===


async def domain_error_handler(_request: Request, exc: DomainError) -> JSONResponse:
    headers = None
    if exc.kind is ErrorKind.STORAGE_CONFLICT:
        headers = {"Retry-After": "1"}
    return JSONResponse(status_code=exc.status_code, content=exc.to_body(), headers=headers)


async def validation_error_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={
            "error": "Validation failed",
            "code": ErrorKind.VALIDATION.value,
            "issues": jsonable_encoder(exc.errors()),
        },
    )


async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    _logger.exception("Unexpected error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"error": str(exc) or "Internal Server Error", "code": "INTERNAL_ERROR"},
    )


# === Application ===


def create_app(
    settings: Settings | None = None,
    *,
    database: Database | None = None,
    retry_policy: RetryPolicy | None = None,
) -> FastAPI:
    settings = settings or Settings()
    database = database or Database(settings)
    retry_policy = retry_policy or RetryPolicy(
        max_attempts=settings.MOVE_MAX_ATTEMPTS,
        base_delay=settings.MOVE_RETRY_BASE_DELAY,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        # NOTE: a database handed over already connected is owned by the caller
        owns_connection = not database.is_connected
        if owns_connection:
            database.connect()
        try:
            yield
        finally:
            if owns_connection:
                database.dispose()

    app = FastAPI(title="Tackboard API", version=VERSION, lifespan=lifespan)

    activity = ActivityLogHook(database, settings.ACTIVITY_DETAILS_MAX_BYTES)
    app.state.settings = settings
    app.state.db = database
    app.state.store = BoardStore(database, activity)
    app.state.moves = MoveService(database, retry_policy, activity)

    app.add_exception_handler(DomainError, domain_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unexpected_error_handler)

    _register_routes(app)
    return app


def _register_routes(app: FastAPI) -> None:  # noqa: C901
    # === Health & metadata ===

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok"}

    @app.get("/version")
    def version() -> dict:
        return {"version": VERSION}

    # === Board endpoints ===

    @app.post("/boards", response_model=BoardOut, status_code=201)
    def create_board(
        payload: BoardCreate,
        user: str = Depends(get_current_user),
        store: BoardStore = Depends(get_store),
    ):
        return store.create_board(user, payload)

    @app.get("/boards/{board_id}", response_model=BoardView)
    def get_board(
        board_id: str,
        user: str = Depends(get_current_user),
        store: BoardStore = Depends(get_store),
    ):
        return store.get_board_view(board_id, user)

    @app.post("/boards/{board_id}/members", response_model=MemberOut, status_code=201)
    def add_member(
        board_id: str,
        payload: MemberIn,
        user: str = Depends(get_current_user),
        store: BoardStore = Depends(get_store),
    ):
        return store.add_member(board_id, user, payload)

    @app.post("/boards/{board_id}/labels", response_model=LabelOut, status_code=201)
    def create_label(
        board_id: str,
        payload: LabelCreate,
        user: str = Depends(get_current_user),
        store: BoardStore = Depends(get_store),
    ):
        return store.create_label(board_id, user, payload)

    # === Column endpoints ===

    @app.post("/columns", response_model=ColumnOut, status_code=201)
    def create_column(
        payload: ColumnCreate,
        user: str = Depends(get_current_user),
        store: BoardStore = Depends(get_store),
    ):
        return store.create_column(user, payload)

    @app.patch("/columns/{column_id}", response_model=Union[ColumnOut, TemporaryAck])
    def update_column(
        column_id: str,
        payload: Optional[ColumnUpdate] = None,
        authorization: Optional[str] = Header(default=None),
        store: BoardStore = Depends(get_store),
        moves: MoveService = Depends(get_moves),
    ):
        if is_temporary_id(column_id):
            return temporary_ack(
                column_id, "Temporary column update ignored - will be processed when column is persisted"
            )
        user = user_from_header(authorization)
        payload = payload or ColumnUpdate()
        if payload.order is None:
            return store.update_column(column_id, user, payload)
        # field changes and the move share one transaction
        moves.move_column(column_id, payload.order, user, title=payload.title, width=payload.width)
        return store.get_column(column_id, user)

    @app.post("/columns/{column_id}/move", response_model=Success)
    def move_column(
        column_id: str,
        payload: ColumnMove,
        authorization: Optional[str] = Header(default=None),
        moves: MoveService = Depends(get_moves),
    ):
        if is_temporary_id(column_id):
            return Success(message="Temporary column move ignored")
        moves.move_column(column_id, payload.order, user_from_header(authorization))
        return Success()

    @app.delete("/columns/{column_id}", response_model=Success)
    def delete_column(
        column_id: str,
        authorization: Optional[str] = Header(default=None),
        store: BoardStore = Depends(get_store),
    ):
        if is_temporary_id(column_id):
            return Success(message="Temporary column delete ignored - handled by optimistic updates")
        store.delete_column(column_id, user_from_header(authorization))
        return Success()

    # === Card endpoints ===

    @app.post("/cards", response_model=CardOut, status_code=201)
    def create_card(
        payload: CardCreate,
        user: str = Depends(get_current_user),
        store: BoardStore = Depends(get_store),
    ):
        return store.create_card(user, payload)

    @app.get("/cards/{card_id}", response_model=CardOut)
    def get_card(
        card_id: str,
        user: str = Depends(get_current_user),
        store: BoardStore = Depends(get_store),
    ):
        return store.get_card(card_id, user)

    @app.patch("/cards/{card_id}", response_model=Union[CardOut, TemporaryAck])
    def update_card(
        card_id: str,
        payload: Optional[CardUpdate] = None,
        authorization: Optional[str] = Header(default=None),
        store: BoardStore = Depends(get_store),
    ):
        if is_temporary_id(card_id):
            return temporary_ack(
                card_id, "Temporary card update ignored - will be processed when card is persisted"
            )
        return store.update_card(card_id, user_from_header(authorization), payload or CardUpdate())

    @app.delete("/cards/{card_id}", response_model=Success)
    def delete_card(
        card_id: str,
        authorization: Optional[str] = Header(default=None),
        store: BoardStore = Depends(get_store),
    ):
        if is_temporary_id(card_id):
            return Success(message="Temporary card delete ignored - handled by optimistic updates")
        return store.delete_card(card_id, user_from_header(authorization))

    @app.post("/cards/{card_id}/move", response_model=Success)
    def move_card(
        card_id: str,
        payload: CardMove,
        authorization: Optional[str] = Header(default=None),
        moves: MoveService = Depends(get_moves),
    ):
        if is_temporary_id(card_id):
            return Success(message="Temporary card move ignored")
        moves.move_card(card_id, payload.targetColumnId, payload.order, user_from_header(authorization))
        return Success()

    @app.get("/cards/{card_id}/activity", response_model=list[ActivityOut])
    def list_activity(
        card_id: str,
        user: str = Depends(get_current_user),
        store: BoardStore = Depends(get_store),
    ):
        return store.list_activity(card_id, user)

    # === Comments ===

    @app.post("/cards/{card_id}/comments", response_model=CommentOut, status_code=201)
    def add_comment(
        card_id: str,
        payload: CommentIn,
        user: str = Depends(get_current_user),
        store: BoardStore = Depends(get_store),
    ):
        return store.add_comment(card_id, user, payload)

    @app.patch("/cards/{card_id}/comments/{comment_id}", response_model=CommentOut)
    def update_comment(
        card_id: str,
        comment_id: str,
        payload: CommentIn,
        user: str = Depends(get_current_user),
        store: BoardStore = Depends(get_store),
    ):
        return store.update_comment(card_id, comment_id, user, payload)

    @app.delete("/cards/{card_id}/comments/{comment_id}", response_model=Success)
    def delete_comment(
        card_id: str,
        comment_id: str,
        user: str = Depends(get_current_user),
        store: BoardStore = Depends(get_store),
    ):
        return store.delete_comment(card_id, comment_id, user)

    # === Attachments ===

    @app.post("/cards/{card_id}/attachments", response_model=AttachmentOut, status_code=201)
    def add_attachment(
        card_id: str,
        payload: AttachmentIn,
        user: str = Depends(get_current_user),
        store: BoardStore = Depends(get_store),
    ):
        return store.add_attachment(card_id, user, payload)

    @app.delete("/cards/{card_id}/attachments/{attachment_id}", response_model=Success)
    def delete_attachment(
        card_id: str,
        attachment_id: str,
        user: str = Depends(get_current_user),
        store: BoardStore = Depends(get_store),
    ):
        return store.delete_attachment(card_id, attachment_id, user)
