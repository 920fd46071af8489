from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class Theme(str, Enum):
    light = "light"
    dark = "dark"


class Priority(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"


class Role(str, Enum):
    admin = "admin"
    writer = "writer"
    reader = "reader"


# === Boards ===


class BoardCreate(BaseModel):
    title: str = Field(min_length=1, max_length=140)
    theme: Theme = Theme.light
    isPublic: bool = False


class BoardOut(BaseModel):
    id: str
    title: str
    theme: Theme
    ownerId: str
    isPublic: bool
    myRole: str
    createdAt: datetime
    updatedAt: datetime


class MemberIn(BaseModel):
    userId: str = Field(min_length=1)
    role: Role


class MemberOut(BaseModel):
    boardId: str
    userId: str
    role: Role


class LabelCreate(BaseModel):
    name: str = Field(min_length=1, max_length=60)
    color: str = Field(min_length=1, max_length=32)


class LabelOut(BaseModel):
    id: str
    boardId: str
    name: str
    color: str


# === Columns ===


class ColumnCreate(BaseModel):
    boardId: str = Field(min_length=1)
    title: str = Field(min_length=1, max_length=80)
    width: int = Field(default=300, ge=1)


class ColumnUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=80)
    width: Optional[int] = Field(default=None, ge=1)
    order: Optional[int] = Field(default=None, ge=0)


class ColumnMove(BaseModel):
    order: int = Field(ge=0)


class ColumnOut(BaseModel):
    id: str
    boardId: str
    title: str
    width: int
    order: int
    createdAt: datetime
    updatedAt: datetime


# === Cards ===


class CardCreate(BaseModel):
    columnId: str = Field(min_length=1)
    title: str = Field(min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=8000)
    priority: Priority = Priority.medium
    dueDate: Optional[datetime] = None
    weight: Optional[float] = None


class CardUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=8000)
    priority: Optional[Priority] = None
    dueDate: Optional[datetime] = None
    weight: Optional[float] = None
    labelIdsToAdd: list[str] = Field(default_factory=list)
    labelIdsToRemove: list[str] = Field(default_factory=list)
    assigneeIdsToAdd: list[str] = Field(default_factory=list)
    assigneeIdsToRemove: list[str] = Field(default_factory=list)


class CardMove(BaseModel):
    targetColumnId: str = Field(min_length=1)
    order: int = Field(ge=0)


class UserSummary(BaseModel):
    id: str
    name: Optional[str] = None
    email: Optional[str] = None


class CardOut(BaseModel):
    id: str
    boardId: str
    columnId: str
    title: str
    description: Optional[str]
    priority: Priority
    dueDate: Optional[datetime]
    weight: Optional[float]
    order: int
    labels: list[LabelOut] = []
    assignees: list[UserSummary] = []
    createdAt: datetime
    updatedAt: datetime


class BoardView(BaseModel):
    board: BoardOut
    columns: list[ColumnOut]
    cards: list[CardOut]


# === Card sub-resources ===


class CommentIn(BaseModel):
    content: str = Field(min_length=1, max_length=8000)


class CommentOut(BaseModel):
    id: str
    cardId: str
    userId: str
    content: str
    createdAt: datetime
    updatedAt: datetime


class AttachmentIn(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    url: str = Field(min_length=1)
    type: str = Field(min_length=1, max_length=128)
    size: int = Field(ge=0)


class AttachmentOut(BaseModel):
    id: str
    cardId: str
    name: str
    url: str
    type: str
    size: int
    createdAt: datetime


class ActivityOut(BaseModel):
    id: str
    actionType: str
    details: Any = None
    cardId: str
    userId: Optional[str]
    createdAt: datetime


# === Envelopes ===


class Success(BaseModel):
    success: bool = True
    message: Optional[str] = None


class TemporaryAck(BaseModel):
    """Synthetic answer to a mutation against a not yet persisted entity."""

    id: str
    success: bool = True
    message: str
