from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ErrorCode(str, Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    INCONSISTENT_STATE = "INCONSISTENT_STATE"
    PARTIAL_WRITE = "PARTIAL_WRITE"
    IDENTIFIER_MISMATCH = "IDENTIFIER_MISMATCH"
    STORE_ERROR = "STORE_ERROR"
    UNAUTHORIZED = "UNAUTHORIZED"


class ErrorResponse(BaseModel):
    error_code: ErrorCode
    message: str
    detail: Optional[str] = None


class Health(BaseModel):
    status: str = "ok"


class Version(BaseModel):
    version: str


# === Accounts ===


class RegisterIn(BaseModel):
    username: str = Field(min_length=1, max_length=64)
    password: str = Field(min_length=8, max_length=256)
    displayName: Optional[str] = Field(default=None, max_length=128)


class LoginIn(BaseModel):
    username: str
    password: str


class IdentityIn(BaseModel):
    externalId: str = Field(min_length=1, max_length=256)
    displayName: str = Field(default="", max_length=128)


class TokenOut(BaseModel):
    accessToken: str
    tokenType: str = "bearer"
    userId: str


# === Boards, lists, cards ===


class BoardSummary(BaseModel):
    id: str
    title: str
    description: Optional[str] = None
    image: Optional[str] = None


class ListSummary(BaseModel):
    id: str
    title: str


class CardSummary(BaseModel):
    id: str
    title: str
    createdAt: Optional[datetime] = None


class UserOut(BaseModel):
    id: str
    username: Optional[str]
    displayName: str
    boards: list[BoardSummary]


class BoardOut(BaseModel):
    id: str
    userId: str
    title: str
    description: Optional[str]
    image: Optional[str]
    version: int
    lists: list[ListSummary]


class ListOut(BaseModel):
    id: str
    boardId: str
    title: str
    version: int
    cards: list[CardSummary]


class CardOut(BaseModel):
    id: str
    listId: str
    title: str
    createdAt: datetime
    version: int


class BoardsPage(BaseModel):
    boards: list[BoardSummary]
    warnings: list[str] = Field(default_factory=list)


class BoardView(BaseModel):
    board: BoardOut
    warnings: list[str] = Field(default_factory=list)


class ListView(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    list_: ListOut = Field(alias="list")
    warnings: list[str] = Field(default_factory=list)
