from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple, Union

from pydantic import BaseModel, Field

from .errors import ValidationError


# === Entity shapes ===


@dataclass(frozen=True)
class EntityKind:
    """Where one entity type lives and how it hangs off its parent.

    ``fields`` are the attributes mirrored into the embedded copy;
    ``embed_field`` is the array on the parent document holding those copies.
    """

    name: str
    collection: str
    fields: Tuple[str, ...]
    parent: Optional[str] = None
    parent_collection: Optional[str] = None
    parent_field: Optional[str] = None
    embed_field: Optional[str] = None
    child: Optional[str] = None
    children_field: Optional[str] = None


USER = EntityKind(
    name="user",
    collection="users",
    fields=("username", "display_name"),
    child="board",
    children_field="boards",
)
BOARD = EntityKind(
    name="board",
    collection="boards",
    fields=("title", "description", "image"),
    parent="user",
    parent_collection="users",
    parent_field="user_id",
    embed_field="boards",
    child="list",
    children_field="lists",
)
LIST = EntityKind(
    name="list",
    collection="lists",
    fields=("title",),
    parent="board",
    parent_collection="boards",
    parent_field="board_id",
    embed_field="lists",
    child="card",
    children_field="cards",
)
CARD = EntityKind(
    name="card",
    collection="cards",
    fields=("title", "created_at"),
    parent="list",
    parent_collection="lists",
    parent_field="list_id",
    embed_field="cards",
)

KINDS: Dict[str, EntityKind] = {k.name: k for k in (USER, BOARD, LIST, CARD)}


def embedded_copy(kind: EntityKind, doc: Dict[str, Any]) -> Dict[str, Any]:
    copy = {"id": doc["id"]}
    for name in kind.fields:
        copy[name] = doc.get(name)
    return copy


def same_fields(kind: EntityKind, left: Dict[str, Any], right: Dict[str, Any]) -> bool:
    return all(left.get(name) == right.get(name) for name in kind.fields)


# === Mutation structs ===


class BoardCreate(BaseModel):
    title: str = Field(min_length=1, max_length=140)
    description: Optional[str] = Field(default=None, max_length=2000)
    image: Optional[str] = Field(default=None, max_length=2048)


class BoardUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=140)
    description: Optional[str] = Field(default=None, max_length=2000)
    image: Optional[str] = Field(default=None, max_length=2048)
    expected_version: Optional[int] = None


class ListCreate(BaseModel):
    title: str = Field(min_length=1, max_length=80)


class ListUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=80)
    expected_version: Optional[int] = None


class CardCreate(BaseModel):
    title: str = Field(min_length=1, max_length=200)


class CardUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    expected_version: Optional[int] = None


CreatePayload = Union[BoardCreate, ListCreate, CardCreate]
UpdatePayload = Union[BoardUpdate, ListUpdate, CardUpdate]

_CREATE_TYPES = {"board": BoardCreate, "list": ListCreate, "card": CardCreate}
_UPDATE_TYPES = {"board": BoardUpdate, "list": ListUpdate, "card": CardUpdate}
_OPTIONAL_TEXT = {"description", "image"}


def clean_title(value: Optional[str]) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("title", "must be a non-empty string")
    return value.strip()


def _clean_optional(name: str, value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(name, "must be a string")
    return value.strip() or None


def creation_fields(kind: EntityKind, payload: CreatePayload) -> Dict[str, Any]:
    if not isinstance(payload, _CREATE_TYPES[kind.name]):
        raise ValidationError(kind.name, f"expected {_CREATE_TYPES[kind.name].__name__}")
    values: Dict[str, Any] = {"title": clean_title(payload.title)}
    for name in _OPTIONAL_TEXT:
        if hasattr(payload, name):
            values[name] = _clean_optional(name, getattr(payload, name))
    return values


def update_fields(kind: EntityKind, payload: UpdatePayload) -> Dict[str, Any]:
    """Only the fields the caller actually set; an explicit None clears optional text."""
    if not isinstance(payload, _UPDATE_TYPES[kind.name]):
        raise ValidationError(kind.name, f"expected {_UPDATE_TYPES[kind.name].__name__}")
    given = payload.model_dump(exclude_unset=True)
    given.pop("expected_version", None)
    values: Dict[str, Any] = {}
    for name, value in given.items():
        if name == "title":
            values["title"] = clean_title(value)
        else:
            values[name] = _clean_optional(name, value)
    if not values:
        raise ValidationError(kind.name, "no fields to update")
    return values
