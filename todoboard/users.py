from __future__ import annotations

import logging
from typing import Optional

from passlib.context import CryptContext

from .errors import ConflictError, NotFoundError, ValidationError
from .models import USER
from .store import DocumentStore

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

MIN_PASSWORD_LENGTH = 8


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: Optional[str]) -> bool:
    if not password_hash:
        return False
    return pwd_context.verify(password, password_hash)


class UserService:
    """Accounts: local registration and identity-provider logins."""

    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    def get(self, user_id: str) -> dict:
        doc = self.store.find(USER.collection, user_id)
        if doc is None:
            raise NotFoundError(USER.name, user_id)
        return doc

    def register(self, username: str, password: str, display_name: Optional[str] = None) -> dict:
        username = (username or "").strip()
        if not username:
            raise ValidationError("username", "must be a non-empty string")
        if len(password or "") < MIN_PASSWORD_LENGTH:
            raise ValidationError("password", f"must be at least {MIN_PASSWORD_LENGTH} characters")
        doc = {
            "username": username,
            "password_hash": hash_password(password),
            "external_id": None,
            "display_name": (display_name or "").strip() or username,
            USER.children_field: [],
        }
        user = self.store.insert_unique(USER.collection, doc, "username")
        if user is None:
            raise ConflictError(USER.name, None, f"username {username!r} is taken")
        logger.info("registered user %s (%s)", user["id"], username)
        return user

    def authenticate(self, username: str, password: str) -> dict:
        """Unknown user and wrong password raise the same error."""
        matches = self.store.find_by(USER.collection, "username", (username or "").strip(), limit=1)
        if not matches or not verify_password(password, matches[0].get("password_hash")):
            raise NotFoundError(USER.name, username)
        return matches[0]

    def find_or_create_external(self, external_id: str, display_name: str) -> dict:
        external_id = (external_id or "").strip()
        if not external_id:
            raise ValidationError("external_id", "must be a non-empty string")
        matches = self.store.find_by(USER.collection, "external_id", external_id, limit=1)
        if matches:
            return matches[0]
        doc = {
            "username": None,
            "password_hash": None,
            "external_id": external_id,
            "display_name": (display_name or "").strip() or external_id,
            USER.children_field: [],
        }
        user = self.store.insert_unique(USER.collection, doc, "external_id")
        if user is None:
            # lost the race to a concurrent first login
            return self.store.find_by(USER.collection, "external_id", external_id, limit=1)[0]
        logger.info("created user %s for external identity %s", user["id"], external_id)
        return user
