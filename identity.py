"""
User profiles.

Credentials live with the external auth provider; this module only stores and
reads the public profile (display name, email, photo) keyed by user id.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict

from errors import NotFound, ValidationError, returns_result
from schemas import RegisterUserPayload, User

logger = logging.getLogger(__name__)

USER_COLLECTION = "user"

DEFAULT_AVATARS = {
    "pasabuyer": "https://cdn-icons-png.flaticon.com/512/3135/3135715.png",
    "requester": "https://cdn-icons-png.flaticon.com/512/706/706830.png",
}


class UserDirectory:
    def __init__(self, store):
        self.store = store

    @returns_result
    def register_user(self, req: RegisterUserPayload) -> Dict[str, Any]:
        if not req.user_id.strip():
            raise ValidationError("Missing user id", {"user_id": "required"})
        # naive uniqueness check on email
        existing = self.store.query(USER_COLLECTION, {"email": req.email}, limit=1)
        if existing and existing[0]["id"] != req.user_id:
            raise ValidationError("Email already registered", {"email": "already registered"})
        data = User(**req.model_dump(exclude={"user_id"})).model_dump()
        data["last_login"] = datetime.now(timezone.utc)
        self.store.update(USER_COLLECTION, req.user_id, data, upsert=True)
        logger.info("Registered user %s", req.user_id)
        return self.store.get(USER_COLLECTION, req.user_id)

    @returns_result
    def get_user(self, user_id: str) -> Dict[str, Any]:
        doc = self.store.get(USER_COLLECTION, user_id)
        if doc is None:
            raise NotFound(f"User {user_id} not found")
        return doc

    def get_profile(self, user_id: str, role: str) -> Dict[str, Any]:
        """Profile with role defaults filled in; unknown users get a placeholder."""
        doc = self.store.get(USER_COLLECTION, user_id) or {}
        return {
            "user_id": user_id,
            "display_name": doc.get("display_name") or role.capitalize(),
            "email": doc.get("email"),
            "photo_url": doc.get("photo_url") or DEFAULT_AVATARS[role],
        }
