"""
Chat threads between a requester and a pasabuyer about one request.

The thread id is derived from the (requester, pasabuyer, request) triple with a
fixed role order, so both participants compute the same key and creation can
be a create-if-absent on that key.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List

from errors import NotFound, NotPermitted, ValidationError, returns_result
from identity import UserDirectory
from lifecycle import PASABUYER, REQUESTER
from schemas import Chat, Message, RequestSummary
from status import ACCEPTED, status_of

logger = logging.getLogger(__name__)

CHAT_COLLECTION = "chat"
MESSAGE_COLLECTION = "message"

SEPARATOR = "_"
SYSTEM_SENDER = "system"


def thread_id(requester_id: str, pasabuyer_id: str, request_id: str) -> str:
    """``{pasabuyer_id}_{requester_id}_{request_id}``, whoever computes it."""
    parts = {"pasabuyer_id": pasabuyer_id, "requester_id": requester_id, "request_id": request_id}
    errors = {}
    for name, value in parts.items():
        if not value or not str(value).strip():
            errors[name] = "required"
        elif SEPARATOR in str(value):
            errors[name] = f"must not contain '{SEPARATOR}'"
    if errors:
        raise ValidationError("Cannot derive chat id", errors)
    return SEPARATOR.join([str(pasabuyer_id), str(requester_id), str(request_id)])


def _now():
    return datetime.now(timezone.utc)


class ChatService:
    def __init__(self, store, users: UserDirectory):
        self.store = store
        self.users = users

    def _load(self, chat_id: str) -> Dict[str, Any]:
        doc = self.store.get(CHAT_COLLECTION, chat_id)
        if doc is None:
            raise NotFound(f"Chat {chat_id} not found")
        return doc

    @returns_result
    def ensure_thread(self, request: Dict[str, Any], requester_id: str, pasabuyer_id: str) -> Dict[str, Any]:
        """
        Return the thread for the triple, creating it on first use.

        Only the caller whose insert wins writes the greeting, so racing
        callers converge on one document with one greeting.
        """
        owner = (request.get("requester") or {}).get("user_id")
        if owner != requester_id:
            raise ValidationError("Requester does not own this request", {"requester_id": "not the owner"})
        if requester_id == pasabuyer_id:
            raise ValidationError("Cannot open a chat with yourself", {"pasabuyer_id": "same as requester"})
        chat_id = thread_id(requester_id, pasabuyer_id, request["id"])

        existing = self.store.get(CHAT_COLLECTION, chat_id)
        if existing is not None:
            return {"id": chat_id, "created": False}

        requester = self.users.get_profile(requester_id, REQUESTER)
        pasabuyer = self.users.get_profile(pasabuyer_id, PASABUYER)
        title = request.get("title") or "Item"
        greeting = f"Chat started for {title}. Say hello!"
        now = _now()
        thread = Chat(
            participants=[pasabuyer_id, requester_id],
            participant_names={
                pasabuyer_id: pasabuyer["display_name"],
                requester_id: requester["display_name"],
            },
            participant_avatars={
                pasabuyer_id: pasabuyer["photo_url"],
                requester_id: requester["photo_url"],
            },
            request_id=request["id"],
            requester_id=requester_id,
            pasabuyer_id=pasabuyer_id,
            request_details=RequestSummary(
                title=title,
                store=request.get("store_location") or "Store",
                delivery_location=request.get("delivery_location") or "Location",
                quantity=request.get("quantity") or 1,
                budget=request.get("price") or 0,
                status=status_of(request) or ACCEPTED,
            ),
            last_message=greeting,
            last_updated=now,
        )
        if not self.store.create_if_absent(CHAT_COLLECTION, chat_id, thread):
            logger.info("Chat %s created concurrently, reusing it", chat_id)
            return {"id": chat_id, "created": False}

        self.store.create(MESSAGE_COLLECTION, Message(
            chat_id=chat_id, sender_id=SYSTEM_SENDER, text=greeting, timestamp=now,
        ))
        logger.info("Chat %s created", chat_id)
        return {"id": chat_id, "created": True}

    @returns_result
    def append_message(self, chat_id: str, sender_id: str, text: str) -> Dict[str, Any]:
        text = (text or "").strip()
        if not text:
            raise ValidationError("Message is empty", {"text": "required"})
        chat = self._load(chat_id)
        if sender_id not in chat.get("participants", []):
            raise NotPermitted("Sender is not part of this chat")
        message = Message(chat_id=chat_id, sender_id=sender_id, text=text, timestamp=_now())
        message_id = self.store.create(MESSAGE_COLLECTION, message)
        self.store.update(CHAT_COLLECTION, chat_id, {"last_message": text, "last_updated": message.timestamp})
        return {"id": message_id, **message.model_dump()}

    @returns_result
    def mark_read(self, chat_id: str, reader_id: str) -> int:
        chat = self._load(chat_id)
        if reader_id not in chat.get("participants", []):
            raise NotPermitted("Reader is not part of this chat")
        return self.store.update_many(
            MESSAGE_COLLECTION,
            {"chat_id": chat_id, "sender_id": {"$ne": reader_id}, "read": False},
            {"read": True},
        )

    def _messages(self, chat_id: str) -> List[Dict[str, Any]]:
        return self.store.query(MESSAGE_COLLECTION, {"chat_id": chat_id}, sort=[("timestamp", 1), ("created_at", 1)])

    @returns_result
    def get_thread(self, chat_id: str) -> Dict[str, Any]:
        chat = self._load(chat_id)
        return {**chat, "messages": self._messages(chat_id)}

    @returns_result
    def list_threads(self, user_id: str) -> List[Dict[str, Any]]:
        chats = self.store.query(CHAT_COLLECTION, {"participants": user_id}, sort=[("last_updated", -1)])
        for chat in chats:
            unread = self.store.query(
                MESSAGE_COLLECTION,
                {"chat_id": chat["id"], "sender_id": {"$ne": user_id}, "read": False},
            )
            chat["unread"] = len(unread)
        return chats
