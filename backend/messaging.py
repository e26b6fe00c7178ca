"""
Buyer/seller chat threads.

A chat document's id is derived from the sorted pair of participant ids, so
whichever side opens the conversation lands on the same thread. Creation is
an existence check followed by an upsert; concurrent opens by both parties
converge on one document.
"""
import logging
from typing import List, Optional

from fastapi import HTTPException
from fastapi.encoders import jsonable_encoder

import database
from realtime import broadcaster, chat_topic, user_topic
from schemas import Chat, Message
from security import opposite_role

logger = logging.getLogger(__name__)

_OLDEST_FIRST = [("created_at", 1), ("_id", 1)]
_NEWEST_FIRST = [("created_at", -1), ("_id", -1)]


def derive_chat_id(user_a: str, user_b: str) -> str:
    first, second = sorted([user_a, user_b])
    return f"chat_{first}_{second}"


def other_participant(chat: dict, user_id: str) -> Optional[str]:
    return next((p for p in chat.get("participants", []) if p != user_id), None)


def publish(topic: str, event: dict) -> None:
    broadcaster.publish(topic, jsonable_encoder(event))


def last_message(chat_id: str) -> Optional[dict]:
    docs = database.get_documents("message", {"chat_id": chat_id}, limit=1, sort=_NEWEST_FIRST)
    return database.serialize(docs[0]) if docs else None


def unread_count(chat_id: str, user_id: str) -> int:
    return database.collection("message").count_documents(
        {"chat_id": chat_id, "receiver_id": user_id, "read": False}
    )


def unread_total(user_id: str) -> int:
    return database.collection("message").count_documents({"receiver_id": user_id, "read": False})


def chat_summary(chat: dict, user: dict, other: dict) -> dict:
    chat_id = chat["_id"]
    return {
        "id": chat_id,
        "chat_id": chat_id,
        "participants": chat.get("participants", []),
        "created_at": chat.get("created_at"),
        "other_user": {
            "id": str(other["_id"]),
            "name": other.get("username", ""),
            "type": opposite_role(user["role"]),
        },
        "last_message": last_message(chat_id),
        "unread_count": unread_count(chat_id, user["id"]),
    }


def open_chat(user: dict, other_user_id: str) -> dict:
    if other_user_id == user["id"]:
        raise HTTPException(400, "Cannot start a chat with yourself")
    other = database.get_document(opposite_role(user["role"]), other_user_id)
    if not other:
        raise HTTPException(404, "User not found")

    chat_id = derive_chat_id(user["id"], other_user_id)
    chats = database.collection("chat")
    chat = chats.find_one({"_id": chat_id})
    if chat is None:
        chats.update_one(
            {"_id": chat_id},
            {"$setOnInsert": {
                **Chat(participants=sorted([user["id"], other_user_id])).model_dump(),
                "created_at": database.utcnow(),
            }},
            upsert=True,
        )
        logger.info("Created chat %s", chat_id)
        chat = chats.find_one({"_id": chat_id})
    return chat_summary(chat, user, other)


def list_chats(user: dict) -> List[dict]:
    """Chats the user takes part in, most recent conversation first."""
    other_role = opposite_role(user["role"])
    summaries = []
    for chat in database.get_documents("chat", {"participants": user["id"]}):
        other_id = other_participant(chat, user["id"])
        if not other_id:
            continue
        other = database.get_document(other_role, other_id)
        if not other or not other.get("username"):
            logger.debug("Skipping chat %s: counterpart %s not found", chat["_id"], other_id)
            continue
        summaries.append(chat_summary(chat, user, other))

    with_messages = [s for s in summaries if s["last_message"]]
    without = [s for s in summaries if not s["last_message"]]
    with_messages.sort(key=lambda s: (s["last_message"]["created_at"], s["last_message"]["id"]),
                       reverse=True)
    return with_messages + without


def get_chat_for(chat_id: str, user: dict) -> dict:
    chat = database.collection("chat").find_one({"_id": chat_id})
    if not chat:
        raise HTTPException(404, "Chat not found")
    if user["id"] not in chat.get("participants", []):
        raise HTTPException(403, "Not a participant of this chat")
    return chat


def read_thread(chat_id: str, user: dict) -> List[dict]:
    """Messages oldest first; those addressed to the caller are marked read."""
    get_chat_for(chat_id, user)
    docs = database.get_documents("message", {"chat_id": chat_id}, sort=_OLDEST_FIRST)
    # only what the caller is shown gets marked read
    unread_ids = [d["_id"] for d in docs if d.get("receiver_id") == user["id"] and not d.get("read")]
    if unread_ids:
        database.collection("message").update_many(
            {"_id": {"$in": unread_ids}}, {"$set": {"read": True}}
        )
        for d in docs:
            if d["_id"] in unread_ids:
                d["read"] = True
        publish(chat_topic(chat_id), {"type": "read", "chat_id": chat_id, "reader_id": user["id"]})
    return [database.serialize(d) for d in docs]


def send_message(chat_id: str, user: dict, content: str) -> dict:
    content = (content or "").strip()
    if not content:
        raise HTTPException(400, "Message cannot be empty")
    chat = get_chat_for(chat_id, user)
    receiver_id = other_participant(chat, user["id"])
    if not receiver_id:
        raise HTTPException(400, "Chat has no other participant")

    message = Message(chat_id=chat_id, sender_id=user["id"], receiver_id=receiver_id, content=content)
    message_id = database.create_document("message", message)
    saved = database.serialize(database.get_document("message", message_id))

    event = {"type": "message", "chat_id": chat_id, "message": saved}
    publish(chat_topic(chat_id), event)
    publish(user_topic(receiver_id), event)
    return saved
