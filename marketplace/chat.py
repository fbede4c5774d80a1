# marketplace/chat.py
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from . import crud
from .db import get_db
from .deps import get_current_profile
from .errors import Forbidden, NotFound, ValidationFailed

log = logging.getLogger(__name__)

router = APIRouter(prefix="/api/chat/conversations", tags=["chat"])

CONVERSATION_STATUSES = ("open", "closed", "pending")
PRIORITIES = ("low", "medium", "high", "urgent")
UNKNOWN_SENDER = {"name": "Unknown User", "email": None, "is_admin": False}


class ConversationIn(BaseModel):
    subject: str
    message: str
    priority: Optional[str] = "medium"


class ConversationPatch(BaseModel):
    status: Optional[str] = None
    priority: Optional[str] = None
    deleted_by_admin: Optional[bool] = None


class MessageIn(BaseModel):
    message: str


class DeleteIn(BaseModel):
    deleteType: Optional[str] = None


def _owner(p):
    if p is None:
        return None
    return {"id": p.id, "name": p.name, "email": p.email, "is_admin": bool(p.is_admin)}


async def _load_conversation(db: AsyncSession, conversation_id: int, profile):
    conv = await crud.get_conversation(db, conversation_id)
    if conv is None:
        raise NotFound("Conversation not found")
    if not profile.is_admin and conv.user_id != profile.id:
        raise Forbidden("Access denied")
    return conv


async def _messages_with_senders(db: AsyncSession, conversation_id: int):
    messages = await crud.list_messages(db, conversation_id)
    senders = await crud.get_profiles_by_ids(db, [m.sender_id for m in messages])
    return [
        {**crud.row_to_dict(m), "sender": _owner(senders.get(m.sender_id)) or UNKNOWN_SENDER}
        for m in messages
    ]


@router.get("")
async def list_conversations(
    archived: bool = False,
    profile=Depends(get_current_profile),
    db: AsyncSession = Depends(get_db),
):
    convs = await crud.list_conversations(db, profile.id, bool(profile.is_admin), archived=archived)
    ids = [c.id for c in convs]
    owners = await crud.get_profiles_by_ids(db, [c.user_id for c in convs])
    unread = await crud.unread_counts(db, ids, profile.id)
    latest = await crud.latest_messages(db, ids)
    data = []
    for c in convs:
        last = latest.get(c.id)
        data.append({
            **crud.row_to_dict(c),
            "user_profile": _owner(owners.get(c.user_id)),
            "unread_count": unread.get(c.id, 0),
            "latest_message": crud.row_to_dict(last) if last else None,
        })
    return {"success": True, "conversations": data}


@router.post("", status_code=201)
async def start_conversation(
    payload: ConversationIn,
    profile=Depends(get_current_profile),
    db: AsyncSession = Depends(get_db),
):
    subject, text = payload.subject.strip(), payload.message.strip()
    if not subject or not text:
        raise ValidationFailed("Subject and message are required")
    priority = payload.priority or "medium"
    if priority not in PRIORITIES:
        raise ValidationFailed(f"Priority must be one of: {', '.join(PRIORITIES)}")
    conv = await crud.insert_conversation(db, {
        "user_id": profile.id, "subject": subject, "priority": priority, "status": "open",
    })
    await crud.insert_message(db, {
        "conversation_id": conv.id, "sender_id": profile.id, "message": text, "is_admin": bool(profile.is_admin),
    })
    await db.commit()
    log.info(f"[CHAT] conversation {conv.id} opened by {profile.email}")
    return {"success": True, "conversation": crud.row_to_dict(conv)}


@router.get("/{conversation_id}")
async def get_conversation(conversation_id: int, profile=Depends(get_current_profile), db: AsyncSession = Depends(get_db)):
    conv = await _load_conversation(db, conversation_id, profile)
    if not profile.is_admin and (conv.deleted_by_user or conv.deleted_by_admin):
        raise NotFound("Conversation not found")
    owner = await crud.get_profile(db, conv.user_id)
    return {
        "success": True,
        "conversation": {
            **crud.row_to_dict(conv),
            "user_profile": _owner(owner),
            "messages": await _messages_with_senders(db, conv.id),
        },
    }


@router.patch("/{conversation_id}")
async def update_conversation(
    conversation_id: int,
    payload: ConversationPatch,
    profile=Depends(get_current_profile),
    db: AsyncSession = Depends(get_db),
):
    if not profile.is_admin:
        raise Forbidden("Admin access required")
    await _load_conversation(db, conversation_id, profile)
    values = payload.model_dump(exclude_none=True)
    if "status" in values and values["status"] not in CONVERSATION_STATUSES:
        raise ValidationFailed(f"Status must be one of: {', '.join(CONVERSATION_STATUSES)}")
    if "priority" in values and values["priority"] not in PRIORITIES:
        raise ValidationFailed(f"Priority must be one of: {', '.join(PRIORITIES)}")
    if values.get("deleted_by_admin"):
        values["deleted_at"] = datetime.utcnow()
    conv = await crud.update_conversation(db, conversation_id, values)
    await db.commit()
    return {"success": True, "conversation": crud.row_to_dict(conv)}


@router.get("/{conversation_id}/messages")
async def list_messages(conversation_id: int, profile=Depends(get_current_profile), db: AsyncSession = Depends(get_db)):
    conv = await _load_conversation(db, conversation_id, profile)
    return {"success": True, "messages": await _messages_with_senders(db, conv.id)}


@router.post("/{conversation_id}/messages", status_code=201)
async def post_message(
    conversation_id: int,
    payload: MessageIn,
    profile=Depends(get_current_profile),
    db: AsyncSession = Depends(get_db),
):
    conv = await _load_conversation(db, conversation_id, profile)
    text = payload.message.strip()
    if not text:
        raise ValidationFailed("Message is required")
    msg = await crud.insert_message(db, {
        "conversation_id": conv.id, "sender_id": profile.id, "message": text, "is_admin": bool(profile.is_admin),
    })
    await crud.update_conversation(db, conv.id, {})
    await db.commit()
    return {"success": True, "message": {**crud.row_to_dict(msg), "sender": _owner(profile)}}


@router.post("/{conversation_id}/read")
async def mark_read(conversation_id: int, profile=Depends(get_current_profile), db: AsyncSession = Depends(get_db)):
    conv = await _load_conversation(db, conversation_id, profile)
    marked = await crud.mark_messages_read(db, conv.id, profile.id)
    await db.commit()
    return {"success": True, "message": "Messages marked as read", "marked": marked}


@router.delete("/{conversation_id}")
async def delete_conversation(
    conversation_id: int,
    payload: Optional[DeleteIn] = None,
    profile=Depends(get_current_profile),
    db: AsyncSession = Depends(get_db),
):
    conv = await _load_conversation(db, conversation_id, profile)
    delete_type = payload.deleteType if payload else None

    if profile.is_admin and delete_type == "permanent":
        await crud.delete_conversation(db, conv.id)
        await db.commit()
        log.info(f"[CHAT] conversation {conv.id} permanently deleted by {profile.email}")
        return {"success": True, "message": "Conversation permanently deleted", "deleteType": "permanent"}

    if profile.is_admin:
        values, message, delete_type = {"deleted_by_admin": True}, "Conversation archived from dashboard", "admin_archive"
    else:
        values, message, delete_type = {"deleted_by_user": True}, "Conversation removed from your view", "user_hide"
    values["deleted_at"] = datetime.utcnow()
    await crud.update_conversation(db, conv.id, values)
    await db.commit()
    log.info(f"[CHAT] conversation {conv.id} {delete_type} by {profile.email}")
    return {"success": True, "message": message, "deleteType": delete_type}
