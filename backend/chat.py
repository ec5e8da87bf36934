# backend/chat.py
"""
Buyer/farmer chat: conversations keyed by buyer + farmer + crop, ordered
messages, read receipts and live delivery over WebSockets.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect, status
from sqlalchemy import func, or_
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError, IntegrityError

import schemas
import auth_utils
from chat_hub import hub
from database import SessionLocal, get_db
from models import Chat, Crop, Message, Profile

log = logging.getLogger(__name__)

router = APIRouter(tags=["Chat"])


def get_chat_for(db: Session, chat_id: str, profile: Profile) -> Chat:
    chat = db.get(Chat, chat_id)
    if chat is None or not chat.has_participant(profile.id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Chat not found")
    return chat


def _summarize(chat: Chat, viewer: Profile, unread_count: int) -> schemas.ChatSummary:
    return schemas.ChatSummary(
        id=chat.id,
        buyer_id=chat.buyer_id,
        farmer_id=chat.farmer_id,
        crop_id=chat.crop_id,
        created_at=chat.created_at,
        updated_at=chat.updated_at,
        counterpart_role="buyer" if chat.farmer_id == viewer.id else "farmer",
        unread_count=unread_count,
    )


@router.post("/api/chats", response_model=schemas.ChatOut)
async def find_or_create_chat(
    data: schemas.ChatCreate,
    buyer: Profile = Depends(auth_utils.get_member_profile),
    db: Session = Depends(get_db),
):
    """Opens the conversation between the current user and a crop's farmer."""
    if data.farmer_id == buyer.id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="You cannot chat with yourself")

    crop = db.get(Crop, data.crop_id)
    if crop is None or crop.farmer_id != data.farmer_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Crop not found for this farmer")

    existing = (
        db.query(Chat)
        .filter(Chat.buyer_id == buyer.id, Chat.farmer_id == data.farmer_id, Chat.crop_id == data.crop_id)
        .first()
    )
    if existing:
        return existing

    chat = Chat(buyer_id=buyer.id, farmer_id=data.farmer_id, crop_id=data.crop_id)
    try:
        db.add(chat)
        db.commit()
        db.refresh(chat)
    except IntegrityError:
        # Lost a race with a concurrent create for the same triple
        db.rollback()
        chat = (
            db.query(Chat)
            .filter(Chat.buyer_id == buyer.id, Chat.farmer_id == data.farmer_id, Chat.crop_id == data.crop_id)
            .first()
        )
        if chat is None:
            raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Could not open chat.")
    except SQLAlchemyError as e:
        db.rollback()
        log.error(f"Create chat error for buyer {buyer.id}: {e}", exc_info=True)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Could not open chat.")

    log.info(f"Chat {chat.id} opened: buyer {buyer.id} / farmer {chat.farmer_id} / crop {chat.crop_id}")
    return chat


@router.get("/api/chats", response_model=List[schemas.ChatSummary])
async def list_chats(
    profile: Profile = Depends(auth_utils.get_current_profile),
    db: Session = Depends(get_db),
):
    chats = (
        db.query(Chat)
        .filter(or_(Chat.buyer_id == profile.id, Chat.farmer_id == profile.id))
        .order_by(Chat.updated_at.desc())
        .all()
    )
    unread = dict(
        db.query(Message.chat_id, func.count(Message.id))
        .filter(
            Message.chat_id.in_([chat.id for chat in chats]),
            Message.sender_id != profile.id,
            Message.read.is_(False),
        )
        .group_by(Message.chat_id)
        .all()
    ) if chats else {}
    return [_summarize(chat, profile, unread.get(chat.id, 0)) for chat in chats]


@router.get("/api/chats/{chat_id}/messages", response_model=List[schemas.MessageOut])
async def list_messages(
    chat_id: str,
    profile: Profile = Depends(auth_utils.get_current_profile),
    db: Session = Depends(get_db),
):
    chat = get_chat_for(db, chat_id, profile)
    return (
        db.query(Message)
        .filter(Message.chat_id == chat.id)
        .order_by(Message.created_at.asc())
        .all()
    )


@router.post("/api/chats/{chat_id}/messages", response_model=schemas.MessageOut, status_code=status.HTTP_201_CREATED)
async def send_message(
    chat_id: str,
    data: schemas.MessageCreate,
    profile: Profile = Depends(auth_utils.get_current_profile),
    db: Session = Depends(get_db),
):
    chat = get_chat_for(db, chat_id, profile)
    message = Message(chat_id=chat.id, sender_id=profile.id, content=data.content)
    try:
        db.add(message)
        db.flush()
        chat.updated_at = datetime.now(timezone.utc)
        db.commit()
        db.refresh(message)
    except SQLAlchemyError as e:
        db.rollback()
        log.error(f"Send message error in chat {chat_id}: {e}", exc_info=True)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Could not send message.")

    payload = schemas.MessageOut.model_validate(message)
    await hub.publish(chat.id, "INSERT", payload.model_dump(mode="json"))
    return payload


@router.post("/api/chats/{chat_id}/read", response_model=schemas.ReadReceipt)
async def mark_read(
    chat_id: str,
    profile: Profile = Depends(auth_utils.get_current_profile),
    db: Session = Depends(get_db),
):
    """Marks the counterpart's messages in this chat as read."""
    chat = get_chat_for(db, chat_id, profile)
    try:
        updated = (
            db.query(Message)
            .filter(Message.chat_id == chat.id, Message.sender_id != profile.id, Message.read.is_(False))
            .update({Message.read: True}, synchronize_session=False)
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        log.error(f"Mark read error in chat {chat_id}: {e}", exc_info=True)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Could not update messages.")
    return {"updated": updated}


@router.websocket("/ws/chats/{chat_id}")
async def chat_socket(websocket: WebSocket, chat_id: str, token: Optional[str] = None):
    """Live feed of new messages in a chat. Authenticated by ?token= or the auth cookie."""
    token = token or websocket.cookies.get(auth_utils.AUTH_COOKIE_NAME)
    db = SessionLocal()
    try:
        profile = auth_utils.profile_from_token(token, db)
        get_chat_for(db, chat_id, profile)
    except HTTPException as e:
        log.warning(f"WebSocket rejected for chat {chat_id}: {e.detail}")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    finally:
        db.close()

    await hub.subscribe(chat_id, websocket)
    try:
        while True:
            # Clients only listen; inbound frames are ignored
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        hub.unsubscribe(chat_id, websocket)
