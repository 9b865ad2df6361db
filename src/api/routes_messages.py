from typing import Optional

from fastapi import APIRouter, Depends, Response, status

from api.auth import get_current_caller, get_state
from api.schemas import ConversationIn
from db.models import Caller
from utils.state import AppState

router = APIRouter(prefix="/api/messages", tags=["messages"])


@router.get("/conversations")
async def list_conversations(
    caller: Caller = Depends(get_current_caller),
    state: AppState = Depends(get_state),
):
    views = await state.messaging.list_conversations(caller.id)
    return {"conversations": [v.to_dict() for v in views]}


@router.post("/conversations")
async def start_conversation(
    payload: ConversationIn,
    response: Response,
    caller: Caller = Depends(get_current_caller),
    state: AppState = Depends(get_state),
):
    conversation, created = await state.messaging.get_or_create_conversation(
        caller.id, payload.participant_id
    )
    if created:
        response.status_code = status.HTTP_201_CREATED
    view = await state.messaging.view_conversation(conversation, caller.id)
    return {"conversation": view.to_dict(), "existing": not created}


@router.get("/conversations/{conversation_id}")
async def list_messages(
    conversation_id: str,
    caller: Caller = Depends(get_current_caller),
    state: AppState = Depends(get_state),
):
    messages = await state.messaging.list_messages(conversation_id, caller.id)
    senders = await state.messaging.profiles(m.sender_id for m in messages)
    return {
        "messages": [
            {**m.to_dict(), "senderProfile": senders[m.sender_id]} for m in messages
        ]
    }


@router.patch("/conversations/{conversation_id}/read")
async def mark_read(
    conversation_id: str,
    caller: Caller = Depends(get_current_caller),
    state: AppState = Depends(get_state),
):
    updated = await state.messaging.mark_read(conversation_id, caller.id)
    return {"message": "Messages marked as read", "updated": updated}


@router.get("/unread-count")
async def unread_count(
    caller: Caller = Depends(get_current_caller),
    state: AppState = Depends(get_state),
):
    return {"unreadCount": await state.messaging.total_unread(caller.id)}


@router.get("/users/search")
async def search_users(
    q: Optional[str] = None,
    caller: Caller = Depends(get_current_caller),
    state: AppState = Depends(get_state),
):
    users = await state.messaging.search_users(caller.id, q)
    return {"users": [u.summary() | {"email": u.email} for u in users]}


@router.get("/online")
async def online_users(
    caller: Caller = Depends(get_current_caller),
    state: AppState = Depends(get_state),
):
    return {"userIds": sorted(state.messaging.online_users())}
