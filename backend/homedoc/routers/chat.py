import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from sse_starlette.sse import EventSourceResponse

from homedoc.dependencies import (
    get_chat_service,
    get_chat_store,
    get_current_user,
    get_project_store,
)
from homedoc.models.chat import (
    ChatSettings,
    ChatSettingsUpdate,
    ChatTurnResponse,
    Conversation,
    ConversationCreateRequest,
    ConversationUpdateRequest,
    Message,
    MessageCreateRequest,
)
from homedoc.services.chat import ChatService
from homedoc.services.chat_store import ChatStore
from homedoc.services.project_store import ProjectStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["chat"])


def _owned_conversation(conversation_id: str, user_id: str, chat_store: ChatStore) -> Conversation:
    conversation = chat_store.get_conversation(conversation_id)
    if conversation is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    if conversation.user_id != user_id:
        logger.info("User %s denied access to conversation %s", user_id, conversation_id)
        raise HTTPException(status_code=403, detail="Access denied")
    return conversation


def _owned_project(project_id: str, user_id: str, project_store: ProjectStore) -> dict:
    project = project_store.get_project(project_id)
    if project is None:
        raise HTTPException(status_code=404, detail="Project not found")
    if project.get("user_id") != user_id:
        logger.info("User %s denied access to project %s", user_id, project_id)
        raise HTTPException(status_code=403, detail="Access denied")
    return project


# ------------------------------------------------------------------
# Conversations
# ------------------------------------------------------------------


@router.get("/projects/{project_id}/conversations", response_model=list[Conversation])
async def list_conversations(
    project_id: str,
    include_archived: bool = Query(False),
    user_id: str = Depends(get_current_user),
    chat_store: ChatStore = Depends(get_chat_store),
    project_store: ProjectStore = Depends(get_project_store),
):
    _owned_project(project_id, user_id, project_store)
    return chat_store.list_conversations(project_id, user_id, include_archived=include_archived)


@router.post("/projects/{project_id}/conversations", response_model=Conversation, status_code=201)
async def create_conversation(
    project_id: str,
    request: ConversationCreateRequest,
    user_id: str = Depends(get_current_user),
    chat_service: ChatService = Depends(get_chat_service),
    project_store: ProjectStore = Depends(get_project_store),
):
    _owned_project(project_id, user_id, project_store)
    return chat_service.create_conversation(project_id, user_id, request.title)


@router.patch("/conversations/{conversation_id}", response_model=Conversation)
async def update_conversation(
    conversation_id: str,
    request: ConversationUpdateRequest,
    user_id: str = Depends(get_current_user),
    chat_store: ChatStore = Depends(get_chat_store),
):
    """Rename or (un)archive a conversation."""
    conversation = _owned_conversation(conversation_id, user_id, chat_store)
    updates = request.model_dump(exclude_none=True)
    if not updates:
        return conversation
    return chat_store.update_conversation(conversation_id, updates)


@router.delete("/conversations/{conversation_id}", status_code=204)
async def delete_conversation(
    conversation_id: str,
    user_id: str = Depends(get_current_user),
    chat_store: ChatStore = Depends(get_chat_store),
):
    _owned_conversation(conversation_id, user_id, chat_store)
    chat_store.delete_conversation(conversation_id)
    return Response(status_code=204)


# ------------------------------------------------------------------
# Messages
# ------------------------------------------------------------------


@router.get("/conversations/{conversation_id}/messages", response_model=list[Message])
async def list_messages(
    conversation_id: str,
    response: Response,
    user_id: str = Depends(get_current_user),
    chat_store: ChatStore = Depends(get_chat_store),
):
    _owned_conversation(conversation_id, user_id, chat_store)
    response.headers["Cache-Control"] = "no-cache, no-store, must-revalidate"
    return chat_store.get_messages(conversation_id)


@router.post("/conversations/{conversation_id}/messages", response_model=ChatTurnResponse)
async def send_message(
    conversation_id: str,
    request: MessageCreateRequest,
    user_id: str = Depends(get_current_user),
    chat_store: ChatStore = Depends(get_chat_store),
    chat_service: ChatService = Depends(get_chat_service),
):
    conversation = _owned_conversation(conversation_id, user_id, chat_store)
    return await chat_service.process_message(
        conversation_id, request.content, user_id, conversation.project_id
    )


@router.post("/conversations/{conversation_id}/messages/stream")
async def stream_message(
    conversation_id: str,
    request: MessageCreateRequest,
    user_id: str = Depends(get_current_user),
    chat_store: ChatStore = Depends(get_chat_store),
    chat_service: ChatService = Depends(get_chat_service),
):
    conversation = _owned_conversation(conversation_id, user_id, chat_store)

    async def event_generator():
        async for chunk in chat_service.stream_message(
            conversation_id, request.content, user_id, conversation.project_id
        ):
            if "token" in chunk:
                yield {"data": json.dumps({"token": chunk["token"]})}
            elif chunk.get("done"):
                yield {"event": "done", "data": json.dumps(chunk)}
            else:
                yield {"event": "error", "data": json.dumps(chunk)}

    return EventSourceResponse(event_generator())


# ------------------------------------------------------------------
# Chat settings
# ------------------------------------------------------------------


@router.get("/projects/{project_id}/chat-settings", response_model=ChatSettings)
async def get_chat_settings(
    project_id: str,
    user_id: str = Depends(get_current_user),
    chat_service: ChatService = Depends(get_chat_service),
    project_store: ProjectStore = Depends(get_project_store),
):
    """Stored settings, or the defaults (not saved) if the user has none yet."""
    _owned_project(project_id, user_id, project_store)
    settings = chat_service.chat_store.get_chat_settings(project_id, user_id)
    if settings is None:
        return chat_service.default_settings(project_id, user_id)
    return settings


@router.put("/projects/{project_id}/chat-settings", response_model=ChatSettings)
async def update_chat_settings(
    project_id: str,
    request: ChatSettingsUpdate,
    user_id: str = Depends(get_current_user),
    chat_service: ChatService = Depends(get_chat_service),
    project_store: ProjectStore = Depends(get_project_store),
):
    _owned_project(project_id, user_id, project_store)
    if not chat_service.validate_chat_settings(request):
        raise HTTPException(status_code=400, detail="Invalid chat settings or API key")
    return chat_service.save_chat_settings(project_id, user_id, request)
