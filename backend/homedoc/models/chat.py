from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from homedoc.llm.types import ProviderName

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful assistant for a home construction and renovation project. "
    "Use the project context provided to answer questions about the rooms, items and "
    "materials in the user's home. When asked about a specific item, such as which "
    "countertops were installed, answer from the project data and include the brand, "
    "specifications, supplier and status where they are known."
)

DEFAULT_CONVERSATION_TITLE = "New Conversation"


# --- Stored entities ---


class Conversation(BaseModel):
    id: str
    project_id: str
    user_id: str
    title: str
    created_at: datetime
    updated_at: datetime
    archived: bool = False


class Message(BaseModel):
    id: str | None = None
    conversation_id: str
    role: Literal["user", "assistant", "system"]
    content: str
    metadata: dict | None = None
    token_count: int | None = None
    created_at: datetime


class ChatSettings(BaseModel):
    id: str | None = None
    project_id: str
    user_id: str
    provider: str = ProviderName.OPENAI.value
    model: str = "gpt-4o-mini"
    temperature: float = 0.7
    max_tokens: int = 1000
    system_prompt: str | None = None
    restrict_to_project_data: bool = True
    enable_web_search: bool = False
    max_conversation_length: int = 50
    created_at: datetime | None = None
    updated_at: datetime | None = None


# --- API request / response models ---


class ConversationCreateRequest(BaseModel):
    title: str = Field(DEFAULT_CONVERSATION_TITLE, min_length=1, max_length=200)


class ConversationUpdateRequest(BaseModel):
    title: str | None = Field(None, min_length=1, max_length=200)
    archived: bool | None = None


class MessageCreateRequest(BaseModel):
    content: str = Field(..., min_length=1)


class ChatSettingsUpdate(BaseModel):
    provider: ProviderName
    model: str = Field(..., min_length=1)
    temperature: float = Field(0.7, ge=0, le=2)
    max_tokens: int = Field(1000, gt=0)
    system_prompt: str | None = None
    restrict_to_project_data: bool = True
    enable_web_search: bool = False
    max_conversation_length: int = Field(50, gt=0)


class UsageInfo(BaseModel):
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


class ChatTurnResponse(BaseModel):
    message: Message
    usage: UsageInfo | None = None
    persisted: bool = True


class ProviderInfo(BaseModel):
    name: str
    default_model: str
    models: list[str]
    requires_api_key: bool
    configured: bool


class ProviderListResponse(BaseModel):
    providers: list[ProviderInfo]


class APIKeyTestRequest(BaseModel):
    provider: str
    api_key: str | None = None
    model: str | None = None


class APIKeyTestResponse(BaseModel):
    provider: str
    valid: bool
