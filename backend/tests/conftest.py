import itertools
import os
import time
import uuid
from datetime import datetime, timedelta, timezone

# The app module builds Settings at import time.
os.environ.setdefault("FE_HOST", "http://localhost:5173")
os.environ.setdefault("SUPABASE_URL", "http://localhost:54321")
os.environ.setdefault("SUPABASE_SERVICE_KEY", "test-service-key")
os.environ.setdefault("SUPABASE_JWT_SECRET", "test-jwt-secret-for-unit-tests")

import httpx
import jwt
import pytest
from fastapi.testclient import TestClient

from homedoc.config import Settings
from homedoc.dependencies import (
    get_chat_service,
    get_chat_store,
    get_current_user,
    get_project_store,
    get_settings,
)
from homedoc.errors import PersistenceError
from homedoc.llm.factory import ProviderCache
from homedoc.llm.types import CompletionEvent, ErrorEvent, LLMResponse, TokenEvent, Usage
from homedoc.main import app
from homedoc.models.chat import ChatSettings, Conversation, Message
from homedoc.services.chat import ChatService

TEST_JWT_SECRET = "test-jwt-secret-for-unit-tests"
TEST_USER_ID = "test-user-00000000-0000-0000-0000-000000000001"
OTHER_USER_ID = "other-user-00000000-0000-0000-0000-000000000002"
TEST_PROJECT_ID = "project-00000000-0000-0000-0000-000000000001"


def make_token(
    user_id: str = TEST_USER_ID,
    *,
    secret: str = TEST_JWT_SECRET,
    algorithm: str = "HS256",
    audience: str = "authenticated",
    expires_in: int = 3600,
    extra_claims: dict | None = None,
) -> str:
    """Generate a Supabase-style JWT for testing."""
    payload = {
        "sub": user_id,
        "aud": audience,
        "exp": int(time.time()) + expires_in,
        "iat": int(time.time()),
    }
    if extra_claims:
        payload.update(extra_claims)
    return jwt.encode(payload, secret, algorithm=algorithm)


def make_settings(**overrides) -> Settings:
    values = {
        "fe_host": "http://localhost:5173",
        "supabase_url": "http://localhost:54321",
        "supabase_service_key": "test-service-key",
        "supabase_jwt_secret": TEST_JWT_SECRET,
        "openai_api_key": "sk-test-openai-key",
        "anthropic_api_key": "sk-ant-test-key",
        "gemini_api_key": "gemini-test-key",
    }
    values.update(overrides)
    return Settings(**values)


# ---------------------------------------------------------------------------
# In-memory stand-ins for the Supabase-backed stores
# ---------------------------------------------------------------------------


class FakeChatStore:
    """Same interface as ChatStore, kept in dicts. Timestamps strictly increase."""

    def __init__(self):
        self.settings: dict[tuple[str, str], ChatSettings] = {}
        self.conversations: dict[str, Conversation] = {}
        self.messages: list[Message] = []
        self.fail_on: set[str] = set()
        self.touched: list[str] = []
        self._clock = itertools.count()
        self._epoch = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def _now(self) -> datetime:
        return self._epoch + timedelta(seconds=next(self._clock))

    def _check(self, operation: str) -> None:
        if operation in self.fail_on:
            raise PersistenceError(operation, "simulated outage")

    def get_chat_settings(self, project_id, user_id):
        self._check("load chat settings")
        return self.settings.get((project_id, user_id))

    def create_chat_settings(self, settings):
        self._check("create chat settings")
        stored = settings.model_copy(update={"id": str(uuid.uuid4()), "created_at": self._now()})
        self.settings[(settings.project_id, settings.user_id)] = stored
        return stored

    def update_chat_settings(self, project_id, user_id, updates):
        self._check("update chat settings")
        current = self.settings[(project_id, user_id)]
        stored = current.model_copy(update={**updates, "updated_at": self._now()})
        self.settings[(project_id, user_id)] = stored
        return stored

    def create_conversation(self, project_id, user_id, title):
        self._check("create conversation")
        now = self._now()
        conversation = Conversation(
            id=str(uuid.uuid4()),
            project_id=project_id,
            user_id=user_id,
            title=title,
            created_at=now,
            updated_at=now,
        )
        self.conversations[conversation.id] = conversation
        return conversation

    def get_conversation(self, conversation_id):
        return self.conversations.get(conversation_id)

    def list_conversations(self, project_id, user_id, include_archived=False):
        return [
            c
            for c in self.conversations.values()
            if c.project_id == project_id
            and c.user_id == user_id
            and (include_archived or not c.archived)
        ]

    def update_conversation(self, conversation_id, updates):
        current = self.conversations[conversation_id]
        updated = current.model_copy(update={**updates, "updated_at": self._now()})
        self.conversations[conversation_id] = updated
        return updated

    def touch_conversation(self, conversation_id):
        self._check("touch conversation")
        self.touched.append(conversation_id)

    def delete_conversation(self, conversation_id):
        self.conversations.pop(conversation_id, None)
        self.messages = [m for m in self.messages if m.conversation_id != conversation_id]

    def create_message(self, conversation_id, role, content, token_count=None, metadata=None):
        self._check(f"save {role} message")
        message = Message(
            id=str(uuid.uuid4()),
            conversation_id=conversation_id,
            role=role,
            content=content,
            token_count=token_count,
            metadata=metadata,
            created_at=self._now(),
        )
        self.messages.append(message)
        return message

    def get_messages(self, conversation_id):
        return [m for m in self.messages if m.conversation_id == conversation_id]

    def get_recent_messages(self, conversation_id, limit):
        self._check("load message history")
        if limit <= 0:
            return []
        return self.get_messages(conversation_id)[-limit:]

    def add_history(self, conversation_id, *pairs):
        for role, content in pairs:
            self.create_message(conversation_id, role, content)


class FakeProjectStore:
    def __init__(self, project=None, rooms=None, items=None):
        self.project = project
        self.rooms = rooms or []
        self.items = items or {}
        self.failing_rooms: set[str] = set()

    def get_project(self, project_id):
        if self.project and self.project["id"] == project_id:
            return self.project
        return None

    def get_rooms(self, project_id):
        return [r for r in self.rooms if r["project_id"] == project_id]

    def get_items_by_room(self, room_id):
        if room_id in self.failing_rooms:
            raise PersistenceError("load items", "simulated outage")
        return self.items.get(room_id, [])


class FakeProvider:
    """Records what it was asked and answers with a canned response."""

    def __init__(self, config, content="Your countertops are quartz.", usage=None, error=None):
        self.config = config
        self.content = content
        self.usage = usage
        self.error = error
        self.calls: list[list] = []

    async def generate_response(self, messages):
        self.calls.append(list(messages))
        if self.error:
            raise self.error
        return LLMResponse(
            content=self.content,
            model=self.config.model,
            usage=self.usage,
            finish_reason="stop",
        )

    async def stream_response(self, messages):
        self.calls.append(list(messages))
        if self.error:
            yield ErrorEvent(self.error)
            return
        words = self.content.split(" ")
        for n, word in enumerate(words):
            yield TokenEvent(word if n == len(words) - 1 else word + " ")
        yield CompletionEvent(
            LLMResponse(content=self.content, model=self.config.model, usage=self.usage, finish_reason="stop")
        )


class FakeProviderCache:
    def __init__(self, **provider_kwargs):
        self.provider_kwargs = provider_kwargs
        self.configs = []
        self.provider = None

    def get_provider(self, config):
        self.configs.append(config)
        if self.provider is None:
            self.provider = FakeProvider(config, **self.provider_kwargs)
        return self.provider


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def chat_store() -> FakeChatStore:
    return FakeChatStore()


@pytest.fixture
def project_store() -> FakeProjectStore:
    return FakeProjectStore(
        project={
            "id": TEST_PROJECT_ID,
            "name": "Maple Street House",
            "address": "12 Maple Street",
            "builder_name": "Oak & Sons",
            "user_id": TEST_USER_ID,
        },
        rooms=[
            {"id": "room-kitchen", "project_id": TEST_PROJECT_ID, "name": "Kitchen", "floor_number": 1},
            {"id": "room-bath", "project_id": TEST_PROJECT_ID, "name": "Main Bath"},
        ],
        items={
            "room-kitchen": [
                {
                    "id": "item-counter",
                    "name": "Countertop",
                    "brand": "Caesarstone",
                    "category": "Surfaces",
                    "specifications": "Quartz, 3cm, eased edge",
                    "status": "installed",
                },
            ],
            "room-bath": [
                {"id": "item-vanity", "name": "Vanity", "brand": "Kohler", "category": "Fixtures"},
            ],
        },
    )


@pytest.fixture
def provider_cache() -> FakeProviderCache:
    return FakeProviderCache(usage=Usage(prompt_tokens=120, completion_tokens=8, total_tokens=128))


@pytest.fixture
def chat_service(settings, chat_store, project_store, provider_cache) -> ChatService:
    return ChatService(settings, chat_store, project_store, provider_cache)


@pytest.fixture
def conversation(chat_store) -> Conversation:
    return chat_store.create_conversation(TEST_PROJECT_ID, TEST_USER_ID, "Finishes")


@pytest.fixture
def auth_client(settings, chat_store, project_store, chat_service):
    """FastAPI test client with a pre-authenticated user and in-memory stores."""

    async def _override_user():
        return TEST_USER_ID

    app.dependency_overrides[get_current_user] = _override_user
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_chat_store] = lambda: chat_store
    app.dependency_overrides[get_project_store] = lambda: project_store
    app.dependency_overrides[get_chat_service] = lambda: chat_service
    yield TestClient(app)
    app.dependency_overrides.clear()


def mock_http_client(handler) -> httpx.AsyncClient:
    """AsyncClient whose requests are answered by handler(request) -> httpx.Response."""
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def real_provider_cache():
    """A real ProviderCache whose adapters hit a mock transport."""

    def _make(handler):
        return ProviderCache(http_client=mock_http_client(handler))

    return _make
