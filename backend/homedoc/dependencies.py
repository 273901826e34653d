import logging
from functools import lru_cache

import jwt
from fastapi import Depends, HTTPException, Request
from supabase import create_client, Client

from homedoc.config import Settings
from homedoc.llm.factory import ProviderCache
from homedoc.services.chat import ChatService, ConversationLocks
from homedoc.services.chat_store import ChatStore
from homedoc.services.project_store import ProjectStore

logger = logging.getLogger(__name__)

_supabase_client: Client | None = None
_provider_cache: ProviderCache | None = None
_conversation_locks = ConversationLocks()


@lru_cache
def get_settings() -> Settings:
    return Settings()


def get_supabase() -> Client:
    global _supabase_client
    if _supabase_client is None:
        settings = get_settings()
        _supabase_client = create_client(
            settings.supabase_url,
            settings.supabase_service_key,
        )
    return _supabase_client


def get_provider_cache(settings: Settings = Depends(get_settings)) -> ProviderCache:
    global _provider_cache
    if _provider_cache is None:
        _provider_cache = ProviderCache(timeout=settings.llm_request_timeout)
    return _provider_cache


def get_chat_store(supabase: Client = Depends(get_supabase)) -> ChatStore:
    return ChatStore(supabase)


def get_project_store(supabase: Client = Depends(get_supabase)) -> ProjectStore:
    return ProjectStore(supabase)


def get_chat_service(
    settings: Settings = Depends(get_settings),
    chat_store: ChatStore = Depends(get_chat_store),
    project_store: ProjectStore = Depends(get_project_store),
    provider_cache: ProviderCache = Depends(get_provider_cache),
) -> ChatService:
    return ChatService(
        settings,
        chat_store,
        project_store,
        provider_cache,
        locks=_conversation_locks,
    )


async def get_current_user(
    request: Request,
    settings: Settings = Depends(get_settings),
) -> str:
    """FastAPI dependency: validate Supabase JWT and return user_id.

    Extracts the Bearer token from the Authorization header, validates it
    using the Supabase JWT secret, and returns the user's UUID from the
    ``sub`` claim.

    Raises:
        HTTPException 401 for missing, invalid, or expired tokens.
    """
    auth_header = request.headers.get("Authorization")

    if not auth_header:
        raise HTTPException(status_code=401, detail="Authorization header missing")

    if not auth_header.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Invalid authorization header format")

    token = auth_header.removeprefix("Bearer ").strip()

    try:
        payload = jwt.decode(
            token,
            settings.supabase_jwt_secret,
            algorithms=["HS256"],
            audience="authenticated",
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Authentication token has expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid authentication token")

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid authentication token")

    return user_id
