from fastapi import APIRouter, Depends

from homedoc.config import Settings
from homedoc.dependencies import get_current_user, get_settings
from homedoc.llm.factory import (
    DEFAULT_CONFIGS,
    available_providers,
    check_api_key,
    supported_models,
)
from homedoc.llm.types import ProviderName
from homedoc.models.chat import (
    APIKeyTestRequest,
    APIKeyTestResponse,
    ProviderInfo,
    ProviderListResponse,
)

router = APIRouter(prefix="/api/llm", tags=["llm"])


@router.get("/providers", response_model=ProviderListResponse)
async def list_providers(
    _user_id: str = Depends(get_current_user),
    settings: Settings = Depends(get_settings),
):
    """Supported providers with their default model and whether a server key is set."""
    configured = {
        ProviderName.OPENAI: bool(settings.openai_api_key),
        ProviderName.ANTHROPIC: bool(settings.anthropic_api_key),
        ProviderName.GEMINI: bool(settings.gemini_api_key),
        ProviderName.OLLAMA: True,
    }
    providers = []
    for name in available_providers():
        provider = ProviderName(name)
        providers.append(
            ProviderInfo(
                name=name,
                default_model=DEFAULT_CONFIGS[provider]["model"],
                models=supported_models(name),
                requires_api_key=provider != ProviderName.OLLAMA,
                configured=configured[provider],
            )
        )
    return ProviderListResponse(providers=providers)


@router.post("/test-key", response_model=APIKeyTestResponse)
async def test_key(
    request: APIKeyTestRequest,
    _user_id: str = Depends(get_current_user),
    settings: Settings = Depends(get_settings),
):
    """Check a user-supplied key against the vendor without saving anything.

    Requests always go to the server-configured endpoint for the provider.
    """
    base_urls = {
        "openai": settings.openai_base_url,
        "anthropic": settings.anthropic_base_url,
        "gemini": settings.gemini_base_url,
        "ollama": settings.ollama_base_url,
    }
    valid = await check_api_key(
        request.provider,
        request.api_key,
        model=request.model,
        base_url=base_urls.get(request.provider),
        timeout=settings.llm_request_timeout,
    )
    return APIKeyTestResponse(provider=request.provider, valid=valid)
