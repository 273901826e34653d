import asyncio
import logging
import weakref
from collections.abc import AsyncGenerator
from dataclasses import dataclass
from datetime import datetime, timezone

from homedoc.config import Settings
from homedoc.errors import ChatError, ConfigurationError, PersistenceError
from homedoc.llm.factory import ProviderCache, parse_provider, validate_config
from homedoc.llm.types import (
    CompletionEvent,
    ErrorEvent,
    LLMMessage,
    LLMResponse,
    ProviderAdapter,
    ProviderConfig,
    ProviderName,
    TokenEvent,
    estimate_tokens,
    estimate_usage,
)
from homedoc.models.chat import (
    DEFAULT_CONVERSATION_TITLE,
    DEFAULT_SYSTEM_PROMPT,
    ChatSettings,
    ChatSettingsUpdate,
    ChatTurnResponse,
    Conversation,
    Message,
    UsageInfo,
)
from homedoc.services.context_builder import ContextBuilder

logger = logging.getLogger(__name__)


class ConversationLocks:
    """One asyncio.Lock per conversation so turns in a conversation never interleave.

    Only serializes within a single process.
    """

    def __init__(self):
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def get(self, conversation_id: str) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation_id] = lock
        return lock


@dataclass
class _Turn:
    conversation_id: str
    settings: ChatSettings
    config: ProviderConfig
    provider: ProviderAdapter
    messages: list[LLMMessage]


class ChatService:
    def __init__(
        self,
        settings: Settings,
        chat_store,
        project_store,
        provider_cache: ProviderCache,
        locks: ConversationLocks | None = None,
    ):
        self.settings = settings
        self.chat_store = chat_store
        self.provider_cache = provider_cache
        self.locks = locks or ConversationLocks()
        self.context_builder = ContextBuilder(
            project_store,
            max_chars=settings.context_max_chars,
            fallback_items=settings.context_fallback_items,
        )

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def resolve_api_key(self, provider: str) -> str | None:
        """API key for provider from process configuration. Ollama needs none."""
        name = parse_provider(provider)
        keys = {
            ProviderName.OPENAI: ("OpenAI", self.settings.openai_api_key),
            ProviderName.ANTHROPIC: ("Anthropic", self.settings.anthropic_api_key),
            ProviderName.GEMINI: ("Gemini", self.settings.gemini_api_key),
        }
        if name not in keys:
            return None
        label, key = keys[name]
        if not key:
            raise ConfigurationError(f"{label} API key not configured")
        return key

    def build_provider_config(self, chat_settings: ChatSettings) -> ProviderConfig:
        name = parse_provider(chat_settings.provider)
        base_urls = {
            ProviderName.OPENAI: self.settings.openai_base_url,
            ProviderName.ANTHROPIC: self.settings.anthropic_base_url,
            ProviderName.GEMINI: self.settings.gemini_base_url,
            ProviderName.OLLAMA: self.settings.ollama_base_url,
        }
        return ProviderConfig(
            provider=name.value,
            model=chat_settings.model,
            api_key=self.resolve_api_key(name.value),
            base_url=base_urls[name],
            temperature=float(chat_settings.temperature),
            max_tokens=chat_settings.max_tokens,
        )

    def default_settings(self, project_id: str, user_id: str) -> ChatSettings:
        return ChatSettings(
            project_id=project_id,
            user_id=user_id,
            system_prompt=DEFAULT_SYSTEM_PROMPT,
        )

    def get_or_create_settings(self, project_id: str, user_id: str) -> ChatSettings:
        settings = self.chat_store.get_chat_settings(project_id, user_id)
        if settings is not None:
            return settings
        logger.info("Creating default chat settings for user %s in project %s", user_id, project_id)
        return self.chat_store.create_chat_settings(self.default_settings(project_id, user_id))

    def validate_chat_settings(self, update: ChatSettingsUpdate) -> bool:
        """True if the provider is supported, its key is configured and the config is usable."""
        candidate = ChatSettings(project_id="", user_id="", **update.model_dump(mode="json"))
        try:
            config = self.build_provider_config(candidate)
        except ConfigurationError as e:
            logger.info("Rejected chat settings: %s", e.message)
            return False
        return validate_config(config)

    def save_chat_settings(
        self, project_id: str, user_id: str, update: ChatSettingsUpdate
    ) -> ChatSettings:
        values = update.model_dump(mode="json")
        if self.chat_store.get_chat_settings(project_id, user_id) is None:
            return self.chat_store.create_chat_settings(
                ChatSettings(project_id=project_id, user_id=user_id, **values)
            )
        return self.chat_store.update_chat_settings(project_id, user_id, values)

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    def create_conversation(self, project_id: str, user_id: str, title: str | None = None) -> Conversation:
        return self.chat_store.create_conversation(
            project_id, user_id, title or DEFAULT_CONVERSATION_TITLE
        )

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    def _project_context(self, project_id: str, query: str, user_id: str) -> str | None:
        try:
            return self.context_builder.build(project_id, query, user_id=user_id)
        except Exception:
            logger.exception("Context building failed for project %s, continuing without it", project_id)
            return None

    def _build_messages(
        self,
        chat_settings: ChatSettings,
        context: str | None,
        history: list[Message],
        user_message: str,
    ) -> list[LLMMessage]:
        messages = []
        if chat_settings.system_prompt:
            messages.append(LLMMessage(role="system", content=chat_settings.system_prompt))
        if context:
            messages.append(LLMMessage(role="system", content=f"Project Context:\n{context}"))
        for msg in history:
            if msg.content:
                messages.append(LLMMessage(role=msg.role, content=msg.content))
        messages.append(LLMMessage(role="user", content=user_message))
        return messages

    def _prepare_turn(
        self, conversation_id: str, user_message: str, user_id: str, project_id: str
    ) -> _Turn:
        """Everything up to and including saving the user's message."""
        chat_settings = self.get_or_create_settings(project_id, user_id)

        config = self.build_provider_config(chat_settings)
        provider = self.provider_cache.get_provider(config)

        context = None
        if chat_settings.restrict_to_project_data:
            context = self._project_context(project_id, user_message, user_id)

        history = self.chat_store.get_recent_messages(
            conversation_id, chat_settings.max_conversation_length
        )
        messages = self._build_messages(chat_settings, context, history, user_message)

        # Saved before the provider is called so the input survives a failed generation
        self.chat_store.create_message(
            conversation_id, "user", user_message, token_count=estimate_tokens(user_message)
        )
        return _Turn(conversation_id, chat_settings, config, provider, messages)

    def _finish_turn(self, turn: _Turn, response: LLMResponse) -> ChatTurnResponse:
        usage = response.usage
        estimated = usage is None
        if estimated:
            usage = estimate_usage(turn.messages, response.content)
        metadata = {
            "provider": turn.config.provider,
            "model": response.model,
            "usage": usage.to_dict(),
            "usage_estimated": estimated,
            "finish_reason": response.finish_reason,
        }

        persisted = True
        try:
            message = self.chat_store.create_message(
                turn.conversation_id,
                "assistant",
                response.content,
                token_count=usage.completion_tokens,
                metadata=metadata,
            )
        except PersistenceError:
            # The answer was generated; hand it back even though it is not stored.
            logger.error(
                "Assistant reply for conversation %s was generated but not saved",
                turn.conversation_id,
                exc_info=True,
            )
            persisted = False
            message = Message(
                conversation_id=turn.conversation_id,
                role="assistant",
                content=response.content,
                metadata=metadata,
                token_count=usage.completion_tokens,
                created_at=datetime.now(timezone.utc),
            )

        if persisted:
            try:
                self.chat_store.touch_conversation(turn.conversation_id)
            except PersistenceError as e:
                logger.warning("Could not update conversation %s timestamp: %s", turn.conversation_id, e)

        return ChatTurnResponse(
            message=message,
            usage=UsageInfo(**usage.to_dict()),
            persisted=persisted,
        )

    async def process_message(
        self, conversation_id: str, user_message: str, user_id: str, project_id: str
    ) -> ChatTurnResponse:
        """Run one chat turn and return the assistant's message.

        Raises:
            ConfigurationError: provider unsupported or its key is missing/malformed.
            PersistenceError: settings or the user's message could not be saved.
            ProviderError / TransportError: the vendor call failed. The user's
                message stays saved; nothing is retried.
        """
        async with self.locks.get(conversation_id):
            turn = self._prepare_turn(conversation_id, user_message, user_id, project_id)
            logger.info(
                "Sending %d messages to %s/%s for conversation %s",
                len(turn.messages), turn.config.provider, turn.config.model, conversation_id,
            )
            response = await turn.provider.generate_response(turn.messages)
            return self._finish_turn(turn, response)

    async def stream_message(
        self, conversation_id: str, user_message: str, user_id: str, project_id: str
    ) -> AsyncGenerator[dict, None]:
        """Stream a chat turn. Yields dicts with 'token', 'done' or 'error' keys.

        The last dict is always either 'done' (with the stored message) or 'error'.
        """
        async with self.locks.get(conversation_id):
            try:
                turn = self._prepare_turn(conversation_id, user_message, user_id, project_id)
            except ChatError as e:
                yield {"error": e.message, "type": e.__class__.__name__}
                return

            async for event in turn.provider.stream_response(turn.messages):
                if isinstance(event, TokenEvent):
                    yield {"token": event.text}
                elif isinstance(event, CompletionEvent):
                    result = self._finish_turn(turn, event.response)
                    yield {"done": True, **result.model_dump(mode="json")}
                elif isinstance(event, ErrorEvent):
                    logger.warning("Streaming turn failed for conversation %s: %s", conversation_id, event.error)
                    yield {"error": event.error.message, "type": event.error.__class__.__name__}
