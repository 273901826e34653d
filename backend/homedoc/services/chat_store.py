import logging
from datetime import datetime, timezone

from supabase import Client

from homedoc.errors import PersistenceError
from homedoc.models.chat import ChatSettings, Conversation, Message

logger = logging.getLogger(__name__)

SETTINGS_COLUMNS = (
    "provider",
    "model",
    "temperature",
    "max_tokens",
    "system_prompt",
    "restrict_to_project_data",
    "enable_web_search",
    "max_conversation_length",
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ChatStore:
    """Conversations, messages and chat settings kept in Supabase."""

    def __init__(self, supabase: Client):
        self.supabase = supabase

    def _execute(self, query, operation: str) -> list[dict]:
        try:
            result = query.execute()
        except Exception as e:
            logger.error("Supabase call failed while trying to %s: %s", operation, e)
            raise PersistenceError(operation, str(e))
        return result.data or []

    # ------------------------------------------------------------------
    # Chat settings
    # ------------------------------------------------------------------

    def get_chat_settings(self, project_id: str, user_id: str) -> ChatSettings | None:
        rows = self._execute(
            self.supabase.table("chat_settings")
            .select("*")
            .eq("project_id", project_id)
            .eq("user_id", user_id)
            .limit(1),
            "load chat settings",
        )
        return ChatSettings.model_validate(rows[0]) if rows else None

    def create_chat_settings(self, settings: ChatSettings) -> ChatSettings:
        record = {
            "project_id": settings.project_id,
            "user_id": settings.user_id,
            **{col: getattr(settings, col) for col in SETTINGS_COLUMNS},
        }
        rows = self._execute(
            self.supabase.table("chat_settings").insert(record),
            "create chat settings",
        )
        if not rows:
            raise PersistenceError("create chat settings", "no row returned")
        return ChatSettings.model_validate(rows[0])

    def update_chat_settings(
        self, project_id: str, user_id: str, updates: dict
    ) -> ChatSettings:
        record = {k: v for k, v in updates.items() if k in SETTINGS_COLUMNS}
        record["updated_at"] = _now()
        rows = self._execute(
            self.supabase.table("chat_settings")
            .update(record)
            .eq("project_id", project_id)
            .eq("user_id", user_id),
            "update chat settings",
        )
        if not rows:
            raise PersistenceError("update chat settings", "no row returned")
        return ChatSettings.model_validate(rows[0])

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    def create_conversation(self, project_id: str, user_id: str, title: str) -> Conversation:
        rows = self._execute(
            self.supabase.table("conversations").insert(
                {"project_id": project_id, "user_id": user_id, "title": title}
            ),
            "create conversation",
        )
        if not rows:
            raise PersistenceError("create conversation", "no row returned")
        return Conversation.model_validate(rows[0])

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        rows = self._execute(
            self.supabase.table("conversations").select("*").eq("id", conversation_id).limit(1),
            "load conversation",
        )
        return Conversation.model_validate(rows[0]) if rows else None

    def list_conversations(
        self, project_id: str, user_id: str, include_archived: bool = False
    ) -> list[Conversation]:
        query = (
            self.supabase.table("conversations")
            .select("*")
            .eq("project_id", project_id)
            .eq("user_id", user_id)
        )
        if not include_archived:
            query = query.eq("archived", False)
        rows = self._execute(query.order("updated_at", desc=True), "list conversations")
        return [Conversation.model_validate(r) for r in rows]

    def update_conversation(self, conversation_id: str, updates: dict) -> Conversation:
        record = {k: v for k, v in updates.items() if k in ("title", "archived")}
        record["updated_at"] = _now()
        rows = self._execute(
            self.supabase.table("conversations").update(record).eq("id", conversation_id),
            "update conversation",
        )
        if not rows:
            raise PersistenceError("update conversation", "no row returned")
        return Conversation.model_validate(rows[0])

    def touch_conversation(self, conversation_id: str) -> None:
        self._execute(
            self.supabase.table("conversations")
            .update({"updated_at": _now()})
            .eq("id", conversation_id),
            "touch conversation",
        )

    def delete_conversation(self, conversation_id: str) -> None:
        # messages cascade on delete
        self._execute(
            self.supabase.table("conversations").delete().eq("id", conversation_id),
            "delete conversation",
        )

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def create_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        token_count: int | None = None,
        metadata: dict | None = None,
    ) -> Message:
        record = {
            "conversation_id": conversation_id,
            "role": role,
            "content": content,
            "token_count": token_count,
        }
        if metadata is not None:
            record["metadata"] = metadata
        rows = self._execute(
            self.supabase.table("messages").insert(record),
            f"save {role} message",
        )
        if not rows:
            raise PersistenceError(f"save {role} message", "no row returned")
        return Message.model_validate(rows[0])

    def get_messages(self, conversation_id: str) -> list[Message]:
        rows = self._execute(
            self.supabase.table("messages")
            .select("*")
            .eq("conversation_id", conversation_id)
            .order("created_at"),
            "load messages",
        )
        return [Message.model_validate(r) for r in rows]

    def get_recent_messages(self, conversation_id: str, limit: int) -> list[Message]:
        """The ``limit`` newest messages, returned oldest first."""
        if limit <= 0:
            return []
        rows = self._execute(
            self.supabase.table("messages")
            .select("*")
            .eq("conversation_id", conversation_id)
            .order("created_at", desc=True)
            .limit(limit),
            "load message history",
        )
        return [Message.model_validate(r) for r in reversed(rows)]
