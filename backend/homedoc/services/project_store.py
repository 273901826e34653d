from supabase import Client

from homedoc.errors import PersistenceError


class ProjectStore:
    """Read-only access to projects, rooms and items."""

    def __init__(self, supabase: Client):
        self.supabase = supabase

    def _execute(self, query, operation: str) -> list[dict]:
        try:
            result = query.execute()
        except Exception as e:
            raise PersistenceError(operation, str(e))
        return result.data or []

    def get_project(self, project_id: str) -> dict | None:
        rows = self._execute(
            self.supabase.table("projects")
            .select("id, name, address, builder_name, user_id")
            .eq("id", project_id)
            .limit(1),
            "load project",
        )
        return rows[0] if rows else None

    def get_rooms(self, project_id: str) -> list[dict]:
        return self._execute(
            self.supabase.table("rooms")
            .select("*")
            .eq("project_id", project_id)
            .order("created_at"),
            "load rooms",
        )

    def get_items_by_room(self, room_id: str) -> list[dict]:
        return self._execute(
            self.supabase.table("items")
            .select("*")
            .eq("room_id", room_id)
            .order("created_at"),
            "load items",
        )
