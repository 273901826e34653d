import logging
import re

from homedoc.errors import PersistenceError

logger = logging.getLogger(__name__)

MAX_CONTEXT_CHARS = 3000
FALLBACK_ITEM_COUNT = 10
TRUNCATION_MARKER = "...\n[Context truncated for length]"

SEARCHABLE_FIELDS = (
    "name",
    "brand",
    "category",
    "specifications",
    "notes",
    "room_name",
    "supplier",
    "warranty_info",
    "maintenance_notes",
    "status",
)

# (field, label) pairs rendered after the item name, in order
ITEM_DETAILS = (
    ("brand", "Brand"),
    ("specifications", "Specs"),
    ("category", "Category"),
    ("status", "Status"),
    ("supplier", "Supplier"),
    ("warranty_info", "Warranty"),
    ("maintenance_notes", "Maintenance"),
    ("notes", "Notes"),
)


def extract_keywords(query: str) -> list[str]:
    """Lowercase words of the query longer than two characters."""
    return [word for word in re.findall(r"\w+", query.lower()) if len(word) > 2]


def filter_relevant_items(items: list[dict], query: str) -> list[dict]:
    """Items whose searchable fields contain any query keyword.

    Queries shorter than three characters match nothing.
    """
    if not query or len(query) < 3:
        return []
    keywords = extract_keywords(query)
    if not keywords:
        return []

    relevant = []
    for item in items:
        haystack = " ".join(
            str(item[f]) for f in SEARCHABLE_FIELDS if item.get(f) is not None
        ).lower()
        if any(keyword in haystack for keyword in keywords):
            relevant.append(item)
    return relevant


def truncate(text: str, limit: int = MAX_CONTEXT_CHARS) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + TRUNCATION_MARKER


def render_project_header(project: dict) -> str:
    lines = [f"Project: {project.get('name') or project.get('id')}"]
    if project.get("address"):
        lines.append(f"Address: {project['address']}")
    if project.get("builder_name"):
        lines.append(f"Builder: {project['builder_name']}")
    return "\n".join(lines) + "\n"


def render_room(room: dict) -> str:
    line = f"- {room.get('name')}"
    if room.get("description"):
        line += f" - {room['description']}"
    if room.get("dimensions"):
        line += f" ({room['dimensions']})"
    if room.get("floor_number") is not None:
        line += f" - Floor {room['floor_number']}"
    return line


def render_item(item: dict) -> str:
    line = f"- {item.get('name')}"
    if item.get("room_name"):
        line += f" (in {item['room_name']})"
    for field, label in ITEM_DETAILS:
        if item.get(field):
            line += f" - {label}: {item[field]}"
    return line


class ContextBuilder:
    """Renders the parts of a project relevant to a question as plain text.

    Every store read has its own failure boundary: a room whose items cannot
    be loaded is skipped and the rest of the project is still described.
    """

    def __init__(
        self,
        project_store,
        max_chars: int = MAX_CONTEXT_CHARS,
        fallback_items: int = FALLBACK_ITEM_COUNT,
    ):
        self.project_store = project_store
        self.max_chars = max_chars
        self.fallback_items = fallback_items

    def build(self, project_id: str, query: str, user_id: str | None = None) -> str | None:
        """Return the context block for project_id, or None if the project does not exist.

        With a user_id, the project must belong to that user; otherwise, or if
        ownership cannot be confirmed because the lookup failed, there is no context.
        """
        try:
            project = self.project_store.get_project(project_id)
        except PersistenceError as e:
            if user_id is not None:
                logger.warning("Could not load project %s to check its owner: %s", project_id, e)
                return None
            logger.warning("Could not load project %s, using a bare header: %s", project_id, e)
            project = {"id": project_id, "name": project_id}
        if project is None:
            return None
        if user_id is not None and project.get("user_id") != user_id:
            logger.warning("Project %s does not belong to user %s, no context", project_id, user_id)
            return None

        try:
            rooms = self.project_store.get_rooms(project_id)
        except PersistenceError as e:
            logger.warning("Could not load rooms for project %s: %s", project_id, e)
            rooms = []

        items: list[dict] = []
        for room in rooms:
            try:
                room_items = self.project_store.get_items_by_room(room["id"])
            except PersistenceError as e:
                logger.warning("Could not load items for room %s: %s", room.get("id"), e)
                continue
            items.extend({**item, "room_name": room.get("name")} for item in room_items)

        selected = self.select_items(items, query)
        logger.info(
            "Context for project %s: %d rooms, %d items, %d selected",
            project_id, len(rooms), len(items), len(selected),
        )
        return truncate(self.render(project, rooms, selected), self.max_chars)

    def select_items(self, items: list[dict], query: str) -> list[dict]:
        relevant = filter_relevant_items(items, query)
        if relevant:
            return relevant
        return items[: self.fallback_items]

    def render(self, project: dict, rooms: list[dict], items: list[dict]) -> str:
        context = render_project_header(project)
        if rooms:
            context += f"\nRooms ({len(rooms)}):\n"
            context += "".join(render_room(room) + "\n" for room in rooms)
        if items:
            context += "\nItems and Materials:\n"
            context += "".join(render_item(item) + "\n" for item in items)
        return context
