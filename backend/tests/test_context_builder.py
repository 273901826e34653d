from homedoc.errors import PersistenceError
from homedoc.services.context_builder import (
    MAX_CONTEXT_CHARS,
    TRUNCATION_MARKER,
    ContextBuilder,
    extract_keywords,
    filter_relevant_items,
    render_item,
    render_room,
    truncate,
)
from tests.conftest import TEST_PROJECT_ID, FakeProjectStore

PROJECT = {"id": "p1", "name": "Lakeside Build", "address": "1 Shore Rd", "builder_name": "Acme Homes"}


def _store(items_per_room=None, rooms=None):
    rooms = rooms if rooms is not None else [
        {"id": "r1", "project_id": "p1", "name": "Kitchen"},
        {"id": "r2", "project_id": "p1", "name": "Living Room"},
    ]
    return FakeProjectStore(project=PROJECT, rooms=rooms, items=items_per_room or {})


def test_extract_keywords_drops_short_words():
    assert extract_keywords("What is the paint in my den?") == ["what", "the", "paint", "den"]


def test_filter_relevant_items_matches_any_field():
    items = [
        {"name": "Wall finish", "brand": "Benjamin Moore", "category": "Paint"},
        {"name": "Sofa", "category": "Furniture"},
        {"name": "Trim", "notes": "semi-gloss paint, white dove"},
    ]
    assert [i["name"] for i in filter_relevant_items(items, "which paint?")] == ["Wall finish", "Trim"]


def test_filter_relevant_items_short_query_matches_nothing():
    assert filter_relevant_items([{"name": "xy"}], "xy") == []


def test_render_room_and_item():
    assert render_room({"name": "Kitchen", "dimensions": "12x14", "floor_number": 1}) == (
        "- Kitchen (12x14) - Floor 1"
    )
    line = render_item(
        {"name": "Countertop", "room_name": "Kitchen", "brand": "Caesarstone", "status": "installed"}
    )
    assert line == "- Countertop (in Kitchen) - Brand: Caesarstone - Status: installed"


def test_truncate():
    assert truncate("short") == "short"
    long_text = "x" * (MAX_CONTEXT_CHARS + 50)
    result = truncate(long_text)
    assert result.endswith(TRUNCATION_MARKER)
    assert len(result) == MAX_CONTEXT_CHARS + len(TRUNCATION_MARKER)


def test_build_selects_relevant_items_only():
    store = _store(
        {
            "r1": [{"id": "i1", "name": "Backsplash", "category": "Tile"}],
            "r2": [
                {"id": "i2", "name": "Wall finish", "brand": "Sherwin-Williams", "category": "Paint"},
                {"id": "i3", "name": "Ceiling fan", "category": "Fixtures"},
            ],
        }
    )
    context = ContextBuilder(store).build("p1", "Which paint brand did we pick?")

    assert context.startswith("Project: Lakeside Build\nAddress: 1 Shore Rd\nBuilder: Acme Homes\n")
    assert "Rooms (2):" in context
    assert "Wall finish (in Living Room)" in context
    assert "Backsplash" not in context
    assert "Ceiling fan" not in context


def test_build_falls_back_to_first_items_for_short_query():
    items = {"r1": [{"id": f"i{n}", "name": f"Item {n}"} for n in range(15)]}
    context = ContextBuilder(_store(items)).build("p1", "xy")

    assert "Items and Materials:" in context
    assert "Item 9" in context
    assert "Item 10" not in context


def test_build_respects_fallback_item_setting():
    items = {"r1": [{"id": f"i{n}", "name": f"Item {n}"} for n in range(5)]}
    context = ContextBuilder(_store(items), fallback_items=2).build("p1", "unrelated words")

    assert "Item 1" in context
    assert "Item 2" not in context


def test_build_truncates_long_context():
    items = {
        "r1": [
            {"id": f"i{n}", "name": f"Cabinet {n}", "specifications": "maple shaker door " * 10}
            for n in range(40)
        ]
    }
    context = ContextBuilder(_store(items)).build("p1", "cabinet")

    assert context.endswith(TRUNCATION_MARKER)
    assert len(context) <= MAX_CONTEXT_CHARS + len(TRUNCATION_MARKER)


def test_build_with_no_rooms_is_just_the_header():
    context = ContextBuilder(_store(rooms=[])).build("p1", "anything")
    assert context == "Project: Lakeside Build\nAddress: 1 Shore Rd\nBuilder: Acme Homes\n"


def test_build_unknown_project_returns_none():
    assert ContextBuilder(_store()).build("missing", "paint") is None


def test_build_skips_room_whose_items_fail(project_store):
    project_store.failing_rooms.add("room-kitchen")
    context = ContextBuilder(project_store).build(TEST_PROJECT_ID, "vanity")

    assert "Kitchen" in context
    assert "Countertop" not in context
    assert "Vanity (in Main Bath)" in context


def test_build_survives_project_lookup_failure():
    class BrokenProjectStore(FakeProjectStore):
        def get_project(self, project_id):
            raise PersistenceError("load project", "timeout")

    store = BrokenProjectStore(rooms=[{"id": "r1", "project_id": "p1", "name": "Kitchen"}])
    context = ContextBuilder(store).build("p1", "kitchen")

    assert context.startswith("Project: p1\n")
    assert "- Kitchen" in context


def test_build_survives_rooms_failure():
    class NoRoomsStore(FakeProjectStore):
        def get_rooms(self, project_id):
            raise PersistenceError("load rooms", "timeout")

    context = ContextBuilder(NoRoomsStore(project=PROJECT)).build("p1", "kitchen")
    assert context == "Project: Lakeside Build\nAddress: 1 Shore Rd\nBuilder: Acme Homes\n"


def test_build_paint_query_picks_the_one_matching_item():
    store = FakeProjectStore(
        project=PROJECT,
        rooms=[
            {"id": "r1", "project_id": "p1", "name": "Den"},
            {"id": "r2", "project_id": "p1", "name": "Hall"},
        ],
        items={
            "r1": [
                {"id": "a", "name": "Item A", "specifications": "Eggshell paint, colour SW 7015"},
                {"id": "b", "name": "Item B", "specifications": "Oak flooring"},
            ],
            "r2": [{"id": "c", "name": "Item C", "specifications": "Brass door hardware"}],
        },
    )
    context = ContextBuilder(store).build("p1", "paint")

    assert "Item A" in context
    assert "Item B" not in context
    assert "Item C" not in context


def test_build_for_owner_includes_project():
    store = _store({"r1": [{"id": "i1", "name": "Backsplash", "category": "Tile"}]})
    store.project = {**PROJECT, "user_id": "u1"}
    context = ContextBuilder(store).build("p1", "backsplash", user_id="u1")

    assert "Backsplash (in Kitchen)" in context


def test_build_refuses_project_owned_by_someone_else():
    store = FakeProjectStore(
        project={**PROJECT, "name": "Victim House", "user_id": "owner"},
        rooms=[{"id": "r1", "project_id": "p1", "name": "Vault"}],
        items={"r1": [{"id": "i1", "name": "Safe", "notes": "combo 12-34-56"}]},
    )
    assert ContextBuilder(store).build("p1", "safe combo", user_id="intruder") is None


def test_build_with_owner_check_gives_up_when_project_lookup_fails():
    class BrokenProjectStore(FakeProjectStore):
        def get_project(self, project_id):
            raise PersistenceError("load project", "timeout")

    store = BrokenProjectStore(rooms=[{"id": "r1", "project_id": "p1", "name": "Kitchen"}])
    assert ContextBuilder(store).build("p1", "kitchen", user_id="u1") is None
