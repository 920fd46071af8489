import asyncio
import json

import httpx
import pytest

from tackboard.client.state import EntityStatus
from tackboard.client.sync import BoardSyncClient, SyncError
from tackboard.models import BoardCreate, CardCreate, ColumnCreate

VIEW = {
    "board": {"id": "b1"},
    "columns": [{"id": "col1", "boardId": "b1", "title": "Todo", "order": 1000}],
    "cards": [
        {"id": "c1", "columnId": "col1", "title": "X", "order": 1000},
        {"id": "c2", "columnId": "col1", "title": "Y", "order": 2000},
    ],
}


class FakeServer:
    """Board API stand-in; creation requests wait until ``release`` is set."""

    def __init__(self):
        self.requests: list[tuple[str, str, dict | None]] = []
        self.release = asyncio.Event()
        self.fail: set[tuple[str, str]] = set()

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        key = (request.method, request.url.path)
        self.requests.append((*key, body))

        if request.method == "POST" and request.url.path in ("/cards", "/columns"):
            await self.release.wait()
        if key in self.fail:
            return httpx.Response(500, json={"error": "boom", "code": "INTERNAL_ERROR"})

        if key == ("GET", "/boards/b1"):
            return httpx.Response(200, json=VIEW)
        if key == ("POST", "/columns"):
            return httpx.Response(201, json={**body, "id": "col9", "order": 2000})
        if key == ("POST", "/cards"):
            return httpx.Response(201, json={**body, "id": "c9", "order": 3000})
        if request.method == "PATCH":
            return httpx.Response(200, json={**body, "id": request.url.path.rsplit("/", 1)[-1]})
        return httpx.Response(200, json={"success": True, "message": None})

    def sent(self, method=None):
        return [(m, p) for m, p, _ in self.requests if method in (None, m)]


@pytest.fixture
def server():
    return FakeServer()


@pytest.fixture
async def sync(server):
    client = await BoardSyncClient.open(
        "http://tackboard.test", "b1", "alice", transport=httpx.MockTransport(server)
    )
    yield client
    server.release.set()
    await client.aclose()


def _ids(entities):
    return [entity.id for entity in entities]


async def test_open_loads_the_board(sync, server):
    assert _ids(sync.state.cards("col1")) == ["c1", "c2"]
    assert server.sent() == [("GET", "/boards/b1")]


async def test_mutations_on_pending_card_are_not_sent(sync, server):
    temp_id = await sync.create_card("col1", "New")
    assert _ids(sync.state.cards("col1")) == ["c1", "c2", temp_id]

    results = [
        await sync.update_card(temp_id, {"title": "Renamed"}),
        await sync.move_card(temp_id, "col1", 0),
        await sync.delete_card(temp_id),
    ]

    assert all(r.synthetic and not r.discarded for r in results)
    assert sync.state.get(temp_id).data["title"] == "Renamed"
    assert sync.state.is_pending(temp_id)

    server.release.set()
    await sync.wait_settled()

    assert server.sent() == [("GET", "/boards/b1"), ("POST", "/cards")]
    assert sync.state.resolve(temp_id) == "c9"
    assert sync.state.status(temp_id) is EntityStatus.CONFIRMED
    # the creation payload wins over edits made while it was in flight
    assert sync.state.get("c9").data["title"] == "New"
    assert _ids(sync.state.cards("col1")) == ["c1", "c2", "c9"]


async def test_confirmed_alias_is_resolved(sync, server):
    server.release.set()
    temp_id = await sync.create_card("col1", "New")
    await sync.wait_settled()

    result = await sync.update_card(temp_id, {"title": "Renamed"})

    assert not result.synthetic
    assert server.requests[-1] == ("PATCH", "/cards/c9", {"title": "Renamed"})
    assert sync.state.get("c9").data["title"] == "Renamed"


async def test_failed_creation_is_discarded(sync, server):
    server.fail.add(("POST", "/cards"))
    server.release.set()
    temp_id = await sync.create_card("col1", "New")
    await sync.wait_settled()

    assert _ids(sync.state.cards("col1")) == ["c1", "c2"]
    assert sync.state.status(temp_id) is EntityStatus.FAILED

    result = await sync.update_card(temp_id, {"title": "Renamed"})
    assert result.discarded
    assert server.sent("PATCH") == []


async def test_child_waits_for_pending_parent(sync, server):
    column_temp = await sync.create_column("Later")
    card_temp = await sync.create_card(column_temp, "Child")
    for _ in range(5):
        await asyncio.sleep(0)
    assert ("POST", "/cards") not in server.sent()

    server.release.set()
    await sync.wait_settled()

    assert server.requests[-1] == ("POST", "/cards", {"title": "Child", "columnId": "col9"})
    assert sync.state.resolve(card_temp) == "c9"
    assert _ids(sync.state.cards(column_temp)) == ["c9"]


async def test_child_fails_with_its_parent(sync, server):
    server.fail.add(("POST", "/columns"))
    column_temp = await sync.create_column("Later")
    card_temp = await sync.create_card(column_temp, "Child")

    server.release.set()
    await sync.wait_settled()

    assert server.sent("POST") == [("POST", "/columns")]
    assert sync.state.status(column_temp) is EntityStatus.FAILED
    assert sync.state.status(card_temp) is EntityStatus.FAILED
    assert _ids(sync.state.columns()) == ["col1"]


async def test_move_into_pending_column_is_synthetic(sync, server):
    column_temp = await sync.create_column("Later")

    result = await sync.move_card("c1", column_temp, 0)

    assert result.synthetic
    assert _ids(sync.state.cards("col1")) == ["c1", "c2"]
    assert ("POST", "/cards/c1/move") not in server.sent()


async def test_move_is_optimistic(sync, server):
    result = await sync.move_card("c2", "col1", 0)

    assert not result.synthetic
    assert _ids(sync.state.cards("col1")) == ["c2", "c1"]
    assert server.requests[-1] == ("POST", "/cards/c2/move", {"targetColumnId": "col1", "order": 0})


async def test_failed_move_is_reverted(sync, server):
    server.fail.add(("POST", "/cards/c2/move"))

    with pytest.raises(SyncError) as exc_info:
        await sync.move_card("c2", "col1", 0)

    assert exc_info.value.status_code == 500
    assert exc_info.value.body["error"] == "boom"
    assert _ids(sync.state.cards("col1")) == ["c1", "c2"]


async def test_failed_delete_is_reverted(sync, server):
    server.fail.add(("DELETE", "/cards/c1"))

    with pytest.raises(SyncError):
        await sync.delete_card("c1")

    assert _ids(sync.state.cards("col1")) == ["c1", "c2"]


async def test_failed_update_is_reverted(sync, server):
    server.fail.add(("PATCH", "/cards/c1"))

    with pytest.raises(SyncError):
        await sync.update_card("c1", {"title": "X2"})

    assert sync.state.get("c1").data["title"] == "X"


async def test_against_the_real_api(app):
    store = app.state.store
    board = store.create_board("alice", BoardCreate(title="Sprint"))
    todo = store.create_column("alice", ColumnCreate(boardId=board.id, title="Todo"))
    x = store.create_card("alice", CardCreate(columnId=todo.id, title="X"))

    sync = await BoardSyncClient.open(
        "http://testserver", board.id, "alice", transport=httpx.ASGITransport(app=app)
    )
    try:
        done_temp = await sync.create_column("Done")
        card_temp = await sync.create_card(done_temp, "Y")
        await sync.wait_settled()
        await sync.move_card(x.id, done_temp, 0)
        await sync.delete_card(card_temp)
    finally:
        await sync.aclose()

    view = store.get_board_view(board.id, "alice")
    assert [c.title for c in view.columns] == ["Todo", "Done"]
    assert [(c.title, c.columnId) for c in view.cards] == [("X", sync.state.resolve(done_temp))]
    assert _ids(sync.state.cards(done_temp)) == [x.id]
