import pytest

from tackboard.db import User

from conftest import auth

ALICE = auth("alice")


@pytest.fixture
def board(client):
    return client.post("/boards", json={"title": "Sprint"}, headers=ALICE).json()


@pytest.fixture
def column(client, board):
    response = client.post("/columns", json={"boardId": board["id"], "title": "Todo"}, headers=ALICE)
    assert response.status_code == 201
    return response.json()


def _card(client, column_id, title):
    response = client.post("/cards", json={"columnId": column_id, "title": title}, headers=ALICE)
    assert response.status_code == 201
    return response.json()


def _card_titles(client, board_id, user="alice"):
    view = client.get(f"/boards/{board_id}", headers=auth(user)).json()
    return [card["title"] for card in view["cards"]]


def test_board_view(client, board, column):
    _card(client, column["id"], "X")
    view = client.get(f"/boards/{board['id']}", headers=ALICE).json()
    assert view["board"]["myRole"] == "admin"
    assert [c["title"] for c in view["columns"]] == ["Todo"]
    assert [(c["title"], c["order"]) for c in view["cards"]] == [("X", 1000)]


def test_requires_bearer_user(client, board):
    response = client.get(f"/boards/{board['id']}")
    assert response.status_code == 401
    assert response.json()["code"] == "UNAUTHORIZED"
    assert client.get(f"/boards/{board['id']}", headers={"Authorization": "Bearer "}).status_code == 401


def test_private_boards_are_hidden(client, board):
    response = client.get(f"/boards/{board['id']}", headers=auth("mallory"))
    assert response.status_code == 403
    assert response.json()["code"] == "FORBIDDEN"

    public = client.post("/boards", json={"title": "Open", "isPublic": True}, headers=ALICE).json()
    view = client.get(f"/boards/{public['id']}", headers=auth("mallory")).json()
    assert view["board"]["myRole"] == "reader"


def test_reorder_end_to_end(client, board, column):
    x = _card(client, column["id"], "X")
    y = _card(client, column["id"], "Y")
    assert (x["order"], y["order"]) == (1000, 2000)

    response = client.post(
        f"/cards/{y['id']}/move", json={"targetColumnId": column["id"], "order": 0}, headers=ALICE
    )

    assert response.status_code == 200
    assert response.json()["success"] is True
    view = client.get(f"/boards/{board['id']}", headers=ALICE).json()
    assert [c["title"] for c in view["cards"]] == ["Y", "X"]
    assert view["cards"][0]["order"] < 1000


def test_negative_order_is_rejected_without_a_transaction(client, database, column):
    card = _card(client, column["id"], "X")
    database.transactions = 0

    response = client.post(
        f"/cards/{card['id']}/move", json={"targetColumnId": column["id"], "order": -1}, headers=ALICE
    )

    assert response.status_code == 400
    body = response.json()
    assert body["error"] == "Validation failed"
    assert body["code"] == "VALIDATION_ERROR"
    assert body["issues"][0]["loc"] == ["body", "order"]
    assert database.transactions == 0


def test_move_to_same_position_succeeds(client, board, column):
    x = _card(client, column["id"], "X")
    _card(client, column["id"], "Y")

    for _ in range(2):
        response = client.post(
            f"/cards/{x['id']}/move", json={"targetColumnId": column["id"], "order": 0}, headers=ALICE
        )
        assert response.json() == {"success": True, "message": None}

    assert _card_titles(client, board["id"]) == ["X", "Y"]
    actions = [a["actionType"] for a in client.get(f"/cards/{x['id']}/activity", headers=ALICE).json()]
    assert "MOVE_CARD" not in actions


def test_exhausted_retries_answer_storage_conflict(client, database, sleeps, board, column):
    _card(client, column["id"], "X")
    y = _card(client, column["id"], "Y")
    database.failures = 3

    response = client.post(
        f"/cards/{y['id']}/move", json={"targetColumnId": column["id"], "order": 0}, headers=ALICE
    )

    assert response.status_code == 500
    assert response.json() == {"error": "Conflict, please retry", "code": "STORAGE_CONFLICT"}
    assert response.headers["Retry-After"] == "1"
    assert len(sleeps) == 2
    assert _card_titles(client, board["id"]) == ["X", "Y"]


def test_two_transient_failures_still_move(client, database, board, column):
    _card(client, column["id"], "X")
    y = _card(client, column["id"], "Y")
    database.failures = 2

    response = client.post(
        f"/cards/{y['id']}/move", json={"targetColumnId": column["id"], "order": 0}, headers=ALICE
    )

    assert response.status_code == 200
    assert _card_titles(client, board["id"]) == ["Y", "X"]


def test_cross_board_move(client, column):
    card = _card(client, column["id"], "X")
    other = client.post("/boards", json={"title": "Other"}, headers=ALICE).json()
    foreign = client.post("/columns", json={"boardId": other["id"], "title": "Todo"}, headers=ALICE).json()

    response = client.post(
        f"/cards/{card['id']}/move", json={"targetColumnId": foreign["id"], "order": 0}, headers=ALICE
    )
    assert response.status_code == 422
    assert response.json()["code"] == "BUSINESS_RULE_VIOLATION"


@pytest.mark.parametrize(
    "method, path",
    [
        ("PATCH", "/cards/temp_card_abc"),
        ("DELETE", "/cards/temp_card_abc"),
        ("PATCH", "/columns/temp_col_abc"),
        ("DELETE", "/columns/temp_col_abc"),
    ],
)
def test_temporary_ids_short_circuit(client, database, method, path):
    database.transactions = 0

    response = client.request(method, path, json={"title": "ignored"})

    assert response.status_code == 200
    assert response.json()["success"] is True
    assert database.transactions == 0


def test_temporary_card_update_echoes_id(client):
    response = client.patch("/cards/temp_card_abc", json={"title": "x"})
    assert response.json() == {
        "id": "temp_card_abc",
        "success": True,
        "message": "Temporary card update ignored - will be processed when card is persisted",
    }


def test_temporary_moves_short_circuit(client, column):
    response = client.post(
        "/cards/temp_card_abc/move", json={"targetColumnId": column["id"], "order": 0}, headers=ALICE
    )
    assert response.json()["success"] is True
    response = client.post("/columns/temp_col_abc/move", json={"order": 0}, headers=ALICE)
    assert response.json()["success"] is True


def test_update_card_logs_each_change(client, app, column):
    card = _card(client, column["id"], "X")

    response = client.patch(
        f"/cards/{card['id']}", json={"title": "X2", "priority": "high", "weight": 3}, headers=ALICE
    )

    assert response.status_code == 200
    assert (response.json()["title"], response.json()["priority"]) == ("X2", "high")
    actions = [a["actionType"] for a in client.get(f"/cards/{card['id']}/activity", headers=ALICE).json()]
    assert {"UPDATE_CARD_TITLE", "UPDATE_CARD_PRIORITY", "UPDATE_CARD_WEIGHT"} <= set(actions)


def test_labels_and_assignees(client, app, board, column):
    card = _card(client, column["id"], "X")
    label = client.post(
        f"/boards/{board['id']}/labels", json={"name": "bug", "color": "red"}, headers=ALICE
    ).json()
    with app.state.db.transaction() as session:
        session.add(User(id="bob", name="Bob"))

    response = client.patch(
        f"/cards/{card['id']}",
        json={"labelIdsToAdd": [label["id"]], "assigneeIdsToAdd": ["bob"]},
        headers=ALICE,
    )

    body = response.json()
    assert [lb["name"] for lb in body["labels"]] == ["bug"]
    assert body["assignees"] == [{"id": "bob", "name": "Bob", "email": None}]

    response = client.patch(
        f"/cards/{card['id']}", json={"assigneeIdsToAdd": ["nobody"]}, headers=ALICE
    )
    assert response.status_code == 404
    assert response.json()["error"] == "User with ID nobody not found"


def test_members_can_be_assigned(client, board, column):
    card = _card(client, column["id"], "X")
    client.post(f"/boards/{board['id']}/members", json={"userId": "bob", "role": "writer"}, headers=ALICE)

    response = client.patch(f"/cards/{card['id']}", json={"assigneeIdsToAdd": ["bob"]}, headers=ALICE)

    assert response.status_code == 200
    assert response.json()["assignees"] == [{"id": "bob", "name": None, "email": None}]
    response = client.patch(f"/cards/{card['id']}", json={"assigneeIdsToAdd": ["alice"]}, headers=ALICE)
    assert {a["id"] for a in response.json()["assignees"]} == {"bob", "alice"}


def test_same_label_added_and_removed(client, column):
    card = _card(client, column["id"], "X")
    response = client.patch(
        f"/cards/{card['id']}",
        json={"labelIdsToAdd": ["l1"], "labelIdsToRemove": ["l1"]},
        headers=ALICE,
    )
    assert response.status_code == 422
    assert response.json()["code"] == "BUSINESS_RULE_VIOLATION"


def test_duplicate_label_name(client, board):
    url = f"/boards/{board['id']}/labels"
    assert client.post(url, json={"name": "bug", "color": "red"}, headers=ALICE).status_code == 201
    response = client.post(url, json={"name": "bug", "color": "blue"}, headers=ALICE)
    assert response.status_code == 409
    assert response.json()["code"] == "CONFLICT"


def test_delete_card(client, board, column):
    card = _card(client, column["id"], "X")

    assert client.delete(f"/cards/{card['id']}", headers=ALICE).json() == {
        "success": True,
        "message": None,
    }
    assert client.get(f"/cards/{card['id']}", headers=ALICE).status_code == 404
    assert client.delete(f"/cards/{card['id']}", headers=ALICE).json()["message"] == (
        "Card not found or already deleted."
    )


def test_column_order_through_patch(client, board, column):
    done = client.post("/columns", json={"boardId": board["id"], "title": "Done"}, headers=ALICE).json()
    assert done["order"] == 2000

    response = client.patch(f"/columns/{done['id']}", json={"title": "Shipped", "order": 0}, headers=ALICE)

    assert response.status_code == 200
    assert response.json()["title"] == "Shipped"
    assert response.json()["order"] < column["order"]
    view = client.get(f"/boards/{board['id']}", headers=ALICE).json()
    assert [c["title"] for c in view["columns"]] == ["Shipped", "Todo"]


def test_failed_column_patch_changes_nothing(client, database, board, column):
    done = client.post("/columns", json={"boardId": board["id"], "title": "Done"}, headers=ALICE).json()
    database.failures = 3

    response = client.patch(f"/columns/{done['id']}", json={"title": "Shipped", "order": 0}, headers=ALICE)

    assert response.status_code == 500
    assert response.json()["code"] == "STORAGE_CONFLICT"
    view = client.get(f"/boards/{board['id']}", headers=ALICE).json()
    assert [c["title"] for c in view["columns"]] == ["Todo", "Done"]


def test_column_move_and_delete(client, board, column):
    done = client.post("/columns", json={"boardId": board["id"], "title": "Done"}, headers=ALICE).json()
    _card(client, column["id"], "X")

    assert client.post(f"/columns/{done['id']}/move", json={"order": 0}, headers=ALICE).json()["success"]
    assert client.delete(f"/columns/{column['id']}", headers=ALICE).json()["success"]

    view = client.get(f"/boards/{board['id']}", headers=ALICE).json()
    assert [c["title"] for c in view["columns"]] == ["Done"]
    assert view["cards"] == []


def test_comments(client, board, column):
    client.post(f"/boards/{board['id']}/members", json={"userId": "bob", "role": "writer"}, headers=ALICE)
    card = _card(client, column["id"], "X")
    url = f"/cards/{card['id']}/comments"

    comment = client.post(url, json={"content": "looks good"}, headers=auth("bob")).json()
    assert comment["userId"] == "bob"

    response = client.patch(f"{url}/{comment['id']}", json={"content": "edited"}, headers=ALICE)
    assert response.status_code == 403
    response = client.patch(f"{url}/{comment['id']}", json={"content": "edited"}, headers=auth("bob"))
    assert response.json()["content"] == "edited"

    # admins may delete anyone's comment
    assert client.delete(f"{url}/{comment['id']}", headers=ALICE).json()["success"]
    assert client.delete(f"{url}/{comment['id']}", headers=ALICE).status_code == 404


def test_attachments(client, column):
    card = _card(client, column["id"], "X")
    url = f"/cards/{card['id']}/attachments"

    attachment = client.post(
        url,
        json={"name": "spec.pdf", "url": "/uploads/spec.pdf", "type": "application/pdf", "size": 1024},
        headers=ALICE,
    ).json()
    assert attachment["size"] == 1024

    assert client.delete(f"{url}/{attachment['id']}", headers=ALICE).json()["success"]
    actions = [a["actionType"] for a in client.get(f"/cards/{card['id']}/activity", headers=ALICE).json()]
    assert {"ADD_ATTACHMENT", "DELETE_ATTACHMENT"} <= set(actions)


def test_reader_cannot_write(client, board, column):
    client.post(f"/boards/{board['id']}/members", json={"userId": "rita", "role": "reader"}, headers=ALICE)

    response = client.post("/cards", json={"columnId": column["id"], "title": "X"}, headers=auth("rita"))
    assert response.status_code == 403
    assert client.get(f"/boards/{board['id']}", headers=auth("rita")).status_code == 200

    response = client.post(
        f"/boards/{board['id']}/members", json={"userId": "rita", "role": "admin"}, headers=auth("rita")
    )
    assert response.status_code == 403
