"""Optimistic board client.

Creations are applied to ``BoardState`` immediately under a temporary id and
sent in the background. Until the server answers, mutations against that id
are answered locally with a synthetic success and never sent: the creation
payload already in flight is authoritative, and edits made in that window
are dropped once the real entity lands.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from ..ids import is_temporary_id
from ..settings import Settings
from .state import BoardState, EntityKind, EntityStatus, is_unconfirmed

_logger = logging.getLogger(__name__)

# fields of a card or column that can be patched locally before the server answers
CARD_FIELDS = ("title", "description", "priority", "dueDate", "weight")
COLUMN_FIELDS = ("title", "width")


class SyncError(Exception):
    def __init__(self, status_code: int | None, body: dict[str, Any]) -> None:
        super().__init__(body.get("error") or f"HTTP {status_code}")
        self.status_code = status_code
        self.body = body


class ParentCreationFailed(Exception):
    pass


@dataclass(frozen=True)
class MutationResult:
    data: dict[str, Any] | None = None
    # answered locally, nothing was sent
    synthetic: bool = False
    # the target failed to be created, the mutation was dropped
    discarded: bool = False


SYNTHETIC = MutationResult(synthetic=True)
DISCARDED = MutationResult(synthetic=True, discarded=True)


class BoardSyncClient:
    def __init__(self, http: httpx.AsyncClient, state: BoardState) -> None:
        self._http = http
        self.state = state
        self._creations: dict[str, asyncio.Task[str | None]] = {}

    @classmethod
    async def open(
        cls,
        base_url: str,
        board_id: str,
        user_id: str,
        *,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> BoardSyncClient:
        http = httpx.AsyncClient(
            base_url=base_url,
            headers={"Authorization": f"Bearer {user_id}"},
            timeout=Settings().CLIENT_TIMEOUT if timeout is None else timeout,
            transport=transport,
        )
        try:
            view = await cls._send(http, "GET", f"/boards/{board_id}")
        except SyncError:
            await http.aclose()
            raise
        return cls(http, BoardState.from_view(view))

    async def aclose(self) -> None:
        await self.wait_settled()
        await self._http.aclose()

    async def __aenter__(self) -> BoardSyncClient:
        return self

    async def __aexit__(self, *_exc_info: object) -> None:
        await self.aclose()

    @staticmethod
    async def _send(
        http: httpx.AsyncClient, method: str, url: str, json: Any = None
    ) -> dict[str, Any]:
        try:
            response = await http.request(method, url, json=json)
        except httpx.HTTPError as err:
            raise SyncError(None, {"error": f"{type(err).__name__}: {err}"}) from err
        if response.is_error:
            try:
                body = response.json()
            except ValueError:
                body = {"error": response.text}
            raise SyncError(response.status_code, body)
        return response.json()

    async def _request(self, method: str, url: str, json: Any = None) -> dict[str, Any]:
        return await self._send(self._http, method, url, json)

    def _short_circuit(self, entity_id: str) -> MutationResult | None:
        """Answer for mutations against ids the server does not know yet."""
        if not is_unconfirmed(self.state, entity_id):
            return None
        if self.state.status(entity_id) is EntityStatus.PENDING:
            _logger.debug("Mutation against pending %s answered locally", entity_id)
            return SYNTHETIC
        _logger.debug("Mutation against failed %s discarded", entity_id)
        return DISCARDED

    # === Creations ===

    async def _await_parent(self, parent_id: str) -> str:
        resolved = self.state.resolve(parent_id)
        if not is_temporary_id(resolved):
            return resolved
        task = self._creations.get(resolved)
        real_id = await task if task is not None else None
        if real_id is None:
            raise ParentCreationFailed(parent_id)
        return real_id

    async def _create(
        self, temp_id: str, kind: EntityKind, url: str, body: dict[str, Any], parent_key: str
    ) -> str | None:
        try:
            body[parent_key] = await self._await_parent(body[parent_key])
            data = await self._request("POST", url, json=body)
        except (SyncError, ParentCreationFailed) as err:
            _logger.warning("Creating %s %s failed: %s", kind.value, temp_id, err)
            self.state.fail(temp_id)
            return None
        self.state.confirm(temp_id, data["id"], data)
        _logger.debug("Confirmed %s %s as %s", kind.value, temp_id, data["id"])
        return data["id"]

    def _schedule(
        self, temp_id: str, kind: EntityKind, url: str, body: dict[str, Any], parent_key: str
    ) -> None:
        task = asyncio.get_running_loop().create_task(
            self._create(temp_id, kind, url, body, parent_key)
        )
        self._creations[temp_id] = task
        task.add_done_callback(lambda _t: self._creations.pop(temp_id, None))

    async def create_card(self, column_id: str, title: str, **fields: Any) -> str:
        """Inserts a pending card at the end of ``column_id`` and returns its temporary id."""
        body = {"title": title, **fields, "columnId": self.state.resolve(column_id)}
        temp_id = self.state.add_pending(EntityKind.card, column_id, body)
        self._schedule(temp_id, EntityKind.card, "/cards", dict(body), "columnId")
        return temp_id

    async def create_column(self, title: str, width: int = 300) -> str:
        body = {"title": title, "width": width, "boardId": self.state.board_id}
        temp_id = self.state.add_pending(EntityKind.column, self.state.board_id, body)
        self._schedule(temp_id, EntityKind.column, "/columns", dict(body), "boardId")
        return temp_id

    async def wait_settled(self) -> None:
        while self._creations:
            await asyncio.gather(*list(self._creations.values()), return_exceptions=True)

    # === Mutations ===

    async def _patch(
        self, entity_id: str, url: str, patch: dict[str, Any], local_fields: tuple[str, ...]
    ) -> MutationResult:
        local = {k: v for k, v in patch.items() if k in local_fields}
        if (answer := self._short_circuit(entity_id)) is not None:
            if answer is SYNTHETIC and local:
                # shown until the creation payload lands and replaces it
                self.state.patch(entity_id, local)
            return answer

        entity_id = self.state.resolve(entity_id)
        previous = self.state.patch(entity_id, local)
        try:
            data = await self._request("PATCH", url.format(id=entity_id), json=patch)
        except SyncError:
            self.state.patch(entity_id, previous)
            raise
        self.state.patch(entity_id, {k: v for k, v in data.items() if k != "id"})
        return MutationResult(data=data)

    async def update_card(self, card_id: str, patch: dict[str, Any]) -> MutationResult:
        return await self._patch(card_id, "/cards/{id}", patch, CARD_FIELDS)

    async def update_column(self, column_id: str, patch: dict[str, Any]) -> MutationResult:
        return await self._patch(column_id, "/columns/{id}", patch, COLUMN_FIELDS)

    async def _delete(self, entity_id: str, url: str) -> MutationResult:
        if (answer := self._short_circuit(entity_id)) is not None:
            return answer
        entity, position = self.state.detach(entity_id)
        try:
            await self._request("DELETE", url.format(id=entity.id))
        except SyncError:
            self.state.reattach(entity, position)
            raise
        self.state.forget(entity.id)
        return MutationResult()

    async def delete_card(self, card_id: str) -> MutationResult:
        return await self._delete(card_id, "/cards/{id}")

    async def delete_column(self, column_id: str) -> MutationResult:
        return await self._delete(column_id, "/columns/{id}")

    async def _move(
        self, entity_id: str, parent_id: str, index: int, url: str, body: dict[str, Any]
    ) -> MutationResult:
        for referenced in (entity_id, parent_id):
            if (answer := self._short_circuit(referenced)) is not None:
                return answer

        entity_id = self.state.resolve(entity_id)
        before = self.state.position(entity_id)
        self.state.apply_move(entity_id, parent_id, index)
        try:
            await self._request("POST", url.format(id=entity_id), json=body)
        except SyncError:
            # back to the last known good position
            self.state.apply_move(entity_id, before.parent_id, before.index)
            raise
        return MutationResult()

    async def move_card(self, card_id: str, target_column_id: str, index: int) -> MutationResult:
        target = self.state.resolve(target_column_id)
        return await self._move(
            card_id,
            target,
            index,
            "/cards/{id}/move",
            {"targetColumnId": target, "order": index},
        )

    async def move_column(self, column_id: str, index: int) -> MutationResult:
        return await self._move(
            column_id,
            self.state.board_id,
            index,
            "/columns/{id}/move",
            {"order": index},
        )
