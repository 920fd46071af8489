"""Client-held board state with optimistic entities.

Entities live in a flat arena keyed by id; parents keep ordered lists of
child ids. Entities created optimistically get a temporary id and stay
``PENDING`` until the server answers. Confirmation rewrites every reference
to the temporary id in one synchronous call and records an alias, so code
holding the old id can still ``resolve`` it.

Everything here is synchronous and meant to run on a single event loop: no
method awaits, so no other task can observe a half-applied update.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..ids import TEMP_CARD_PREFIX, TEMP_COLUMN_PREFIX, is_temporary_id, new_temp_id

_logger = logging.getLogger(__name__)


class EntityKind(str, Enum):
    card = "card"
    column = "column"


class EntityStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


PARENT_KEY = {EntityKind.card: "columnId", EntityKind.column: "boardId"}
TEMP_PREFIX = {EntityKind.card: TEMP_CARD_PREFIX, EntityKind.column: TEMP_COLUMN_PREFIX}


@dataclass
class LocalEntity:
    id: str
    kind: EntityKind
    parent_id: str
    data: dict[str, Any] = field(default_factory=dict)
    status: EntityStatus = EntityStatus.CONFIRMED


@dataclass(frozen=True)
class Position:
    parent_id: str
    index: int


class BoardState:
    def __init__(self, board_id: str) -> None:
        self.board_id = board_id
        self.entities: dict[str, LocalEntity] = {}
        # parent id -> ordered child ids; the board is the parent of columns
        self.children: dict[str, list[str]] = {board_id: []}
        # cached detail views (e.g. an open card sheet), keyed like entities
        self.details: dict[str, dict[str, Any]] = {}
        # temporary id -> real id, kept after confirmation
        self.aliases: dict[str, str] = {}
        self.failed: set[str] = set()

    @classmethod
    def from_view(cls, view: dict[str, Any]) -> BoardState:
        """Builds the state from a ``GET /boards/{id}`` body."""
        state = cls(view["board"]["id"])
        for column in sorted(view["columns"], key=lambda c: (c["order"], c["id"])):
            state._attach(LocalEntity(column["id"], EntityKind.column, state.board_id, dict(column)))
        for card in sorted(view["cards"], key=lambda c: (c["order"], c["id"])):
            state._attach(LocalEntity(card["id"], EntityKind.card, card["columnId"], dict(card)))
        return state

    # === Lookups ===

    def resolve(self, entity_id: str) -> str:
        return self.aliases.get(entity_id, entity_id)

    def get(self, entity_id: str) -> LocalEntity | None:
        return self.entities.get(self.resolve(entity_id))

    def status(self, entity_id: str) -> EntityStatus | None:
        if entity_id in self.failed:
            return EntityStatus.FAILED
        entity = self.get(entity_id)
        return entity.status if entity else None

    def is_pending(self, entity_id: str) -> bool:
        return self.status(entity_id) is EntityStatus.PENDING

    def ordered_ids(self, parent_id: str) -> list[str]:
        return list(self.children.get(self.resolve(parent_id), []))

    def columns(self) -> list[LocalEntity]:
        return [self.entities[i] for i in self.children[self.board_id]]

    def cards(self, column_id: str) -> list[LocalEntity]:
        return [self.entities[i] for i in self.ordered_ids(column_id)]

    def position(self, entity_id: str) -> Position:
        entity = self.entities[self.resolve(entity_id)]
        return Position(entity.parent_id, self.children[entity.parent_id].index(entity.id))

    # === Structure ===

    def _attach(self, entity: LocalEntity, index: int | None = None) -> None:
        self.entities[entity.id] = entity
        siblings = self.children.setdefault(entity.parent_id, [])
        if index is None or index >= len(siblings):
            siblings.append(entity.id)
        else:
            siblings.insert(index, entity.id)
        if entity.kind is EntityKind.column:
            self.children.setdefault(entity.id, [])

    def _forget(self, entity_id: str) -> None:
        """Drops an already detached entity and everything below it."""
        self.entities.pop(entity_id, None)
        self.details.pop(entity_id, None)
        for child_id in self.children.pop(entity_id, []):
            self._forget(child_id)

    def detach(self, entity_id: str) -> tuple[LocalEntity, Position]:
        entity_id = self.resolve(entity_id)
        position = self.position(entity_id)
        self.children[position.parent_id].remove(entity_id)
        return self.entities[entity_id], position

    def reattach(self, entity: LocalEntity, position: Position) -> None:
        self._attach(entity, position.index)

    def forget(self, entity_id: str) -> None:
        self._forget(self.resolve(entity_id))

    # === Optimistic entities ===

    def add_pending(self, kind: EntityKind, parent_id: str, data: dict[str, Any]) -> str:
        parent_id = self.resolve(parent_id)
        temp_id = new_temp_id(TEMP_PREFIX[kind])
        payload = dict(data, id=temp_id)
        payload[PARENT_KEY[kind]] = parent_id
        self._attach(LocalEntity(temp_id, kind, parent_id, payload, EntityStatus.PENDING))
        return temp_id

    def confirm(self, temp_id: str, real_id: str, data: dict[str, Any]) -> None:
        """Swaps ``temp_id`` for ``real_id`` everywhere it is referenced."""
        entity = self.entities.pop(temp_id, None)
        if entity is None:
            _logger.debug("Nothing to confirm for %s", temp_id)
            return

        entity.id = real_id
        entity.data = {**entity.data, **data, "id": real_id}
        entity.status = EntityStatus.CONFIRMED
        self.entities[real_id] = entity

        siblings = self.children[entity.parent_id]
        siblings[siblings.index(temp_id)] = real_id

        if temp_id in self.children:
            child_ids = self.children.pop(temp_id)
            self.children[real_id] = child_ids
            for child_id in child_ids:
                child = self.entities[child_id]
                child.parent_id = real_id
                child.data[PARENT_KEY[child.kind]] = real_id

        if temp_id in self.details:
            self.details[real_id] = {**self.details.pop(temp_id), **data, "id": real_id}

        self.aliases[temp_id] = real_id

    def fail(self, temp_id: str) -> None:
        """Purges an entity whose creation errored, with anything created under it."""
        self.failed.add(temp_id)
        if temp_id not in self.entities:
            # already purged with a failed parent
            return
        self.detach(temp_id)
        self._forget(temp_id)

    # === Local mutations ===

    def apply_move(self, entity_id: str, parent_id: str, index: int) -> None:
        entity, _ = self.detach(entity_id)
        parent_id = self.resolve(parent_id)
        entity.parent_id = parent_id
        entity.data[PARENT_KEY[entity.kind]] = parent_id
        self._attach(entity, index)

    def patch(self, entity_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        """Applies ``fields`` and returns the previous values, to undo the patch."""
        entity = self.entities[self.resolve(entity_id)]
        previous = {key: entity.data.get(key) for key in fields}
        entity.data.update(fields)
        if entity.id in self.details:
            self.details[entity.id].update(fields)
        return previous

    def cache_detail(self, entity_id: str, detail: dict[str, Any]) -> None:
        self.details[self.resolve(entity_id)] = dict(detail)


def is_unconfirmed(state: BoardState, entity_id: str) -> bool:
    """True while ``entity_id`` still names an entity the server does not know."""
    return is_temporary_id(state.resolve(entity_id))
