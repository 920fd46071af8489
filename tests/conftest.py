from collections.abc import Iterator
from contextlib import contextmanager

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from tackboard.activity import ActivityLogHook
from tackboard.db import Database
from tackboard.main import create_app
from tackboard.moves import MoveService
from tackboard.retry import RetryPolicy
from tackboard.settings import Settings
from tackboard.storage import BoardStore


class SerializationFailure(Exception):
    pgcode = "40001"


class FlakyDatabase(Database):
    """Fails the commit of the next ``failures`` write transactions, then behaves."""

    failures = 0
    transactions = 0

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        self.transactions += 1
        with super().transaction() as session:
            yield session
            if self.failures > 0:
                self.failures -= 1
                raise OperationalError(
                    "COMMIT", {}, SerializationFailure("could not serialize access")
                )


def auth(user_id: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {user_id}"}


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(DATABASE_URL=f"sqlite:///{tmp_path / 'tackboard.db'}")


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def retry_policy(sleeps) -> RetryPolicy:
    return RetryPolicy(max_attempts=3, base_delay=0.1, sleep=sleeps.append)


@pytest.fixture
def database(settings) -> Iterator[FlakyDatabase]:
    db = FlakyDatabase(settings)
    db.connect()
    yield db
    db.dispose()


@pytest.fixture
def activity(database) -> ActivityLogHook:
    return ActivityLogHook(database)


@pytest.fixture
def store(database, activity) -> BoardStore:
    return BoardStore(database, activity)


@pytest.fixture
def moves(database, retry_policy, activity) -> MoveService:
    return MoveService(database, retry_policy, activity)


@pytest.fixture
def app(settings, database, retry_policy):
    return create_app(settings, database=database, retry_policy=retry_policy)


@pytest.fixture
def client(app) -> Iterator[TestClient]:
    with TestClient(app) as test_client:
        yield test_client
