from __future__ import annotations

from typing import Annotated

from pydantic import Field, NonNegativeFloat, PositiveInt
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="TACKBOARD_", case_sensitive=False)

    DATABASE_URL: str = "sqlite:///./tackboard.db"
    ISOLATION_LEVEL: Annotated[
        str,
        Field(description="Isolation level of every transaction; SQLite serializes writers instead"),
    ] = "SERIALIZABLE"

    MOVE_MAX_ATTEMPTS: Annotated[
        PositiveInt,
        Field(description="Total attempts of a move transaction, first one included"),
    ] = 3
    MOVE_RETRY_BASE_DELAY: Annotated[
        NonNegativeFloat,
        Field(description="Seconds to wait before the second attempt, doubled afterwards"),
    ] = 0.1

    ACTIVITY_DETAILS_MAX_BYTES: PositiveInt = 65535

    LOG_LEVEL: str = "INFO"
    HOST: str = "0.0.0.0"
    PORT: PositiveInt = 8000

    CLIENT_TIMEOUT: Annotated[
        NonNegativeFloat,
        Field(description="HTTP timeout in seconds of the optimistic sync client"),
    ] = 10.0
