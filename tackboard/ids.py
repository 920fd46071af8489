import uuid

TEMP_ID_PREFIX = "temp_"
TEMP_CARD_PREFIX = "temp_card_"
TEMP_COLUMN_PREFIX = "temp_col_"


def new_uuid() -> str:
    return str(uuid.uuid4())


def is_temporary_id(entity_id: str) -> bool:
    """Ids minted by the optimistic client before the server confirmed creation."""
    return entity_id.startswith(TEMP_ID_PREFIX)


def new_temp_id(prefix: str = TEMP_ID_PREFIX) -> str:
    if not prefix.startswith(TEMP_ID_PREFIX):
        raise ValueError(f"temporary id prefix must start with {TEMP_ID_PREFIX!r}: {prefix!r}")
    return f"{prefix}{uuid.uuid4().hex}"
