from uuid import UUID

from freeride.core.errors import NotFoundError


def as_uuid(value, entity: str) -> UUID:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except (TypeError, ValueError):
        raise NotFoundError(entity, value)
