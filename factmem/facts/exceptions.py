class FactMemoryError(Exception):
    """Base exception for fact memory errors."""

    pass


class NotFoundError(FactMemoryError):
    """Raised by strict lookups when a fact is not recorded; the caller should ask the user."""

    def __init__(self, fact_key: str, user_id: str):
        self.fact_key = fact_key
        self.user_id = user_id
        super().__init__(f"{fact_key} not found for user {user_id}")


class PersistenceError(FactMemoryError):
    """Raised when the persistence backend fails."""

    pass


class EntityConflictError(PersistenceError):
    """Raised on insert when the canonical identity already exists."""

    def __init__(self, user_id: str, entity_type: str, entity_subtype: str | None, canonical_name: str):
        self.user_id = user_id
        self.entity_type = entity_type
        self.entity_subtype = entity_subtype
        self.canonical_name = canonical_name
        super().__init__(
            f"Entity {entity_type}/{entity_subtype or '-'}/{canonical_name!r} already exists for {user_id}"
        )


class ValidationWarning(UserWarning):
    """Non-fatal: a generated prompt is missing an expected fact."""

    pass
