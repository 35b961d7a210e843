"""Domain exceptions for the marketplace trust layer.

These exceptions are framework-agnostic and represent business rule
violations. The API layer's middleware translates them to HTTP responses.
None of them is retried inside the core.
"""


class TrustLayerError(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str, code: str = "TRUST_LAYER_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(self.message)


# --- Validation ---


class ValidationError(TrustLayerError):
    """Missing or invalid field, or an operation the current state forbids."""

    def __init__(self, message: str, code: str = "VALIDATION_ERROR") -> None:
        super().__init__(message=message, code=code)


class InvalidStateTransitionError(ValidationError):
    """Raised when an attempted state transition is not in the edge table.

    Example: released -> in_escrow (released is terminal).
    """

    def __init__(self, entity: str, current_state: str, attempted_state: str) -> None:
        super().__init__(
            message=f"Invalid {entity} transition: {current_state} -> {attempted_state}",
            code="INVALID_STATE_TRANSITION",
        )
        self.entity = entity
        self.current_state = current_state
        self.attempted_state = attempted_state


# --- Lookup ---


class NotFoundError(TrustLayerError):
    """Entity absent or not visible to the caller.

    Both cases produce the same error so that existence is never leaked.
    """

    def __init__(self, entity: str, entity_id: object) -> None:
        super().__init__(
            message=f"{entity} not found: {entity_id}",
            code="NOT_FOUND",
        )
        self.entity = entity
        self.entity_id = entity_id


# --- Authorization ---


class AuthorizationError(TrustLayerError):
    """The caller's actor type lacks permission for the requested action."""

    def __init__(self, actor_type: str, action: str) -> None:
        super().__init__(
            message=f"Actor type '{actor_type}' may not perform '{action}'",
            code="FORBIDDEN",
        )
        self.actor_type = actor_type
        self.action = action


# --- Conflicts ---


class ConflictError(TrustLayerError):
    """A uniqueness rule would be broken (second active dispute, duplicate reference)."""

    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="CONFLICT")


# --- Persistence ---


class PersistenceError(TrustLayerError):
    """A database or integrity failure, kept apart from the business errors above.

    The caller decides whether to resubmit.
    """

    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="PERSISTENCE_ERROR")
