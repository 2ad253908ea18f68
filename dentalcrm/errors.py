# dentalcrm/errors.py
class CRUDError(Exception):
    pass


class NotFoundError(CRUDError):
    pass


class ConflictError(CRUDError):
    """Write would break a uniqueness or scheduling rule."""

    def __init__(self, message: str, conflicts=None):
        super().__init__(message)
        self.conflicts = conflicts or []


class InvalidTransitionError(CRUDError):
    def __init__(self, entity: str, current, requested):
        self.entity = entity
        self.current = getattr(current, "value", current)
        self.requested = getattr(requested, "value", requested)
        super().__init__(f"Cannot change {entity} status from '{self.current}' to '{self.requested}'")
