"""
Service-layer exceptions shared by the messaging and alerting services.

Both subclass ValueError so callers that only care about "bad input" can catch
one type; routes map them to 400 and 404 respectively.
"""


class ValidationError(ValueError):
    """An invariant was violated when creating or updating a record."""

    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(message)


class NotFoundError(ValueError):
    """Operation on a message, rule or alert id that does not exist."""

    def __init__(self, entity: str, entity_id):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")
