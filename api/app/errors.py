"""Error taxonomy shared by the queue, the decision engine and the batch orchestrator."""


class MediaSortError(Exception):
    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class TransientCollaboratorError(MediaSortError):
    """Network or timeout failure talking to an enrichment, AI or routing collaborator."""


class PermanentValidationError(MediaSortError):
    """Input or configuration problem that retrying will not fix."""


class NotFoundError(MediaSortError):
    def __init__(self, entity_type: str, entity_id: object) -> None:
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} {entity_id} not found")


class InvalidStateError(MediaSortError):
    """Lifecycle transition not allowed from the entity's current status."""


class ExhaustedRetriesError(MediaSortError):
    def __init__(self, attempts: int, max_attempts: int, last_error: str) -> None:
        self.attempts = attempts
        self.max_attempts = max_attempts
        self.last_error = last_error
        super().__init__(f"Failed after {attempts}/{max_attempts} attempts: {last_error}")
