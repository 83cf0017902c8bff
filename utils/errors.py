from typing import Optional


class NovelEngineError(Exception):
    pass



class ProviderError(NovelEngineError):
    """Transient provider failure: network, rate limit, empty response or timeout."""

    def __init__(self, message: str, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts



class ParseError(NovelEngineError):
    """The provider answered, but the content does not match the expected structure."""

    def __init__(self, message: str, raw_output: str = ""):
        super().__init__(message)
        self.raw_output = raw_output



class GenerationFailure(NovelEngineError):
    pass



class PersistenceError(NovelEngineError):
    pass



class ConcurrentRunConflict(NovelEngineError):

    def __init__(self, project_id: str, owner: Optional[str] = None):
        super().__init__(f"project '{project_id}' already has an active run (owner={owner})")
        self.project_id = project_id
        self.owner = owner



class InvalidTransition(NovelEngineError):
    pass
