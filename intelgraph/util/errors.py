"""Exception types shared across the pipeline."""


class IntelGraphError(Exception):
    """Base class for pipeline errors."""


class DatastoreUnavailableError(IntelGraphError):
    """The document store could not be reached; the run must abort."""


class LLMCallError(IntelGraphError):
    """An LLM or embedding request timed out or failed in transport."""


class LLMResponseError(IntelGraphError):
    """The model answered, but not with the structure we asked for."""
