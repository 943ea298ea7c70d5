class WorkflowError(ValueError):
    """A request that the current state of the records does not allow."""


class RecordNotFoundError(LookupError):
    pass
