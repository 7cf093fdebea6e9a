class PolicyError(ValueError):
    """Request is well-formed but not allowed right now (cutoff, state, duplicate)."""


class ConflictError(RuntimeError):
    """Row changed between read and conditional write; caller should re-fetch and retry."""


class NotFoundError(LookupError):
    pass
