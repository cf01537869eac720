"""Exception types shared across continuity modules."""


class ContinuityError(Exception):
    """Base class for continuity errors."""

    pass


class NotFoundError(ContinuityError):
    """Referenced instance (or checkpoint) does not exist."""

    def __init__(self, kind: str, identifier: str):
        super().__init__(f"{kind} not found: {identifier}")
        self.kind = kind
        self.identifier = identifier


class InvalidInstanceIdError(ContinuityError, ValueError):
    """Instance ID does not match the {project}-{code}-{hash} format."""

    pass


class ActiveInstanceError(ContinuityError):
    """Instance is still heartbeating and cannot be resumed."""

    def __init__(self, instance_id: str, age_seconds: float):
        super().__init__(
            f"Cannot resume active instance {instance_id}. "
            f"Last heartbeat: {int(age_seconds)}s ago"
        )
        self.instance_id = instance_id
        self.age_seconds = age_seconds


class SequenceConflictError(ContinuityError):
    """Concurrent append claimed the same sequence number.

    Raised and retried inside the stores; callers never see it.
    """

    def __init__(self, instance_id: str, table: str):
        super().__init__(f"Sequence conflict on {table} for instance {instance_id}")
        self.instance_id = instance_id
        self.table = table


class InvalidChoiceError(ContinuityError, ValueError):
    """Disambiguation choice index is out of range."""

    def __init__(self, choice: int, candidates: int):
        super().__init__(f"Invalid choice {choice}. Must be between 1 and {candidates}")
        self.choice = choice
        self.candidates = candidates


class ProbeError(ContinuityError):
    """The filesystem/VCS probe could not answer."""

    pass
