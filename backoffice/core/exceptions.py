"""
Exception taxonomy for the back-office core
"""
from typing import Optional


class BackofficeError(Exception):
    """Base class for all back-office errors"""


class PreconditionError(BackofficeError):
    """Rejected synchronously with no mutation"""


class InvalidTransition(PreconditionError):
    def __init__(self, return_id, action: str, current_status: Optional[str]):
        self.return_id = return_id
        self.action = action
        self.current_status = current_status
        super().__init__(
            f"Cannot {action} return {return_id} from status '{current_status}'"
        )


class MissingActor(PreconditionError):
    def __init__(self, action: str):
        self.action = action
        super().__init__(f"Action '{action}' requires an acting user")


class IdentityConflict(BackofficeError):
    """
    Identity map uniqueness collision that the caller did not resolve first.
    Never retried and never swallowed by batch isolation.
    """

    def __init__(self, platform: str, entity_type: str, message: str):
        self.platform = platform
        self.entity_type = entity_type
        super().__init__(f"[{platform}/{entity_type}] {message}")


class TransientError(BackofficeError):
    """Downstream API timeout or 5xx"""


class ChannelParseError(BackofficeError):
    """Channel payload is missing the identifiers needed to reconcile it"""
