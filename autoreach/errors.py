"""
AutoReach - Error taxonomy

Policy rejections and resource exhaustion are raised to the caller; detection
uncertainty and defense encounters are reported as result values instead.
"""

from __future__ import annotations

from enum import Enum


class AutomationError(Exception):
    """Base class for every error raised by the engine."""


class ConfigError(AutomationError):
    """Configuration file missing, unreadable or invalid."""


class PolicyRejection(AutomationError):
    """A trust-policy layer (origin or consent) refused the request."""

    def __init__(self, layer: str, reason: str) -> None:
        super().__init__(f"{layer} rejected: {reason}")
        self.layer = layer
        self.reason = reason


class OriginRejected(PolicyRejection):
    def __init__(self, origin: str, reason: str) -> None:
        super().__init__("origin", reason)
        self.origin = origin


class ConsentCode(str, Enum):
    """Reason codes for consent state-machine rejections."""
    NOT_FOUND = "not_found"
    NOT_PENDING = "not_pending"
    EXPIRED = "expired"
    ACTION_NOT_ALLOWED = "action_not_allowed"
    TOO_MANY_PENDING = "too_many_pending"
    NO_VALID_PERMISSIONS = "no_valid_permissions"
    ORIGIN_MISMATCH = "origin_mismatch"
    ACTION_MISMATCH = "action_mismatch"
    INSUFFICIENT_PERMISSIONS = "insufficient_permissions"
    USER_MISMATCH = "user_mismatch"


class ConsentRejected(PolicyRejection):
    def __init__(self, code: ConsentCode, reason: str) -> None:
        super().__init__("consent", reason)
        self.code = code


class ResourceExhaustion(AutomationError):
    """A bounded pool has no free capacity; retry later."""


class PoolExhausted(ResourceExhaustion):
    pass


class TabLimitExceeded(ResourceExhaustion):
    pass


class ResourceNotFound(AutomationError):
    pass


class InstanceNotFound(ResourceNotFound):
    pass


class TabNotFound(ResourceNotFound):
    pass


class TransientIO(AutomationError):
    """Network or browser I/O failure that may succeed on a later attempt."""


class NavigationError(TransientIO):
    pass


class BrowserLaunchError(TransientIO):
    pass


class DriverTimeout(TransientIO):
    pass


class RequestCancelled(AutomationError):
    """The caller abandoned the request; held resources have been released."""
