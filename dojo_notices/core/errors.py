"""
Error taxonomy for notice publishing and delivery.

Validation errors are raised before any write. Store errors on the anchor
Notice document propagate to the caller. Failures on individual inbox
projections never raise; they are reported through PartialFanoutFailure
results (see dojo_notices.models.notice).
"""


class NoticeError(Exception):
    """Base class for every error raised by the notices subsystem."""


class InvalidAudience(NoticeError):
    """The audience declaration is not one of the known shapes."""


class InvalidNotice(NoticeError):
    """The notice input failed validation (empty title, bad window, ...)."""


class NotFound(NoticeError):
    """The requested document does not exist."""


class PermissionDenied(NoticeError):
    """The authorization layer rejected a read."""


class DeliveryUnavailable(NoticeError):
    """Both the direct read and the inbox fallback were denied or failed."""


class StoreError(NoticeError):
    """The document store rejected or failed an operation."""


class StoreUnavailable(StoreError):
    """The document store could not be reached."""
