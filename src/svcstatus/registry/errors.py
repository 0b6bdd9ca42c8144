"""Error taxonomy for the status registry."""


class RegistryError(Exception):
    """Base class for all registry errors."""


class InvalidRecord(RegistryError):
    """A status record is missing required fields or carries malformed values.

    Raised immediately and never retried: it is a bug in the caller.
    """


class StoreUnavailable(RegistryError):
    """The backing store could not be reached or did not answer in time.

    Transient. A heartbeat that fails with this error is simply retried on the
    next scheduled interval.
    """


class WriteConflict(RegistryError):
    """Concurrent writes to the same row collided.

    Only used inside the store, which retries the operation; callers never see it.
    """
