class DockbackError(Exception):
    """Base class for engine errors."""


class ConflictError(DockbackError):
    """A concurrent mutation lost a race; re-read and retry."""


class NotFoundError(DockbackError):
    """A referenced id does not exist."""


class BrokenChainError(DockbackError):
    """A restore path contains a missing, corrupt or deleted link."""


class LeaseExpiredError(DockbackError):
    """The worker no longer owns the job lease and must not commit."""


class IntegrityError(DockbackError):
    """Stored content does not match its recorded checksum."""


class TransferError(DockbackError):
    """The content-transfer service failed to move bytes."""
