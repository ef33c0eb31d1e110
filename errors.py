"""
Error taxonomy for FarmLink.

Store and session errors propagate to the caller. Stats and activity
bookkeeping log and continue instead of raising (see stats.py, activity.py).
"""


class FarmLinkError(Exception):
    """Base class for every error raised by the FarmLink core."""


class StorageUnavailableError(FarmLinkError):
    """The underlying storage failed to open or initialize."""


class DuplicateKeyError(FarmLinkError):
    def __init__(self, collection: str, field: str, value):
        self.collection = collection
        self.field = field
        self.value = value
        super().__init__(f"Duplicate {field} in {collection}: {value!r}")


class NotFoundError(FarmLinkError):
    def __init__(self, collection: str, key):
        self.collection = collection
        self.key = key
        super().__init__(f"{collection} record not found: {key!r}")


class AlreadyExistsError(FarmLinkError):
    """Sign-up with an email that is already registered."""


class InvalidCredentialsError(FarmLinkError):
    # Same message for unknown email and wrong password
    def __init__(self):
        super().__init__("Invalid email or password")


class NotSignedInError(FarmLinkError):
    def __init__(self):
        super().__init__("No user is signed in")


class PermissionDeniedError(FarmLinkError):
    """A user tried to change a record owned by someone else."""


class InvalidTransitionError(FarmLinkError):
    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move order from {current} to {target}")
