"""Error kinds raised by identity resolution."""
from __future__ import annotations


class IdentityError(Exception):
    """Base class for every identity resolution failure."""


class InvalidRequest(IdentityError):
    """The request carries no usable identity fragment, or a malformed one."""


class ConstraintViolation(IdentityError):
    """An attempt to create a contact with neither email nor phone."""


class InvariantViolation(IdentityError):
    """Stored cluster state breaks the one-primary, one-level linkage rules."""


class StoreUnavailable(IdentityError):
    """The unit of work could not be completed and was rolled back."""


class LockTimeout(StoreUnavailable):
    """A bounded wait for an identity lock or pooled connection expired."""


class ConcurrentModification(IdentityError):
    """A cluster changed underneath the current transaction; retry it."""
