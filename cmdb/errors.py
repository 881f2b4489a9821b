"""
cmdb/errors.py -- Domain error taxonomy.

api/main.py maps each class to an HTTP status; the CLI maps them to a
non-zero exit code. Domain code raises these instead of HTTPException so it
stays usable outside a request.
"""


class CMDBError(Exception):
    """Base class for registry errors."""


class NotAuthenticatedError(CMDBError):
    """No principal was supplied to an operation that requires one."""


class PermissionDeniedError(CMDBError):
    """The principal is known but may not act on this resource."""


class NotFoundError(CMDBError):
    """A referenced organization, device, schedule, link or notification is missing."""


class InvalidInputError(CMDBError):
    """A value failed validation inside a domain operation."""
