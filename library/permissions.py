"""
Authorization predicates.

The caller's identity is always passed in explicitly; nothing here reads
request state.
"""

from typing import Optional, Union

from bson import ObjectId

from library.errors import ForbiddenError, UnauthenticatedError
from library.models import Identity, Role


def require_login(identity: Optional[Identity]) -> Identity:
    """Fail with Unauthenticated when there is no caller."""
    if identity is None:
        raise UnauthenticatedError("Unauthorised user")
    return identity


def require_admin(identity: Optional[Identity]) -> Identity:
    """Fail unless the caller is an authenticated admin."""
    identity = require_login(identity)
    if identity.role != Role.ADMIN:
        raise ForbiddenError("Access forbidden: You do not have the required permissions")
    return identity


def is_owner_or_admin(identity: Identity, owner_id: Union[str, ObjectId]) -> bool:
    return identity.role == Role.ADMIN or identity.id == str(owner_id)


def require_owner_or_admin(
    identity: Optional[Identity],
    owner_id: Union[str, ObjectId],
    action: str = "modify this resource"
) -> Identity:
    """
    Fail unless the caller owns the resource or is an admin.

    Args:
        identity: The authenticated caller
        owner_id: Id of the user owning the resource
        action: Phrase used in the error message

    Returns:
        The caller's identity
    """
    identity = require_login(identity)
    if not is_owner_or_admin(identity, owner_id):
        raise ForbiddenError(f"You do not have permission to {action}")
    return identity
