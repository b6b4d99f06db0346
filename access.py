"""Role and ownership checks.

Every core operation is handed an already-resolved ``Identity``; nothing in
here reads the session.
"""
from collections import namedtuple

from errors import Forbidden, Unauthorized, PreconditionFailed
from models import ROLE_HOSPITAL, ROLE_DONOR_RECEIVER

Identity = namedtuple("Identity", ["user_id", "role"])


def require_authenticated(identity):
    if identity is None or identity.user_id is None:
        raise Unauthorized()
    return identity


def require_role(identity, *roles):
    require_authenticated(identity)
    if identity.role not in roles:
        raise Forbidden()
    return identity


def require_hospital(identity):
    return require_role(identity, ROLE_HOSPITAL)


def require_donor_receiver(identity):
    return require_role(identity, ROLE_DONOR_RECEIVER)


def require_self(identity, subject_id):
    require_authenticated(identity)
    if identity.user_id != subject_id:
        raise Forbidden("You can only update your own profile")
    return identity


def can_delete_request(identity, blood_request):
    """Hospitals may delete any request, requesters only their own."""
    if identity is None:
        return False
    return identity.role == ROLE_HOSPITAL or identity.user_id == blood_request.requested_by_id


def require_can_delete_user(identity, target):
    require_hospital(identity)
    if target.is_verified:
        raise PreconditionFailed("Verified users cannot be deleted")
    return identity
