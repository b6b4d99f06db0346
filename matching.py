import re

from sqlalchemy import case

from models import (User, BloodRequest, BLOOD_GROUPS, ROLE_DONOR_RECEIVER,
                    STATUS_PENDING, PRIORITY_EMERGENCY)
from errors import ValidationError


def canonical_blood(bg):
    if not bg: return None
    s = str(bg).upper().strip()
    s = re.sub(r'\s+', '', s)
    s = s.replace('POSITIVE', '+').replace('NEGATIVE', '-')
    s = s.replace('POS', '+').replace('NEG', '-').replace('+VE', '+').replace('-VE', '-')
    return s


def normalize_blood_group(bg, required=True):
    """Return the canonical group for ``bg`` or raise ValidationError."""
    s = canonical_blood(bg)
    if s is None:
        if required:
            raise ValidationError("Blood group is required")
        return None
    if s not in BLOOD_GROUPS:
        raise ValidationError("Invalid blood group. Allowed: " + ", ".join(BLOOD_GROUPS))
    return s


def priority_first():
    """ORDER BY terms: emergency before normal, then newest first."""
    rank = case((BloodRequest.priority == PRIORITY_EMERGENCY, 1), else_=0)
    return [rank.desc(), BloodRequest.created_at.desc(), BloodRequest.id.desc()]


def find_donors(exclude_user_id=None, blood_group=None, location=None, available=False):
    query = User.query.filter(User.role == ROLE_DONOR_RECEIVER, User.can_donate.is_(True))

    if blood_group and blood_group != "all":
        query = query.filter(User.blood_group == normalize_blood_group(blood_group))
    if available:
        query = query.filter(User.availability_status.is_(True))
    if exclude_user_id is not None:
        query = query.filter(User.id != exclude_user_id)
    if location:
        query = query.filter(User.location.ilike(f"%{location.strip()}%"))

    return query.order_by(User.availability_status.desc(),
                          User.donation_count.desc(),
                          User.id).all()


def incoming_requests(donor):
    """Pending requests a donor could answer; never the donor's own."""
    if donor is None or not donor.availability_status or not donor.blood_group:
        return []
    return (BloodRequest.query
            .filter(BloodRequest.blood_group == donor.blood_group,
                    BloodRequest.status == STATUS_PENDING,
                    BloodRequest.requested_by_id != donor.id)
            .order_by(*priority_first())
            .all())
