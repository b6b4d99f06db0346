"""Per-hospital blood stock.

Adjustments are a plain read-modify-write. Two hospital staff adjusting the
same group at the same instant can lose one delta; this is a manually kept
counter, so no row locking is taken.
"""
import logging
from datetime import datetime

from sqlalchemy.exc import IntegrityError

from models import db, HospitalBloodStock, BLOOD_GROUPS
from access import require_hospital
from errors import ValidationError
from matching import normalize_blood_group

logger = logging.getLogger(__name__)


def _stock_row(hospital_id, blood_group):
    return HospitalBloodStock.query.filter_by(hospital_id=hospital_id, blood_group=blood_group).first()


def initialize_inventory(hospital_id):
    """Make sure all 8 blood groups have a row for this hospital. Idempotent."""
    existing = {row.blood_group for row in HospitalBloodStock.query.filter_by(hospital_id=hospital_id)}
    missing = [bg for bg in BLOOD_GROUPS if bg not in existing]
    if not missing:
        return 0

    for bg in missing:
        db.session.add(HospitalBloodStock(hospital_id=hospital_id, blood_group=bg, units_available=0))
    try:
        db.session.commit()
    except IntegrityError:
        # another request created the rows first
        db.session.rollback()
        return 0
    logger.info("Initialized %d stock rows for hospital %s", len(missing), hospital_id)
    return len(missing)


def adjust_inventory(hospital_id, blood_group, delta):
    blood_group = normalize_blood_group(blood_group)
    if isinstance(delta, bool) or not isinstance(delta, int):
        raise ValidationError("Delta must be an integer")

    row = _stock_row(hospital_id, blood_group)
    if row is None:
        db.session.add(HospitalBloodStock(hospital_id=hospital_id, blood_group=blood_group, units_available=0))
        try:
            db.session.commit()
        except IntegrityError:
            # created concurrently; use that row
            db.session.rollback()
        row = _stock_row(hospital_id, blood_group)

    row.units_available = max(0, (row.units_available or 0) + delta)
    row.last_updated = datetime.utcnow()
    db.session.commit()
    logger.info("Hospital %s stock %s %+d -> %d", hospital_id, blood_group, delta, row.units_available)
    return row


def get_inventory(hospital_id):
    initialize_inventory(hospital_id)
    rows = HospitalBloodStock.query.filter_by(hospital_id=hospital_id).all()
    order = {bg: i for i, bg in enumerate(BLOOD_GROUPS)}
    return sorted(rows, key=lambda r: order.get(r.blood_group, len(order)))


# ---------- caller-facing wrappers ----------

def hospital_inventory(identity):
    require_hospital(identity)
    return get_inventory(identity.user_id)


def hospital_adjust(identity, blood_group, delta):
    require_hospital(identity)
    return adjust_inventory(identity.user_id, blood_group, delta)
