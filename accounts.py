import logging
import secrets

from sqlalchemy import or_, update

from models import (db, User, BloodRequest, Announcement, HospitalBloodStock, ROLES,
                    ROLE_DONOR_RECEIVER, ROLE_HOSPITAL, STATUS_PENDING, STATUS_ACCEPTED, STATUS_COMPLETED)
from access import require_self, require_hospital, require_can_delete_user, require_authenticated
from errors import ValidationError, NotFound, Unauthorized, PreconditionFailed, text_value
from matching import normalize_blood_group, find_donors

logger = logging.getLogger(__name__)

PROFILE_FIELDS = ("name", "age", "email", "blood_group", "phone", "location",
                  "can_donate", "availability_status", "profile_image_url")
STATUS_FIELDS = ("can_donate", "availability_status")
TEXT_FIELDS = ("email", "phone", "location", "profile_image_url")


def _as_bool(value, field):
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ("true", "1", "yes", "on"):
        return True
    if isinstance(value, str) and value.lower() in ("false", "0", "no", "off", ""):
        return False
    raise ValidationError(f"{field} must be true or false")


def _as_age(value):
    if value is None or value == "":
        return None
    try:
        age = int(value)
    except (TypeError, ValueError):
        raise ValidationError("Age must be a number")
    if age < 0 or age > 130:
        raise ValidationError("Age is out of range")
    return age


def _apply_fields(user, data, fields):
    for field in fields:
        if field not in data:
            continue
        value = data[field]
        if field in ("can_donate", "availability_status"):
            value = _as_bool(value, field)
        elif field == "blood_group":
            value = normalize_blood_group(value, required=False)
        elif field == "age":
            value = _as_age(value)
        elif field == "name":
            value = text_value(value, "Name", required=True)
        elif field in TEXT_FIELDS:
            value = text_value(value, field.replace("_", " ").capitalize())
        setattr(user, field, value)

    if user.can_donate and not user.blood_group:
        raise ValidationError("Blood group is required for donors")


def get_user(user_id):
    user = db.session.get(User, user_id)
    if user is None:
        raise NotFound("User not found")
    return user


# ---------- self-service ----------

def register(data):
    username = text_value(data.get("username"), "Username")
    password = data.get("password")
    if text_value(password, "Password") is None or not username:
        raise ValidationError("Username and password are required")

    role = data.get("role") or ROLE_DONOR_RECEIVER
    if role not in ROLES:
        raise ValidationError("Role must be one of: " + ", ".join(ROLES))
    if User.query.filter_by(username=username).first():
        raise ValidationError("Username already exists")

    u = User(username=username, role=role, name=text_value(data.get("name"), "Name") or username,
             is_verified=False, id_document_url=text_value(data.get("id_document_url"), "ID document URL"))
    u.set_password(password)
    _apply_fields(u, data, [f for f in PROFILE_FIELDS if f != "name"])

    db.session.add(u)
    db.session.commit()
    logger.info("Registered user %s (%s), pending verification", u.id, u.role)
    return u


def authenticate(username, password):
    username = text_value(username, "Username")
    if text_value(password, "Password") is None or not username:
        raise Unauthorized("Invalid username or password")
    u = User.query.filter_by(username=username).first()
    if u is None or not u.check_password(password):
        raise Unauthorized("Invalid username or password")
    return u


def update_profile(identity, subject_id, data):
    require_self(identity, subject_id)
    u = get_user(subject_id)
    _apply_fields(u, data, PROFILE_FIELDS)
    db.session.commit()
    return u


def search_donors(identity, blood_group=None, location=None, available=False):
    require_authenticated(identity)
    return find_donors(exclude_user_id=identity.user_id, blood_group=blood_group,
                       location=location, available=available)


# ---------- hospital user management ----------

def list_users(identity):
    require_hospital(identity)
    return User.query.order_by(User.created_at.desc(), User.id.desc()).all()


def create_user_by_hospital(identity, data):
    require_hospital(identity)
    name = text_value(data.get("name"), "Name")
    location = text_value(data.get("location"), "Location")
    if not name or not data.get("blood_group") or not location:
        raise ValidationError("Name, blood group, and location are required")

    username = text_value(data.get("username"), "Username") or f"donor-{secrets.token_hex(4)}"
    if User.query.filter_by(username=username).first():
        raise ValidationError("Username already exists")
    password = data.get("password")
    if text_value(password, "Password") is None:
        password = secrets.token_urlsafe(12)

    u = User(username=username, role=ROLE_DONOR_RECEIVER, name=name,
             is_verified=True, created_by_hospital=True)
    u.set_password(password)
    fields = dict(data)
    fields.setdefault("can_donate", True)
    _apply_fields(u, fields, [f for f in PROFILE_FIELDS if f != "name"])

    db.session.add(u)
    db.session.commit()
    logger.info("Hospital %s created user %s", identity.user_id, u.id)
    return u


def verify_user(identity, user_id):
    require_hospital(identity)
    u = get_user(user_id)
    u.is_verified = True
    db.session.commit()
    logger.info("Hospital %s verified user %s", identity.user_id, u.id)
    return u


def update_user_status(identity, user_id, data):
    require_hospital(identity)
    u = get_user(user_id)
    if not any(f in data for f in STATUS_FIELDS):
        raise ValidationError("Nothing to update")
    _apply_fields(u, data, STATUS_FIELDS)
    db.session.commit()
    return u


def delete_user(identity, user_id):
    require_hospital(identity)
    u = get_user(user_id)
    require_can_delete_user(identity, u)

    matched = BloodRequest.query.filter(BloodRequest.matched_donor_id == u.id).first()
    if matched is not None:
        raise PreconditionFailed("User is the matched donor of a request")
    routed = BloodRequest.query.filter(BloodRequest.hospital_id == u.id).first()
    if routed is not None:
        raise PreconditionFailed("Requests are routed through this hospital")

    own_ids = [r.id for r in BloodRequest.query.filter_by(requested_by_id=u.id)]
    if own_ids:
        db.session.execute(
            update(Announcement)
            .where(Announcement.related_request_id.in_(own_ids))
            .values(related_request_id=None)
            .execution_options(synchronize_session=False)
        )
        BloodRequest.query.filter(BloodRequest.id.in_(own_ids)).delete(synchronize_session=False)
    Announcement.query.filter(or_(Announcement.target_user_id == u.id,
                                  Announcement.created_by == u.id)).delete(synchronize_session=False)
    HospitalBloodStock.query.filter_by(hospital_id=u.id).delete(synchronize_session=False)
    db.session.delete(u)
    db.session.commit()
    logger.info("Hospital %s deleted unverified user %s", identity.user_id, user_id)
    return u


def stats(identity):
    require_hospital(identity)
    donors = User.query.filter(User.role == ROLE_DONOR_RECEIVER, User.can_donate.is_(True))
    return {
        "total_donors": donors.count(),
        "available_donors": donors.filter(User.availability_status.is_(True)).count(),
        "pending_requests": BloodRequest.query.filter(
            BloodRequest.status.in_([STATUS_PENDING, STATUS_ACCEPTED])).count(),
        "completed_donations": BloodRequest.query.filter_by(status=STATUS_COMPLETED).count(),
        "total_hospitals": User.query.filter_by(role=ROLE_HOSPITAL).count(),
    }
