from flask_sqlalchemy import SQLAlchemy
from datetime import datetime
from werkzeug.security import generate_password_hash, check_password_hash

db = SQLAlchemy()

BLOOD_GROUPS = ["A+", "A-", "B+", "B-", "O+", "O-", "AB+", "AB-"]

ROLE_DONOR_RECEIVER = "donor_receiver"
ROLE_HOSPITAL = "hospital"
ROLES = (ROLE_DONOR_RECEIVER, ROLE_HOSPITAL)

STATUS_PENDING = "pending"
STATUS_ACCEPTED = "accepted"
STATUS_COMPLETED = "completed"
STATUS_CANCELLED = "cancelled"

PRIORITY_NORMAL = "normal"
PRIORITY_EMERGENCY = "emergency"
PRIORITIES = (PRIORITY_NORMAL, PRIORITY_EMERGENCY)


def _iso(value):
    return value.isoformat() if value else None


class User(db.Model):
    __tablename__ = "user"
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(120), unique=True, nullable=False)
    password_hash = db.Column(db.String(256), nullable=False)
    role = db.Column(db.String(32), nullable=False, default=ROLE_DONOR_RECEIVER)

    name = db.Column(db.String(120), nullable=False, default="")
    email = db.Column(db.String(120), nullable=True)
    age = db.Column(db.Integer, nullable=True)
    blood_group = db.Column(db.String(3), nullable=True)
    phone = db.Column(db.String(32), nullable=True)
    location = db.Column(db.String(256), nullable=True)
    can_donate = db.Column(db.Boolean, nullable=False, default=False)
    availability_status = db.Column(db.Boolean, nullable=False, default=False)
    donation_count = db.Column(db.Integer, nullable=False, default=0)
    last_donation_date = db.Column(db.DateTime, nullable=True)
    is_verified = db.Column(db.Boolean, nullable=False, default=False)
    created_by_hospital = db.Column(db.Boolean, nullable=False, default=False)
    id_document_url = db.Column(db.String(512), nullable=True)
    profile_image_url = db.Column(db.String(512), nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def set_password(self, password):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        return check_password_hash(self.password_hash, password)

    @property
    def is_hospital(self):
        return self.role == ROLE_HOSPITAL

    def summary(self):
        return {"id": self.id, "name": self.name, "phone": self.phone,
                "blood_group": self.blood_group, "location": self.location}

    def to_dict(self):
        return {
            "id": self.id,
            "username": self.username,
            "role": self.role,
            "name": self.name,
            "email": self.email,
            "age": self.age,
            "blood_group": self.blood_group,
            "phone": self.phone,
            "location": self.location,
            "can_donate": self.can_donate,
            "availability_status": self.availability_status,
            "donation_count": self.donation_count,
            "last_donation_date": _iso(self.last_donation_date),
            "is_verified": self.is_verified,
            "created_by_hospital": self.created_by_hospital,
            "id_document_url": self.id_document_url,
            "profile_image_url": self.profile_image_url,
            "created_at": _iso(self.created_at),
        }


class BloodRequest(db.Model):
    __tablename__ = "blood_request"
    id = db.Column(db.Integer, primary_key=True)
    requested_by_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False)
    hospital_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False)
    blood_group = db.Column(db.String(3), nullable=False)
    location = db.Column(db.String(256), nullable=False)
    priority = db.Column(db.String(16), nullable=False, default=PRIORITY_NORMAL)
    units_needed = db.Column(db.Integer, nullable=False, default=1)
    notes = db.Column(db.String(1024), nullable=True)
    status = db.Column(db.String(16), nullable=False, default=STATUS_PENDING)  # pending, accepted, completed, cancelled
    matched_donor_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow)

    requester = db.relationship("User", foreign_keys=[requested_by_id])
    hospital = db.relationship("User", foreign_keys=[hospital_id])
    matched_donor = db.relationship("User", foreign_keys=[matched_donor_id])

    def to_dict(self, with_people=False):
        out = {
            "id": self.id,
            "requested_by_id": self.requested_by_id,
            "hospital_id": self.hospital_id,
            "blood_group": self.blood_group,
            "location": self.location,
            "priority": self.priority,
            "units_needed": self.units_needed,
            "notes": self.notes,
            "status": self.status,
            "matched_donor_id": self.matched_donor_id,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if with_people:
            out["requester"] = self.requester.summary() if self.requester else None
            out["matched_donor"] = self.matched_donor.summary() if self.matched_donor else None
        return out


class HospitalBloodStock(db.Model):
    __tablename__ = "hospital_blood_stock"
    __table_args__ = (db.UniqueConstraint("hospital_id", "blood_group", name="uq_stock_hospital_group"),)
    id = db.Column(db.Integer, primary_key=True)
    hospital_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False)
    blood_group = db.Column(db.String(3), nullable=False)
    units_available = db.Column(db.Integer, nullable=False, default=0)
    last_updated = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "hospital_id": self.hospital_id,
            "blood_group": self.blood_group,
            "units_available": self.units_available,
            "last_updated": _iso(self.last_updated),
        }


class Announcement(db.Model):
    __tablename__ = "announcement"
    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(200), nullable=False)
    message = db.Column(db.String(1024), nullable=False)
    target_blood_group = db.Column(db.String(3), nullable=True)  # None = every blood group
    target_user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=True)  # None = broadcast
    created_by = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=True)
    related_request_id = db.Column(db.Integer, db.ForeignKey("blood_request.id"), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    creator = db.relationship("User", foreign_keys=[created_by])

    def to_dict(self):
        return {
            "id": self.id,
            "title": self.title,
            "message": self.message,
            "target_blood_group": self.target_blood_group,
            "target_user_id": self.target_user_id,
            "created_by": self.created_by,
            "creator_name": self.creator.name if self.creator else None,
            "related_request_id": self.related_request_id,
            "created_at": _iso(self.created_at),
        }
