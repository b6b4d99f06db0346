"""Blood request lifecycle.

    pending -> accepted -> completed
    pending -> cancelled

Accept, cancel and complete are each one conditional UPDATE guarded on the
current status, so among concurrent callers exactly one wins the transition.
"""
import logging
from datetime import datetime

from sqlalchemy import update

from models import (db, User, BloodRequest, Announcement, ROLE_HOSPITAL, ROLE_DONOR_RECEIVER,
                    STATUS_PENDING, STATUS_ACCEPTED, STATUS_COMPLETED, STATUS_CANCELLED,
                    PRIORITIES, PRIORITY_NORMAL)
from access import (require_authenticated, require_role, require_donor_receiver,
                    require_hospital, can_delete_request)
from announcements import AnnouncementEvent
from errors import ValidationError, NotFound, PreconditionFailed, Forbidden, text_value
from matching import normalize_blood_group, incoming_requests, priority_first

logger = logging.getLogger(__name__)


def _positive_int(value, default):
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise ValidationError("Units needed must be a positive integer")
    try:
        n = int(value)
    except (TypeError, ValueError):
        raise ValidationError("Units needed must be a positive integer")
    if n < 1 or n != float(value):
        raise ValidationError("Units needed must be a positive integer")
    return n


class RequestService:

    def __init__(self, notifier=None, publish=None):
        self.notifier = notifier
        self.publish = publish

    # ---------- side channels ----------

    def _announce(self, event):
        if self.notifier is None:
            return None
        try:
            return self.notifier.notify(event)
        except Exception:
            logger.exception("Notifier failed for request %s", event.related_request_id)
            return None

    def _request_updated(self, br):
        if self.publish is None:
            return
        try:
            self.publish("request_updated", {"id": br.id, "status": br.status})
        except Exception:
            logger.exception("Could not publish update for request %s", br.id)

    # ---------- lookups ----------

    def _get(self, request_id):
        br = db.session.get(BloodRequest, request_id)
        if br is None:
            raise NotFound("Request not found")
        return br

    def _transition_failed(self, request_id, message):
        db.session.rollback()
        if db.session.get(BloodRequest, request_id) is None:
            raise NotFound("Request not found")
        raise PreconditionFailed(message)

    # ---------- operations ----------

    def create(self, identity, data):
        require_role(identity, ROLE_DONOR_RECEIVER, ROLE_HOSPITAL)

        if identity.role == ROLE_HOSPITAL:
            requester_id = data.get("requested_by_id")
            if requester_id is None:
                raise ValidationError("Requester is required")
            if db.session.get(User, requester_id) is None:
                raise NotFound("Requester not found")
            hospital_id = data.get("hospital_id") or identity.user_id
        else:
            requester_id = identity.user_id
            hospital_id = data.get("hospital_id")

        blood_group = normalize_blood_group(data.get("blood_group"))
        location = text_value(data.get("location"), "Location", required=True)
        notes = text_value(data.get("notes"), "Notes")
        if not hospital_id:
            raise ValidationError("Hospital is required")
        hospital = db.session.get(User, hospital_id)
        if hospital is None or not hospital.is_hospital:
            raise ValidationError("Unknown hospital")

        priority = data.get("priority") or PRIORITY_NORMAL
        if priority not in PRIORITIES:
            raise ValidationError("Priority must be one of: " + ", ".join(PRIORITIES))

        now = datetime.utcnow()
        br = BloodRequest(
            requested_by_id=requester_id,
            hospital_id=hospital.id,
            blood_group=blood_group,
            location=location,
            priority=priority,
            units_needed=_positive_int(data.get("units_needed"), 1),
            notes=notes,
            status=STATUS_PENDING,
            created_at=now,
            updated_at=now,
        )
        db.session.add(br)
        db.session.commit()
        logger.info("Request %s created by user %s (%s, %s)", br.id, requester_id, blood_group, priority)

        title = "URGENT: blood needed" if br.priority != PRIORITY_NORMAL else "Blood needed"
        self._announce(AnnouncementEvent(
            title=f"{title}: {br.blood_group}",
            message=f"{br.units_needed} unit(s) of {br.blood_group} needed at {br.location}.",
            target_blood_group=br.blood_group,
            target_user_id=None,
            created_by=requester_id,
            related_request_id=br.id,
        ))
        self._request_updated(br)
        return br

    def accept(self, identity, request_id):
        require_donor_receiver(identity)
        donor = db.session.get(User, identity.user_id)
        if donor is None:
            raise NotFound("Donor not found")
        if self._get(request_id).requested_by_id == donor.id:
            raise Forbidden("You cannot accept your own request")

        result = db.session.execute(
            update(BloodRequest)
            .where(BloodRequest.id == request_id, BloodRequest.status == STATUS_PENDING)
            .values(status=STATUS_ACCEPTED, matched_donor_id=donor.id, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self._transition_failed(request_id, "Request is no longer pending")
        db.session.commit()

        br = self._get(request_id)
        logger.info("Request %s accepted by donor %s", br.id, donor.id)
        self._announce(AnnouncementEvent(
            title="Request accepted",
            message=f"Your {br.blood_group} request was accepted by donor {donor.name}.",
            target_blood_group=None,
            target_user_id=br.requested_by_id,
            created_by=donor.id,
            related_request_id=br.id,
        ))
        self._request_updated(br)
        return br

    def cancel(self, identity, request_id):
        require_role(identity, ROLE_DONOR_RECEIVER, ROLE_HOSPITAL)

        result = db.session.execute(
            update(BloodRequest)
            .where(BloodRequest.id == request_id, BloodRequest.status == STATUS_PENDING)
            .values(status=STATUS_CANCELLED, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self._transition_failed(request_id, "Only pending requests can be cancelled")
        db.session.commit()

        br = self._get(request_id)
        logger.info("Request %s cancelled by user %s", br.id, identity.user_id)
        self._request_updated(br)
        return br

    def complete(self, identity, request_id):
        require_authenticated(identity)
        br = self._get(request_id)
        if identity.role != ROLE_HOSPITAL and identity.user_id != br.requested_by_id:
            raise Forbidden("Only the requester or a hospital can complete a request")
        if br.status != STATUS_ACCEPTED:
            raise PreconditionFailed("Request is not in accepted state")

        donor_id = br.matched_donor_id
        now = datetime.utcnow()
        result = db.session.execute(
            update(BloodRequest)
            .where(BloodRequest.id == request_id,
                   BloodRequest.status == STATUS_ACCEPTED,
                   BloodRequest.matched_donor_id == donor_id)
            .values(status=STATUS_COMPLETED, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self._transition_failed(request_id, "Request is not in accepted state")

        db.session.execute(
            update(User)
            .where(User.id == donor_id)
            .values(donation_count=User.donation_count + 1, last_donation_date=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()

        br = self._get(request_id)
        logger.info("Request %s completed, donor %s credited", br.id, donor_id)
        self._request_updated(br)
        return br

    def delete(self, identity, request_id):
        require_authenticated(identity)
        br = self._get(request_id)
        if not can_delete_request(identity, br):
            raise Forbidden("Only the requester or a hospital can delete this request")
        if identity.role != ROLE_HOSPITAL and br.status == STATUS_COMPLETED:
            raise PreconditionFailed("Completed requests can only be deleted by a hospital")

        db.session.execute(
            update(Announcement)
            .where(Announcement.related_request_id == br.id)
            .values(related_request_id=None)
            .execution_options(synchronize_session=False)
        )
        db.session.delete(br)
        db.session.commit()
        logger.info("Request %s deleted by user %s", request_id, identity.user_id)
        return br

    # ---------- views ----------

    def get(self, identity, request_id):
        require_authenticated(identity)
        return self._get(request_id)

    def my_requests(self, identity):
        require_donor_receiver(identity)
        return (BloodRequest.query
                .filter(BloodRequest.requested_by_id == identity.user_id)
                .order_by(BloodRequest.created_at.desc(), BloodRequest.id.desc())
                .all())

    def incoming(self, identity):
        require_donor_receiver(identity)
        return incoming_requests(db.session.get(User, identity.user_id))

    def completed_donations(self, identity):
        require_authenticated(identity)
        return (BloodRequest.query
                .filter(BloodRequest.matched_donor_id == identity.user_id,
                        BloodRequest.status == STATUS_COMPLETED)
                .order_by(BloodRequest.updated_at.desc(), BloodRequest.id.desc())
                .all())

    def hospital_requests(self, identity, all_hospitals=False):
        require_hospital(identity)
        query = BloodRequest.query
        if not all_hospitals:
            query = query.filter(BloodRequest.hospital_id == identity.user_id)
        return query.order_by(*priority_first()).all()
