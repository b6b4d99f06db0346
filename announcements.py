import logging
from collections import namedtuple

from sqlalchemy import or_, and_

from models import db, Announcement, User
from access import require_hospital, require_authenticated
from errors import ValidationError, NotFound, text_value
from matching import normalize_blood_group

logger = logging.getLogger(__name__)

AnnouncementEvent = namedtuple(
    "AnnouncementEvent",
    ["title", "message", "target_blood_group", "target_user_id", "created_by", "related_request_id"],
)


def user_room(user_id):
    return f"user_{user_id}"


class AnnouncementNotifier:
    """Fire-and-forget announcement side channel.

    ``notify`` persists the announcement and pushes it to Socket.IO
    listeners. It never raises: a failure is logged and the caller carries on.
    """

    def __init__(self, emit=None):
        self.emit = emit

    def notify(self, event):
        try:
            a = Announcement(**event._asdict())
            db.session.add(a)
            db.session.commit()
        except Exception:
            db.session.rollback()
            logger.exception("Could not store announcement %r (request %s)",
                             event.title, event.related_request_id)
            return None
        self.push(a)
        return a

    def push(self, a):
        """Send a stored announcement to its room, or to everyone when it is not user-targeted."""
        if self.emit is None:
            return
        try:
            if a.target_user_id is not None:
                self.emit("announcement", a.to_dict(), to=user_room(a.target_user_id))
            else:
                self.emit("announcement", a.to_dict())
        except Exception:
            logger.exception("Could not push announcement %s", a.id)


def create_announcement(identity, title, message, target_blood_group=None, target_user_id=None):
    require_hospital(identity)
    title = text_value(title, "Title")
    message = text_value(message, "Message")
    if not title or not message:
        raise ValidationError("Title and message are required")

    bg = normalize_blood_group(target_blood_group, required=False)
    if target_user_id is not None and db.session.get(User, target_user_id) is None:
        raise NotFound("Target user not found")

    a = Announcement(title=title, message=message, target_blood_group=bg,
                     target_user_id=target_user_id, created_by=identity.user_id)
    db.session.add(a)
    db.session.commit()
    logger.info("Hospital %s posted announcement %s", identity.user_id, a.id)
    return a


def visible_announcements(identity):
    """Addressed to the caller, or not user-targeted and global / matching their group."""
    require_authenticated(identity)
    user = db.session.get(User, identity.user_id)
    if user is None:
        raise NotFound("User not found")

    group_match = Announcement.target_blood_group.is_(None)
    if user.blood_group:
        group_match = or_(group_match, Announcement.target_blood_group == user.blood_group)

    return (Announcement.query
            .filter(or_(Announcement.target_user_id == user.id,
                        and_(Announcement.target_user_id.is_(None), group_match)))
            .order_by(Announcement.created_at.desc(), Announcement.id.desc())
            .all())
