# ============================
# IMPORTS
# ============================
import os
import logging
from functools import wraps

from flask import Flask, request, session, jsonify, g, current_app
from flask_socketio import SocketIO, join_room
from werkzeug.exceptions import HTTPException

from config import Config
from models import db, User
from access import Identity
from errors import BloodLinkError, ValidationError, Unauthorized
from announcements import AnnouncementNotifier, create_announcement, visible_announcements, user_room
from lifecycle import RequestService
import accounts
import inventory

socketio = SocketIO()


# ============================
# HELPERS
# ============================
def current_identity():
    """Resolve the session cookie to an Identity, or None."""
    uid = session.get("user_id")
    if uid is None:
        return None
    u = db.session.get(User, uid)
    if u is None:
        session.clear()
        return None
    return Identity(u.id, u.role)


def login_required(f):
    @wraps(f)
    def wrapped(*args, **kwargs):
        identity = current_identity()
        if identity is None:
            raise Unauthorized()
        g.identity = identity
        return f(*args, **kwargs)
    return wrapped


def json_body():
    data = request.get_json(silent=True)
    if data is None:
        if request.mimetype == "application/json" and request.get_data():
            raise ValidationError("Malformed JSON body")
        return {}
    if not isinstance(data, dict):
        raise ValidationError("JSON body must be an object")
    return data


def flag(name):
    return request.args.get(name, "").lower() in ("1", "true", "yes")


def service():
    return current_app.extensions["request_service"]


# ============================
# APP FACTORY
# ============================
def create_app(config_object=None):
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config_object or Config)

    if not app.config.get("SQLALCHEMY_DATABASE_URI"):
        os.makedirs(app.instance_path, exist_ok=True)
        app.config["SQLALCHEMY_DATABASE_URI"] = f"sqlite:///{os.path.join(app.instance_path, 'bloodlink.db')}"

    logging.basicConfig(level=app.config["LOG_LEVEL"],
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    app.logger.setLevel(app.config["LOG_LEVEL"])

    db.init_app(app)
    socketio.init_app(app, async_mode=app.config["SOCKETIO_ASYNC_MODE"], cors_allowed_origins="*")

    notifier = AnnouncementNotifier(emit=socketio.emit)
    app.extensions["announcement_notifier"] = notifier
    app.extensions["request_service"] = RequestService(notifier=notifier, publish=socketio.emit)

    with app.app_context():
        db.create_all()

    register_error_handlers(app)
    register_routes(app)

    from cli import register_commands
    register_commands(app)
    return app


def register_error_handlers(app):

    @app.errorhandler(BloodLinkError)
    def handle_bloodlink_error(e):
        db.session.rollback()
        if e.status_code >= 500:
            app.logger.error("%s: %s", type(e).__name__, e.message)
        return jsonify({"message": e.message}), e.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(e):
        return jsonify({"message": e.description}), e.code

    @app.errorhandler(Exception)
    def handle_unexpected(e):
        db.session.rollback()
        app.logger.exception("Unhandled error on %s %s", request.method, request.path)
        return jsonify({"message": "Internal server error"}), 500


# ============================
# ROUTES
# ============================
def register_routes(app):

    # ---------- auth ----------
    @app.route("/api/register", methods=["POST"])
    def register():
        u = accounts.register(json_body())
        session.clear()
        session.permanent = True
        session["user_id"] = u.id
        return jsonify(u.to_dict()), 201

    @app.route("/api/login", methods=["POST"])
    def login():
        data = json_body()
        u = accounts.authenticate(data.get("username"), data.get("password"))
        session.clear()
        session.permanent = True
        session["user_id"] = u.id
        app.logger.info("User %s logged in", u.id)
        return jsonify(u.to_dict())

    @app.route("/api/logout", methods=["POST"])
    def logout():
        session.clear()
        return jsonify({"message": "Logged out"})

    @app.route("/api/auth/user")
    @login_required
    def auth_user():
        return jsonify(accounts.get_user(g.identity.user_id).to_dict())

    # ---------- profile & donors ----------
    @app.route("/api/users/me", methods=["PATCH"])
    @login_required
    def update_me():
        u = accounts.update_profile(g.identity, g.identity.user_id, json_body())
        return jsonify(u.to_dict())

    @app.route("/api/donors")
    @login_required
    def donors():
        found = accounts.search_donors(
            g.identity,
            blood_group=request.args.get("blood_group"),
            location=request.args.get("location"),
            available=flag("available"),
        )
        return jsonify([d.to_dict() for d in found])

    # ---------- blood requests ----------
    @app.route("/api/requests", methods=["POST"])
    @login_required
    def create_request():
        br = service().create(g.identity, json_body())
        return jsonify(br.to_dict()), 201

    @app.route("/api/requests/my")
    @login_required
    def my_requests():
        return jsonify([r.to_dict(with_people=True) for r in service().my_requests(g.identity)])

    @app.route("/api/requests/incoming")
    @login_required
    def incoming_requests():
        return jsonify([r.to_dict(with_people=True) for r in service().incoming(g.identity)])

    @app.route("/api/requests/completed")
    @login_required
    def completed_donations():
        return jsonify([r.to_dict() for r in service().completed_donations(g.identity)])

    @app.route("/api/requests/<int:request_id>")
    @login_required
    def request_detail(request_id):
        return jsonify(service().get(g.identity, request_id).to_dict(with_people=True))

    @app.route("/api/requests/<int:request_id>/accept", methods=["PATCH"])
    @login_required
    def accept_request(request_id):
        return jsonify(service().accept(g.identity, request_id).to_dict())

    @app.route("/api/requests/<int:request_id>/cancel", methods=["PATCH"])
    @login_required
    def cancel_request(request_id):
        return jsonify(service().cancel(g.identity, request_id).to_dict())

    @app.route("/api/requests/<int:request_id>/complete", methods=["PATCH"])
    @login_required
    def complete_request(request_id):
        return jsonify(service().complete(g.identity, request_id).to_dict())

    @app.route("/api/requests/<int:request_id>", methods=["DELETE"])
    @login_required
    def delete_request(request_id):
        service().delete(g.identity, request_id)
        return jsonify({"message": "Request deleted", "id": request_id})

    # ---------- hospital ----------
    @app.route("/api/hospital/stats")
    @login_required
    def hospital_stats():
        return jsonify(accounts.stats(g.identity))

    @app.route("/api/hospital/users", methods=["GET"])
    @login_required
    def hospital_users():
        return jsonify([u.to_dict() for u in accounts.list_users(g.identity)])

    @app.route("/api/hospital/users", methods=["POST"])
    @login_required
    def hospital_create_user():
        u = accounts.create_user_by_hospital(g.identity, json_body())
        return jsonify(u.to_dict()), 201

    @app.route("/api/hospital/users/<int:user_id>/verify", methods=["PATCH"])
    @login_required
    def hospital_verify_user(user_id):
        return jsonify(accounts.verify_user(g.identity, user_id).to_dict())

    @app.route("/api/hospital/users/<int:user_id>/status", methods=["PATCH"])
    @login_required
    def hospital_user_status(user_id):
        return jsonify(accounts.update_user_status(g.identity, user_id, json_body()).to_dict())

    @app.route("/api/hospital/users/<int:user_id>", methods=["DELETE"])
    @login_required
    def hospital_delete_user(user_id):
        accounts.delete_user(g.identity, user_id)
        return jsonify({"message": "User deleted", "id": user_id})

    @app.route("/api/hospital/requests")
    @login_required
    def hospital_requests():
        rows = service().hospital_requests(g.identity, all_hospitals=request.args.get("scope") == "all")
        return jsonify([r.to_dict(with_people=True) for r in rows])

    @app.route("/api/hospital/inventory", methods=["GET"])
    @login_required
    def hospital_inventory():
        return jsonify([row.to_dict() for row in inventory.hospital_inventory(g.identity)])

    @app.route("/api/hospital/inventory", methods=["PATCH"])
    @login_required
    def hospital_adjust_inventory():
        data = json_body()
        row = inventory.hospital_adjust(g.identity, data.get("blood_group"), data.get("delta"))
        return jsonify(row.to_dict())

    # ---------- announcements ----------
    @app.route("/api/announcements", methods=["GET"])
    @login_required
    def announcements():
        return jsonify([a.to_dict() for a in visible_announcements(g.identity)])

    @app.route("/api/announcements", methods=["POST"])
    @login_required
    def post_announcement():
        data = json_body()
        a = create_announcement(g.identity, data.get("title"), data.get("message"),
                                target_blood_group=data.get("target_blood_group"),
                                target_user_id=data.get("target_user_id"))
        current_app.extensions["announcement_notifier"].push(a)
        return jsonify(a.to_dict()), 201


# ============================
# SOCKET.IO
# ============================
@socketio.on("join")
def on_join(data=None):
    # a client may only listen on its own room
    identity = current_identity()
    if identity is None:
        return False
    uid = data.get("user_id") if isinstance(data, dict) else None
    if uid is not None and str(uid) != str(identity.user_id):
        current_app.logger.warning("User %s tried to join room of user %s", identity.user_id, uid)
        return False
    join_room(user_room(identity.user_id))
    return True
