import pytest

from app import create_app
from config import TestingConfig
from models import db, User, ROLE_DONOR_RECEIVER, ROLE_HOSPITAL
from access import Identity


@pytest.fixture
def app():
    app = create_app(TestingConfig)
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def service(app):
    return app.extensions["request_service"]


@pytest.fixture
def make_user(app):
    counter = {"n": 0}

    def _make(name=None, role=ROLE_DONOR_RECEIVER, blood_group="O+", password="secret",
              can_donate=True, available=True, location="City", verified=True, **extra):
        counter["n"] += 1
        u = User(
            username=extra.pop("username", f"user{counter['n']}"),
            role=role,
            name=name or f"User {counter['n']}",
            blood_group=blood_group if role == ROLE_DONOR_RECEIVER else None,
            can_donate=can_donate if role == ROLE_DONOR_RECEIVER else False,
            availability_status=available if role == ROLE_DONOR_RECEIVER else False,
            location=location,
            is_verified=verified,
            **extra,
        )
        u.set_password(password)
        db.session.add(u)
        db.session.commit()
        return u

    return _make


@pytest.fixture
def hospital(make_user):
    return make_user(name="City Hospital", role=ROLE_HOSPITAL, username="hospital")


def ident(user):
    return Identity(user.id, user.role)


def login(client, username, password="secret"):
    return client.post("/api/login", json={"username": username, "password": password})
