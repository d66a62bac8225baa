"""Pytest configuration and fixtures."""

import itertools

import pytest

from app import create_app
from app.extensions import db
from app.models import Group, GroupMember, MemberRole, User
from config import TestConfig


@pytest.fixture
def app():
    """Application on a fresh in-memory database."""
    app = create_app(TestConfig)
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(app):
    """Factory for registered users; the auth subject is ``subject-<n>``."""
    counter = itertools.count(1)

    def _make_user(first_name=None, email=None, last_name=None):
        n = next(counter)
        user = User(
            auth_subject=f"subject-{n}",
            email=email or f"user{n}@example.com",
            first_name=first_name or f"User{n}",
            last_name=last_name,
        )
        db.session.add(user)
        db.session.commit()
        return user

    return _make_user


@pytest.fixture
def make_group(app):
    """Factory for groups; the first member is the admin."""

    def _make_group(members, name="Trip"):
        group = Group(name=name, created_by=members[0].id)
        db.session.add(group)
        db.session.flush()
        for index, member in enumerate(members):
            db.session.add(GroupMember(
                group_id=group.id,
                user_id=member.id,
                role=MemberRole.ADMIN.value if index == 0 else MemberRole.MEMBER.value,
            ))
        db.session.commit()
        return group

    return _make_group


@pytest.fixture
def alice(make_user) -> User:
    return make_user(first_name="Alice", email="alice@example.com", last_name="Adams")


@pytest.fixture
def bob(make_user) -> User:
    return make_user(first_name="Bob", email="bob@example.com", last_name="Brown")


@pytest.fixture
def carol(make_user) -> User:
    return make_user(first_name="Carol", email="carol@example.com", last_name="Clark")


@pytest.fixture
def group(make_group, alice, bob, carol) -> Group:
    return make_group([alice, bob, carol])
