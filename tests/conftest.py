"""
Shared fixtures: an app on in-memory SQLite, a recording mailer and
small factories for profiles and families.
"""

from datetime import datetime

import pytest

from lifescribe import create_app, db
from lifescribe.models import Profile, Family, Member, DigestSettings


class FakeMailer:
    """Records every message; addresses in ``fail_for`` are reported as failed"""

    def __init__(self):
        self.sent = []
        self.fail_for = set()

    def send(self, sender, to, subject, html, text=None):
        self.sent.append({'from': sender, 'to': to, 'subject': subject, 'html': html})
        if to in self.fail_for:
            return {'success': False, 'email': to, 'error': 'rejected'}
        return {'success': True, 'email': to, 'id': f'msg-{len(self.sent)}'}


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def app(tmp_path, monkeypatch, mailer):
    monkeypatch.setenv('LIFESCRIBE_DATA_DIR', str(tmp_path))
    app = create_app({
        'TESTING': True,
        'SECRET_KEY': 'test',
        'SQLALCHEMY_DATABASE_URI': 'sqlite://',
        'UPLOAD_FOLDER': str(tmp_path / 'uploads'),
        'APP_URL': 'https://lifescribe.test',
    })
    app.extensions['lifescribe_mailer'] = mailer

    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_profile(app):
    counter = {'n': 0}

    def _make(email=None, full_name=None, is_admin=False):
        counter['n'] += 1
        profile = Profile(
            email=email or f'user{counter["n"]}@example.com',
            full_name=full_name or f'User {counter["n"]}',
            is_admin=is_admin
        )
        db.session.add(profile)
        db.session.commit()
        return profile

    return _make


@pytest.fixture
def make_family(app):
    def _make(creator, name='Test Family', created_at=None, digest_enabled=True):
        family = Family(name=name, created_by=creator.id, created_at=created_at or datetime.utcnow())
        db.session.add(family)
        db.session.flush()
        db.session.add(Member(family_id=family.id, profile_id=creator.id, role='admin',
                              joined_at=family.created_at))
        db.session.add(DigestSettings(family_id=family.id, enabled=digest_enabled))
        db.session.commit()
        return family

    return _make


@pytest.fixture
def add_member(app):
    def _add(family, profile, role='member'):
        member = Member(family_id=family.id, profile_id=profile.id, role=role)
        db.session.add(member)
        db.session.commit()
        return member

    return _add


@pytest.fixture
def login(client):
    def _login(profile):
        with client.session_transaction() as sess:
            sess['profile_id'] = profile.id

    return _login
