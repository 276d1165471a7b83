from datetime import datetime
import itertools

import pytest

from app import create_app
from config import TestingConfig
from enums import UserRole, TaskStatus
from errors import ProviderVerificationFailed
from models import db, Project, Sprint, Task, TaskAssignment
from oauth import OAuthProfile

PASSWORD = 'secret123'


class FakeOAuthVerifier:
    """
    取代 OAuthVerifier, 不連外

    add() 登記的 (provider, assertion) 才會驗證成功
    """

    def __init__(self):
        self.profiles = {}
        self.calls = []

    def add(self, provider, assertion, email, name, picture=None, email_verified=True):
        self.profiles[(provider, assertion)] = OAuthProfile(
            provider=provider, email=email, name=name, picture=picture, email_verified=email_verified,
        )

    def verify(self, provider, assertion):
        self.calls.append((provider, assertion))
        profile = self.profiles.get((provider, assertion))
        if profile is None:
            raise ProviderVerificationFailed(f'{provider.capitalize()} token verification failed')
        return profile


@pytest.fixture
def app(tmp_path):
    class Config(TestingConfig):
        UPLOAD_FOLDER = str(tmp_path / 'uploads')

    app = create_app(Config)
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def resolver(app):
    return app.extensions['identity_resolver']


@pytest.fixture
def issuer(app):
    return app.extensions['token_issuer']


@pytest.fixture
def oauth_verifier(resolver):
    fake = FakeOAuthVerifier()
    resolver.oauth_verifier = fake
    return fake


# ============================================
# 使用者 / token
# ============================================

@pytest.fixture
def make_user(resolver):
    counter = itertools.count(1)

    def _make(role=UserRole.MEMBER, name=None, email=None, password=PASSWORD, is_active=True):
        n = next(counter)
        return resolver.create_user(
            email or f'user{n}@example.com',
            name or f'User {n}',
            role=role,
            password=password,
            is_active=is_active,
        )
    return _make


@pytest.fixture
def admin(make_user):
    return make_user(UserRole.ADMIN, name='Ada Admin', email='admin@example.com')


@pytest.fixture
def manager(make_user):
    return make_user(UserRole.MANAGER, name='Max Manager', email='manager@example.com')


@pytest.fixture
def member(make_user):
    return make_user(UserRole.MEMBER, name='Mia Member', email='member@example.com')


@pytest.fixture
def other_member(make_user):
    return make_user(UserRole.MEMBER, name='Oscar Other', email='other@example.com')


@pytest.fixture
def auth_headers(issuer):
    def _headers(user, method='credentials'):
        return {'Authorization': f'Bearer {issuer.issue_access(user, method)}'}
    return _headers


# ============================================
# 專案 / Sprint / 任務
# ============================================

@pytest.fixture
def project(admin, manager):
    project = Project(
        title='Website Redesign',
        client='Acme',
        start_date=datetime(2024, 1, 1),
        end_date=datetime(2024, 6, 30),
        creator_id=admin.id,
        manager_id=manager.id,
    )
    project.sprints.append(Sprint(
        title='Sprint 1',
        sprint_number=1,
        start_date=datetime(2024, 1, 1),
        end_date=datetime(2024, 1, 14),
        creator_id=admin.id,
    ))
    db.session.add(project)
    db.session.commit()
    return project


@pytest.fixture
def sprint(project):
    return project.sprints[0]


@pytest.fixture
def make_task(sprint, manager):
    def _make(title='Task', status=TaskStatus.TODO.value, assignees=(), creator=None, sprint_id=None):
        task = Task(
            title=title,
            status=status,
            sprint_id=sprint_id or sprint.id,
            creator_id=(creator or manager).id,
        )
        task.assignments = [TaskAssignment(user_id=user.id) for user in assignees]
        db.session.add(task)
        db.session.commit()
        return task
    return _make
