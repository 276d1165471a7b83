from datetime import datetime, timedelta, timezone
import io

import pytest

from models import db, User
from tokens import TokenIssuer

PASSWORD = 'secret123'


def register(client, **overrides):
    body = {'email': 'new@example.com', 'password': 'secret123', 'name': 'New User'}
    body.update(overrides)
    return client.post('/auth/register', json=body)


def login(client, email, password=PASSWORD):
    return client.post('/auth/login', json={'email': email, 'password': password})


# ============================================
# 註冊
# ============================================

def test_register_returns_tokens(client):
    response = register(client, role='Admin')
    data = response.get_json()

    assert response.status_code == 201
    assert data['success'] is True
    assert data['user']['role'] == 'Member'
    assert data['method'] == 'credentials'
    assert data['expires_in'] == 20 * 60
    assert data['access_token'] and data['refresh_token']
    assert client.get_cookie('refreshToken').value == data['refresh_token']


def test_register_validation_errors(client):
    response = register(client, email='not-an-email', password='123')
    data = response.get_json()

    assert response.status_code == 400
    assert data['error'] == 'validation_failed'
    paths = {detail['path'] for detail in data['details']}
    assert paths == {'email', 'password'}


@pytest.mark.parametrize('password, status', [
    ('12345', 400),
    ('123456', 201),
    ('p' * 72, 201),
    ('p' * 73, 400),
])
def test_register_password_length(client, password, status):
    assert register(client, password=password).status_code == status


def test_register_requires_json_object(client):
    response = client.post('/auth/register', data='email=a@b.c', content_type='text/plain')
    assert response.status_code == 400
    assert response.get_json()['error'] == 'bad_request'


def test_register_duplicate_email(client, member):
    response = register(client, email='MEMBER@example.com')
    assert response.status_code == 409
    assert response.get_json()['error'] == 'conflict'


def test_register_pending_activation(client, resolver):
    resolver.require_activation = True
    response = register(client)
    data = response.get_json()

    assert response.status_code == 201
    assert data['requires_activation'] is True
    assert 'access_token' not in data

    response = login(client, 'new@example.com', 'secret123')
    assert response.status_code == 403
    assert response.get_json()['requires_activation'] is True


# ============================================
# 登入
# ============================================

def test_login_success(client, member):
    response = login(client, 'member@example.com')
    data = response.get_json()

    assert response.status_code == 200
    assert data['user']['id'] == member.id
    assert data['user']['last_login'] is not None
    assert data['token_type'] == 'Bearer'


def test_login_wrong_password(client, member):
    response = login(client, 'member@example.com', 'wrong-password')

    assert response.status_code == 401
    assert response.get_json()['error'] == 'invalid_credentials'
    assert client.get_cookie('refreshToken') is None


def test_login_unknown_email(client):
    response = login(client, 'ghost@example.com')
    assert response.status_code == 401
    assert response.get_json()['message'] == 'Invalid email or password'


def test_login_deactivated_account(client, member):
    login(client, 'member@example.com')
    member.is_active = False
    db.session.commit()

    response = login(client, 'member@example.com')
    assert response.status_code == 403
    assert response.get_json()['error'] == 'account_inactive'


# ============================================
# Refresh / Logout
# ============================================

def test_refresh_from_cookie(client, member):
    login(client, 'member@example.com')

    response = client.post('/auth/refresh')
    data = response.get_json()

    assert response.status_code == 200
    assert data['method'] == 'credentials'
    me = client.get('/auth/me', headers={'Authorization': f"Bearer {data['access_token']}"})
    assert me.get_json()['user']['id'] == member.id


def test_refresh_from_body_keeps_oauth_method(client, issuer, member):
    pair = issuer.issue(member, 'oauth')

    response = client.post('/auth/refresh', json={'refresh_token': pair.refresh_token})
    data = response.get_json()

    assert response.status_code == 200
    assert data['method'] == 'oauth'
    assert data['expires_in'] == 60 * 60


def test_refresh_rejects_access_token(client, issuer, member):
    access_token = issuer.issue_access(member)

    response = client.post('/auth/refresh', json={'refresh_token': access_token})
    assert response.status_code == 401
    assert response.get_json()['error'] == 'invalid_or_expired_token'


def test_refresh_without_token(client):
    response = client.post('/auth/refresh')
    assert response.status_code == 401
    assert response.get_json()['message'] == 'Refresh token not provided'


def test_refresh_for_deactivated_user(client, issuer, member):
    pair = issuer.issue(member)
    member.is_active = False
    db.session.commit()

    response = client.post('/auth/refresh', json={'refresh_token': pair.refresh_token})
    assert response.status_code == 403


def test_logout_clears_cookie(client, member):
    token = login(client, 'member@example.com').get_json()['access_token']

    response = client.post('/auth/logout', headers={'Authorization': f'Bearer {token}'})
    assert response.status_code == 200
    assert client.get_cookie('refreshToken') is None


# ============================================
# Access token
# ============================================

def test_me_requires_token(client):
    response = client.get('/auth/me')
    assert response.status_code == 401
    assert response.get_json()['error'] == 'authorization_required'


def test_me_with_token(client, member, auth_headers):
    response = client.get('/auth/me', headers=auth_headers(member, 'oauth'))
    data = response.get_json()

    assert response.status_code == 200
    assert data['user']['email'] == 'member@example.com'
    assert data['method'] == 'oauth'


def test_expired_access_token(client, app, member):
    past = datetime.now(timezone.utc) - timedelta(hours=1)
    stale = TokenIssuer.from_config(app.config)
    stale._clock = lambda: past

    response = client.get('/auth/me', headers={'Authorization': f'Bearer {stale.issue_access(member)}'})
    assert response.status_code == 401
    assert response.get_json()['error'] == 'invalid_or_expired_token'


def test_refresh_token_cannot_be_used_as_access(client, issuer, member):
    pair = issuer.issue(member)

    response = client.get('/auth/me', headers={'Authorization': f'Bearer {pair.refresh_token}'})
    assert response.status_code == 401


def test_garbage_token(client):
    response = client.get('/auth/me', headers={'Authorization': 'Bearer abc.def.ghi'})
    assert response.status_code == 401
    assert response.get_json()['error'] == 'invalid_or_expired_token'


def test_deactivated_user_token_stops_working(client, member, auth_headers):
    headers = auth_headers(member)
    member.is_active = False
    db.session.commit()

    response = client.get('/auth/me', headers=headers)
    assert response.status_code == 403
    assert response.get_json()['error'] == 'account_inactive'


# ============================================
# OAuth
# ============================================

def test_oauth_google_creates_user(client, oauth_verifier):
    oauth_verifier.add('google', 'id-token', 'gina@example.com', 'Gina', 'https://cdn.test/g.png')

    response = client.post('/auth/oauth', json={'provider': 'google', 'id_token': 'id-token'})
    data = response.get_json()

    assert response.status_code == 200
    assert data['method'] == 'oauth'
    assert data['expires_in'] == 60 * 60
    assert data['user']['avatar_url'] == 'https://cdn.test/g.png'

    again = client.post('/auth/oauth', json={'provider': 'google', 'id_token': 'id-token'})
    assert again.get_json()['user']['id'] == data['user']['id']


def test_oauth_facebook_uses_access_token(client, oauth_verifier):
    oauth_verifier.add('facebook', 'fb-token', 'frank@example.com', 'Frank')

    response = client.post('/auth/oauth', json={
        'provider': 'facebook', 'id_token': 'ignored', 'access_token': 'fb-token',
    })
    assert response.status_code == 200
    assert oauth_verifier.calls == [('facebook', 'fb-token')]


def test_oauth_missing_assertion(client, oauth_verifier):
    response = client.post('/auth/oauth', json={'provider': 'google', 'access_token': 'x'})

    assert response.status_code == 400
    assert response.get_json()['details'][0]['path'] == 'id_token'
    assert oauth_verifier.calls == []


def test_oauth_unknown_provider(client, oauth_verifier):
    response = client.post('/auth/oauth', json={'provider': 'github', 'access_token': 'x'})
    assert response.status_code == 400


def test_oauth_verification_failure_creates_nothing(client, oauth_verifier):
    response = client.post('/auth/oauth', json={'provider': 'google', 'id_token': 'forged'})

    assert response.status_code == 401
    assert response.get_json()['error'] == 'provider_verification_failed'
    assert db.session.query(User).count() == 0


def test_oauth_pending_activation(client, resolver, oauth_verifier):
    resolver.require_activation = True
    oauth_verifier.add('google', 'id-token', 'gina@example.com', 'Gina')

    response = client.post('/auth/oauth', json={'provider': 'google', 'id_token': 'id-token'})
    data = response.get_json()

    assert response.status_code == 201
    assert data['requires_activation'] is True
    assert 'access_token' not in data


# ============================================
# 邀請 / 個人資料
# ============================================

def test_accept_invite_logs_in(client, resolver):
    user, token = resolver.invite('ivy@example.com', 'Ivy')

    response = client.post('/auth/accept-invite', json={'token': token, 'password': 'ivy-pass-1'})
    data = response.get_json()

    assert response.status_code == 200
    assert data['user']['id'] == user.id
    assert data['user']['is_active'] is True
    assert login(client, 'ivy@example.com', 'ivy-pass-1').status_code == 200


def test_accept_invite_bad_token(client):
    response = client.post('/auth/accept-invite', json={'token': 'nope', 'password': 'ivy-pass-1'})
    assert response.status_code == 400
    assert response.get_json()['error'] == 'invalid_or_expired_invite'


def test_update_profile_ignores_role(client, member, auth_headers):
    response = client.patch('/auth/me', headers=auth_headers(member), json={
        'name': 'Mia Renamed', 'skills': ['python'], 'role': 'Admin',
    })
    data = response.get_json()

    assert response.status_code == 200
    assert data['user']['name'] == 'Mia Renamed'
    assert data['user']['skills'] == ['python']
    assert data['user']['role'] == 'Member'


def test_change_password(client, member, auth_headers):
    response = client.post('/auth/change-password', headers=auth_headers(member), json={
        'current_password': 'wrong-one', 'new_password': 'another-pass',
    })
    assert response.status_code == 401

    response = client.post('/auth/change-password', headers=auth_headers(member), json={
        'current_password': PASSWORD, 'new_password': 'another-pass',
    })
    assert response.status_code == 200
    assert login(client, 'member@example.com', 'another-pass').status_code == 200


def test_avatar_upload_replaces_previous_file(client, app, member, auth_headers):
    storage = app.extensions['file_storage']

    first = client.put('/auth/me/avatar', headers=auth_headers(member), data={
        'avatar': (io.BytesIO(b'png-1'), 'me.png'),
    }, content_type='multipart/form-data')
    assert first.status_code == 200
    old_storage_id = member.avatar_storage_id
    assert first.get_json()['user']['avatar_url'] == f'/uploads/{old_storage_id}'

    second = client.put('/auth/me/avatar', headers=auth_headers(member), data={
        'avatar': (io.BytesIO(b'png-2'), 'me-again.png'),
    }, content_type='multipart/form-data')
    assert second.status_code == 200

    with open(storage.path_for(member.avatar_storage_id), 'rb') as fh:
        assert fh.read() == b'png-2'
    assert storage.delete(old_storage_id) is False


def test_avatar_must_be_image(client, member, auth_headers):
    response = client.put('/auth/me/avatar', headers=auth_headers(member), data={
        'avatar': (io.BytesIO(b'hello'), 'notes.txt'),
    }, content_type='multipart/form-data')
    assert response.status_code == 400
