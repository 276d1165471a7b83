from urllib.parse import urlparse, parse_qs

from models import db, User


def invite_token_from(url):
    return parse_qs(urlparse(url).query)['token'][0]


# ============================================
# 列表 / 查詢
# ============================================

def test_list_users_requires_privileged_role(client, member, manager, auth_headers):
    assert client.get('/users', headers=auth_headers(member)).status_code == 403

    data = client.get('/users', headers=auth_headers(manager)).get_json()
    assert {u['email'] for u in data['users']} == {'member@example.com', 'manager@example.com'}


def test_list_users_filters(client, admin, member, manager, auth_headers):
    headers = auth_headers(admin)

    managers = client.get('/users?role=Manager', headers=headers).get_json()['users']
    assert [u['id'] for u in managers] == [manager.id]

    found = client.get('/users?search=mia', headers=headers).get_json()['users']
    assert [u['id'] for u in found] == [member.id]


def test_get_user_hides_private_fields_from_members(client, member, other_member, auth_headers):
    data = client.get(f'/users/{other_member.id}', headers=auth_headers(member)).get_json()['user']
    assert 'last_login' not in data

    own = client.get(f'/users/{member.id}', headers=auth_headers(member)).get_json()['user']
    assert 'last_login' in own


# ============================================
# 建立 / 邀請
# ============================================

def test_manager_cannot_create_admin(client, manager, auth_headers):
    response = client.post('/users', headers=auth_headers(manager), json={
        'email': 'boss@example.com', 'name': 'Boss', 'role': 'Admin', 'password': 'secret123',
    })
    assert response.status_code == 403
    assert User.query.filter_by(email='boss@example.com').first() is None


def test_admin_creates_manager(client, admin, auth_headers):
    response = client.post('/users', headers=auth_headers(admin), json={
        'email': 'Lead@Example.com', 'name': 'Lead', 'role': 'Manager', 'password': 'secret123',
    })
    data = response.get_json()['user']

    assert response.status_code == 201
    assert data['email'] == 'lead@example.com'
    assert data['role'] == 'Manager'


def test_invite_without_mail_returns_link(client, manager, auth_headers):
    response = client.post('/users/invite', headers=auth_headers(manager), json={
        'email': 'ivy@example.com', 'name': 'Ivy',
    })
    data = response.get_json()

    assert response.status_code == 201
    assert data['email_sent'] is False
    assert data['user']['is_active'] is False
    assert data['invite_url'].startswith('http://localhost:3000/accept-invite?token=')

    token = invite_token_from(data['invite_url'])
    accepted = client.post('/auth/accept-invite', json={'token': token, 'password': 'ivy-pass-1'})
    assert accepted.status_code == 200
    assert accepted.get_json()['user']['role'] == 'Member'


def test_invite_sends_mail_when_enabled(client, app, admin, auth_headers, monkeypatch):
    sent = []
    monkeypatch.setitem(app.config, 'MAIL_ENABLED', True)
    monkeypatch.setattr('mailer.mail.send', sent.append)

    response = client.post('/users/invite', headers=auth_headers(admin), json={
        'email': 'ivy@example.com', 'name': 'Ivy', 'role': 'Manager',
    })
    data = response.get_json()

    assert response.status_code == 201
    assert data['email_sent'] is True
    assert 'invite_url' not in data
    assert sent[0].recipients == ['ivy@example.com']
    assert 'accept-invite?token=' in sent[0].body


def test_invite_mail_failure_is_not_fatal(client, app, admin, auth_headers, monkeypatch):
    def broken_send(message):
        raise ConnectionRefusedError('smtp down')

    monkeypatch.setitem(app.config, 'MAIL_ENABLED', True)
    monkeypatch.setattr('mailer.mail.send', broken_send)

    response = client.post('/users/invite', headers=auth_headers(admin), json={
        'email': 'ivy@example.com', 'name': 'Ivy',
    })
    assert response.status_code == 201
    assert response.get_json()['email_sent'] is False


def test_invite_mail_escapes_names(client, app, admin, auth_headers, monkeypatch):
    sent = []
    monkeypatch.setitem(app.config, 'MAIL_ENABLED', True)
    monkeypatch.setattr('mailer.mail.send', sent.append)

    client.post('/users/invite', headers=auth_headers(admin), json={
        'email': 'ivy@example.com', 'name': '<b>Ivy</b>',
    })

    assert '&lt;b&gt;Ivy&lt;/b&gt;' in sent[0].html
    assert '<b>Ivy</b>' not in sent[0].html
    assert 'Hi <b>Ivy</b>,' in sent[0].body


def test_manager_cannot_reinvite_deactivated_admin(client, admin, manager, auth_headers):
    admin.is_active = False
    db.session.commit()

    response = client.post('/users/invite', headers=auth_headers(manager), json={
        'email': admin.email, 'name': 'Demoted', 'role': 'Member',
    })

    assert response.status_code == 403
    user = db.session.get(User, admin.id)
    assert user.role == 'Admin'
    assert user.name == 'Ada Admin'
    assert user.invite_token is None


def test_manager_reinvite_keeps_role(client, manager, member, auth_headers):
    member.is_active = False
    db.session.commit()
    headers = auth_headers(manager)

    promoted = client.post('/users/invite', headers=headers, json={
        'email': member.email, 'name': 'Mia Member', 'role': 'Manager',
    })
    assert promoted.status_code == 403
    assert db.session.get(User, member.id).role == 'Member'

    again = client.post('/users/invite', headers=headers, json={
        'email': member.email, 'name': 'Mia Member',
    })
    assert again.status_code == 201


def test_admin_reinvite_can_change_role(client, admin, member, auth_headers):
    member.is_active = False
    db.session.commit()

    response = client.post('/users/invite', headers=auth_headers(admin), json={
        'email': member.email, 'name': 'Mia Member', 'role': 'Manager',
    })
    assert response.status_code == 201
    assert response.get_json()['user']['role'] == 'Manager'


def test_manager_cannot_invite_admin(client, manager, auth_headers):
    response = client.post('/users/invite', headers=auth_headers(manager), json={
        'email': 'boss@example.com', 'name': 'Boss', 'role': 'Admin',
    })
    assert response.status_code == 403


def test_member_cannot_invite(client, member, auth_headers):
    response = client.post('/users/invite', headers=auth_headers(member), json={
        'email': 'friend@example.com', 'name': 'Friend',
    })
    assert response.status_code == 403


def test_invite_existing_active_user(client, admin, member, auth_headers):
    response = client.post('/users/invite', headers=auth_headers(admin), json={
        'email': member.email, 'name': 'Again',
    })
    assert response.status_code == 409


# ============================================
# 更新 / 角色 / 啟用
# ============================================

def test_admin_changes_role(client, admin, member, auth_headers):
    response = client.put(f'/users/{member.id}', headers=auth_headers(admin), json={'role': 'Manager'})
    assert response.status_code == 200
    assert response.get_json()['user']['role'] == 'Manager'


def test_manager_cannot_change_role(client, manager, member, auth_headers):
    response = client.put(f'/users/{member.id}', headers=auth_headers(manager), json={'role': 'Manager'})
    assert response.status_code == 403
    assert db.session.get(User, member.id).role == 'Member'


def test_admin_cannot_change_own_role(client, admin, auth_headers):
    response = client.put(f'/users/{admin.id}', headers=auth_headers(admin), json={'role': 'Member'})
    assert response.status_code == 403


def test_member_updates_own_profile_only(client, member, other_member, auth_headers):
    own = client.patch(f'/users/{member.id}', headers=auth_headers(member), json={'department': 'QA'})
    assert own.status_code == 200
    assert own.get_json()['user']['department'] == 'QA'

    other = client.patch(f'/users/{other_member.id}', headers=auth_headers(member), json={'department': 'QA'})
    assert other.status_code == 403


def test_member_cannot_promote_self(client, member, auth_headers):
    response = client.patch(f'/users/{member.id}', headers=auth_headers(member), json={'role': 'Admin'})
    assert response.status_code == 403


def test_email_change_must_be_unique(client, admin, member, other_member, auth_headers):
    response = client.patch(f'/users/{member.id}', headers=auth_headers(admin), json={
        'email': 'OTHER@example.com',
    })
    assert response.status_code == 409


def test_manager_cannot_edit_admin_account(client, manager, admin, oauth_verifier, auth_headers):
    headers = auth_headers(manager)

    for body in ({'email': 'mallory@gmail.com'}, {'name': 'Not Ada'}, {'department': 'Sales'}):
        response = client.put(f'/users/{admin.id}', headers=headers, json=body)
        assert response.status_code == 403

    user = db.session.get(User, admin.id)
    assert user.email == 'admin@example.com'
    assert user.name == 'Ada Admin'

    oauth_verifier.add('google', 'mallory-token', 'mallory@gmail.com', 'Mallory')
    login = client.post('/auth/oauth', json={'provider': 'google', 'id_token': 'mallory-token'})
    assert login.get_json()['user']['role'] == 'Member'
    assert login.get_json()['user']['id'] != admin.id


def test_manager_cannot_change_member_email(client, manager, member, auth_headers):
    response = client.patch(f'/users/{member.id}', headers=auth_headers(manager), json={
        'email': 'elsewhere@example.com', 'department': 'QA',
    })
    assert response.status_code == 403
    assert db.session.get(User, member.id).email == 'member@example.com'

    profile = client.patch(f'/users/{member.id}', headers=auth_headers(manager), json={'department': 'QA'})
    assert profile.status_code == 200


def test_member_changes_own_email(client, member, auth_headers):
    response = client.patch(f'/users/{member.id}', headers=auth_headers(member), json={
        'email': 'Mia@Example.com',
    })
    assert response.status_code == 200
    assert response.get_json()['user']['email'] == 'mia@example.com'


def test_manager_deactivates_member(client, manager, member, auth_headers):
    response = client.patch(f'/users/{member.id}', headers=auth_headers(manager), json={'is_active': False})
    assert response.status_code == 200
    assert response.get_json()['user']['is_active'] is False


def test_manager_cannot_deactivate_admin(client, manager, admin, auth_headers):
    response = client.patch(f'/users/{admin.id}', headers=auth_headers(manager), json={'is_active': False})
    assert response.status_code == 403
    assert db.session.get(User, admin.id).is_active is True


def test_cannot_deactivate_self(client, admin, auth_headers):
    response = client.patch(f'/users/{admin.id}', headers=auth_headers(admin), json={'is_active': False})
    assert response.status_code == 403


# ============================================
# 刪除 (停用)
# ============================================

def test_delete_user_is_soft(client, admin, member, auth_headers):
    response = client.delete(f'/users/{member.id}', headers=auth_headers(admin))

    assert response.status_code == 200
    user = db.session.get(User, member.id)
    assert user is not None
    assert user.is_active is False

    login = client.post('/auth/login', json={'email': 'member@example.com', 'password': 'secret123'})
    assert login.status_code == 403


def test_delete_user_rules(client, manager, admin, member, auth_headers):
    assert client.delete(f'/users/{admin.id}', headers=auth_headers(manager)).status_code == 403
    assert client.delete(f'/users/{manager.id}', headers=auth_headers(manager)).status_code == 403
    assert client.delete(f'/users/{manager.id}', headers=auth_headers(member)).status_code == 403
    assert client.delete('/users/999', headers=auth_headers(admin)).status_code == 404


# ============================================
# 統計
# ============================================

def test_user_stats(client, member, other_member, manager, make_task, auth_headers):
    make_task('Done one', status='Done', assignees=[member])
    make_task('Doing', status='InProgress', assignees=[member])

    response = client.get(f'/users/{member.id}/stats', headers=auth_headers(member))
    data = response.get_json()

    assert response.status_code == 200
    assert data['stats']['total_tasks'] == 2
    assert data['stats']['completed_tasks'] == 1
    assert data['stats']['completion_rate'] == 50.0
    assert len(data['recent_tasks']) == 2

    assert client.get(f'/users/{member.id}/stats', headers=auth_headers(other_member)).status_code == 403
    assert client.get(f'/users/{member.id}/stats', headers=auth_headers(manager)).status_code == 200
