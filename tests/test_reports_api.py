from models import db, TimeLog, utcnow


def log_time(task, user, hours):
    db.session.add(TimeLog(task_id=task.id, user_id=user.id, hours=hours, date=utcnow()))
    db.session.commit()


def test_project_progress(client, member, project, make_task, auth_headers):
    done = make_task('Shipped', status='Done', assignees=[member])
    make_task('Working', status='InProgress', assignees=[member])
    make_task('Later')
    log_time(done, member, 3)
    log_time(done, member, 1.5)

    response = client.get(f'/reports/project/{project.id}/progress', headers=auth_headers(member))
    progress = response.get_json()['progress']

    assert response.status_code == 200
    assert progress['total_tasks'] == 3
    assert progress['completed_tasks'] == 1
    assert progress['in_progress_tasks'] == 1
    assert progress['tasks_remaining'] == 2
    assert progress['progress_percentage'] == 33.33
    assert progress['time_logged'] == 4.5


def test_project_progress_hidden_from_outsiders(client, other_member, project, auth_headers):
    response = client.get(f'/reports/project/{project.id}/progress', headers=auth_headers(other_member))
    assert response.status_code == 403


def test_empty_project_progress(client, manager, project, auth_headers):
    progress = client.get(f'/reports/project/{project.id}/progress',
                          headers=auth_headers(manager)).get_json()['progress']
    assert progress['total_tasks'] == 0
    assert progress['progress_percentage'] == 0


def test_time_summary(client, member, other_member, manager, project, make_task, auth_headers):
    first = make_task('First', assignees=[member])
    second = make_task('Second', assignees=[member])
    log_time(first, member, 2)
    log_time(second, member, 3)
    log_time(second, member, 1)

    summary = client.get('/reports/user/time-summary', headers=auth_headers(member)).get_json()['summary']

    assert summary['total_hours'] == 6
    assert summary['tasks_worked'] == 2
    assert summary['projects'] == [{
        'project_id': project.id,
        'project_title': 'Website Redesign',
        'hours': 6,
        'tasks_worked': 2,
    }]

    assert client.get(f'/reports/user/time-summary?user_id={member.id}',
                      headers=auth_headers(other_member)).status_code == 403
    assert client.get(f'/reports/user/time-summary?user_id={member.id}',
                      headers=auth_headers(manager)).status_code == 200


def test_dashboard(client, admin, member, make_task, auth_headers):
    make_task(status='Review')
    make_task(status='Done')

    assert client.get('/reports/dashboard', headers=auth_headers(member)).status_code == 403

    stats = client.get('/reports/dashboard', headers=auth_headers(admin)).get_json()['stats']
    assert stats['projects']['total'] == 1
    assert stats['tasks'] == {'total': 2, 'completed': 1, 'in_progress': 0, 'in_review': 1}
    # admin, manager (make_task 的建立者), member
    assert stats['users']['total'] == 3


def test_health(client):
    data = client.get('/health').get_json()
    assert data['status'] == 'healthy'
    assert data['database'] == 'connected'


def test_unknown_route_uses_error_envelope(client):
    response = client.get('/nope')
    data = response.get_json()

    assert response.status_code == 404
    assert data['success'] is False
    assert data['error'] == 'not_found'
