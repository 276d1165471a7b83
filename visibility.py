"""
列表查詢的可見範圍

Admin/Manager 看得到全部; Member 只看得到自己建立或被指派的任務,
以及自己建立、負責、或底下有任務指派給自己的專案。
條件直接放進 SQL WHERE, 分頁和 count 才會正確。
"""
from sqlalchemy import or_, select
from enums import UserRole
from models import Project, Sprint, Task, TaskAssignment


def _is_unrestricted(user):
    return user.role in (UserRole.ADMIN.value, UserRole.MANAGER.value)


def assigned_to(user_id):
    """Task 有指派給 user_id"""
    return Task.assignments.any(TaskAssignment.user_id == user_id)


def task_visibility_filter(user):
    """
    回傳 Task 查詢用的 WHERE 條件, 不需要過濾時回傳 None
    """
    if _is_unrestricted(user):
        return None
    return or_(Task.creator_id == user.id, assigned_to(user.id))


def project_visibility_filter(user):
    if _is_unrestricted(user):
        return None

    assigned_project_ids = (
        select(Sprint.project_id)
        .join(Task, Task.sprint_id == Sprint.id)
        .join(TaskAssignment, TaskAssignment.task_id == Task.id)
        .where(TaskAssignment.user_id == user.id)
    )
    return or_(
        Project.creator_id == user.id,
        Project.manager_id == user.id,
        Project.id.in_(assigned_project_ids),
    )


def apply_task_visibility(query, user):
    condition = task_visibility_filter(user)
    return query if condition is None else query.filter(condition)


def apply_project_visibility(query, user):
    condition = project_visibility_filter(user)
    return query if condition is None else query.filter(condition)


def project_assignee_ids(project_id, session):
    """專案底下所有任務的 assignee (用在單一專案的權限判斷)"""
    stmt = (
        select(TaskAssignment.user_id)
        .join(Task, TaskAssignment.task_id == Task.id)
        .join(Sprint, Task.sprint_id == Sprint.id)
        .where(Sprint.project_id == project_id)
        .distinct()
    )
    return set(session.scalars(stmt))


def project_owner_ids(project):
    return {uid for uid in (project.creator_id, project.manager_id) if uid is not None}
