from flask import Blueprint, request, jsonify
from flask_jwt_extended import jwt_required
from sqlalchemy import func, case
from models import db, Project, Sprint, Task, TimeLog, User
from enums import TaskStatus, ProjectStatus
from permissions import Action
from projects import get_project_or_404, check_project_access
from auth import get_current_user, authorize
import logging

reports_bp = Blueprint('reports', __name__)
logger = logging.getLogger(__name__)


def _round(value):
    return round(float(value or 0), 2)

# ============================================
# 專案進度
# ============================================

@reports_bp.route('/project/<int:project_id>/progress', methods=['GET'])
@jwt_required()
def project_progress(project_id):
    """專案進度: 任務完成數、進度百分比、已記錄工時"""
    project = get_project_or_404(project_id)
    check_project_access(project)

    counts = db.session.query(
        func.count(Task.id).label('total'),
        func.sum(case((Task.status == TaskStatus.DONE.value, 1), else_=0)).label('completed'),
        func.sum(case((Task.status == TaskStatus.IN_PROGRESS.value, 1), else_=0)).label('in_progress'),
    ).join(Sprint, Task.sprint_id == Sprint.id).filter(Sprint.project_id == project.id).one()

    hours = db.session.query(func.coalesce(func.sum(TimeLog.hours), 0.0)).join(
        Task, TimeLog.task_id == Task.id
    ).join(Sprint, Task.sprint_id == Sprint.id).filter(Sprint.project_id == project.id).scalar()

    total = counts.total or 0
    completed = counts.completed or 0

    return jsonify({
        'success': True,
        'progress': {
            'project_id': project.id,
            'project_title': project.title,
            'total_tasks': total,
            'completed_tasks': completed,
            'in_progress_tasks': counts.in_progress or 0,
            'tasks_remaining': total - completed,
            'progress_percentage': round(completed / total * 100, 2) if total else 0,
            'time_logged': _round(hours),
        }
    }), 200

# ============================================
# 個人工時統計
# ============================================

@reports_bp.route('/user/time-summary', methods=['GET'])
@jwt_required()
def user_time_summary():
    """
    工時統計, 依專案分組

    Query: user_id (預設自己; 看別人要 Admin/Manager), project_id
    """
    current_user = get_current_user()
    user_id = request.args.get('user_id', current_user.id, type=int)
    authorize(Action.VIEW_USER_TIME, owner_ids={user_id})

    query = db.session.query(
        Project.id.label('project_id'),
        Project.title.label('project_title'),
        func.sum(TimeLog.hours).label('hours'),
        func.count(func.distinct(TimeLog.task_id)).label('tasks'),
    ).select_from(TimeLog).join(
        Task, TimeLog.task_id == Task.id
    ).join(
        Sprint, Task.sprint_id == Sprint.id
    ).join(
        Project, Sprint.project_id == Project.id
    ).filter(TimeLog.user_id == user_id)

    project_id = request.args.get('project_id', type=int)
    if project_id is not None:
        query = query.filter(Project.id == project_id)

    rows = query.group_by(Project.id, Project.title).order_by(Project.id).all()

    tasks_query = db.session.query(func.count(func.distinct(TimeLog.task_id))).filter(
        TimeLog.user_id == user_id
    )
    if project_id is not None:
        tasks_query = tasks_query.join(Task, TimeLog.task_id == Task.id).join(
            Sprint, Task.sprint_id == Sprint.id
        ).filter(Sprint.project_id == project_id)

    return jsonify({
        'success': True,
        'summary': {
            'user_id': user_id,
            'total_hours': _round(sum(row.hours or 0 for row in rows)),
            'tasks_worked': tasks_query.scalar() or 0,
            'projects': [{
                'project_id': row.project_id,
                'project_title': row.project_title,
                'hours': _round(row.hours),
                'tasks_worked': row.tasks,
            } for row in rows],
        }
    }), 200

# ============================================
# Dashboard (Admin/Manager)
# ============================================

@reports_bp.route('/dashboard', methods=['GET'])
@jwt_required()
def dashboard():
    authorize(Action.VIEW_DASHBOARD)

    project_counts = db.session.query(
        func.count(Project.id).label('total'),
        func.sum(case((Project.status == ProjectStatus.ACTIVE.value, 1), else_=0)).label('active'),
    ).one()
    task_counts = db.session.query(
        func.count(Task.id).label('total'),
        func.sum(case((Task.status == TaskStatus.DONE.value, 1), else_=0)).label('completed'),
        func.sum(case((Task.status == TaskStatus.IN_PROGRESS.value, 1), else_=0)).label('in_progress'),
        func.sum(case((Task.status == TaskStatus.REVIEW.value, 1), else_=0)).label('in_review'),
    ).one()
    active_users = db.session.query(func.count(User.id)).filter(User.is_active.is_(True)).scalar()
    total_hours = db.session.query(func.coalesce(func.sum(TimeLog.hours), 0.0)).scalar()

    return jsonify({
        'success': True,
        'stats': {
            'projects': {
                'total': project_counts.total or 0,
                'active': project_counts.active or 0,
            },
            'users': {'total': active_users or 0},
            'tasks': {
                'total': task_counts.total or 0,
                'completed': task_counts.completed or 0,
                'in_progress': task_counts.in_progress or 0,
                'in_review': task_counts.in_review or 0,
            },
            'time_logged': {'total': _round(total_hours)},
        }
    }), 200
