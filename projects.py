from flask import Blueprint, request, jsonify
from flask_jwt_extended import jwt_required
from sqlalchemy.orm import joinedload
from sqlalchemy import func, case, and_, or_, select
from marshmallow import Schema, fields, validate, validates_schema, ValidationError
from models import db, Attachment, Project, Sprint, Task, User, TimeLog, iso, utcnow
from enums import ProjectStatus, TaskStatus, values
from errors import NotFound, ValidationFailed
from permissions import Action
from visibility import apply_project_visibility, project_assignee_ids, project_owner_ids
from extensions import get_service
from auth import (
    get_current_user, authorize, validate_request_data, paginate,
    serialize_user_brief, UtcDateTime,
)
import logging

projects_bp = Blueprint('projects', __name__)
logger = logging.getLogger(__name__)

# ============================================
# Input Validation Schemas
# ============================================

class ProjectSchema(Schema):
    """建立 / 更新專案驗證 (更新時 partial)"""
    title = fields.Str(
        required=True,
        validate=validate.Length(min=1, max=255),
        error_messages={'required': 'Project title is required'}
    )
    client = fields.Str(
        required=True,
        validate=validate.Length(min=1, max=255),
        error_messages={'required': 'Client is required'}
    )
    description = fields.Str(allow_none=True, validate=validate.Length(max=5000))
    start_date = UtcDateTime(required=True)
    end_date = UtcDateTime(required=True)
    budget = fields.Float(allow_none=True, validate=validate.Range(min=0))
    status = fields.Str(validate=validate.OneOf(values(ProjectStatus)))
    thumbnail = fields.Str(allow_none=True, validate=validate.Length(max=500))
    manager_id = fields.Int(allow_none=True)

    @validates_schema
    def validate_dates(self, data, **kwargs):
        start, end = data.get('start_date'), data.get('end_date')
        if start and end and end < start:
            raise ValidationError('End date must be after start date', 'end_date')

# ============================================
# 輔助函數
# ============================================

def attachment_storage_ids(condition):
    """sprint / 專案底下已上傳檔案的 storage id, 要在刪資料之前先取"""
    return db.session.scalars(
        select(Attachment.storage_id)
        .join(Task, Attachment.task_id == Task.id)
        .join(Sprint, Task.sprint_id == Sprint.id)
        .where(condition, Attachment.storage_id.isnot(None))
    ).all()


def delete_stored_files(storage_ids):
    """commit 成功之後才刪檔案"""
    storage = get_service('file_storage')
    for storage_id in storage_ids:
        storage.delete(storage_id)


def get_project_or_404(project_id):
    project = db.session.get(Project, project_id)
    if project is None:
        raise NotFound('Project not found')
    return project


def check_project_access(project, action=Action.READ_PROJECT):
    """
    專案權限: creator / manager 算 owner,
    專案底下任務的 assignee 算 assignee
    """
    return authorize(
        action,
        owner_ids=project_owner_ids(project),
        assignee_ids=project_assignee_ids(project.id, db.session),
    )


def _validate_manager(manager_id):
    if manager_id is None:
        return
    if db.session.get(User, manager_id) is None:
        raise NotFound('Project manager not found')


def project_task_stats(project_ids):
    """
    一次查出多個專案的任務統計, 避免 N+1

    Returns:
        dict: {project_id: {'total': n, 'completed': n}}
    """
    if not project_ids:
        return {}
    rows = db.session.query(
        Sprint.project_id,
        func.count(Task.id).label('total'),
        func.sum(case((Task.status == TaskStatus.DONE.value, 1), else_=0)).label('completed'),
    ).join(Task, Task.sprint_id == Sprint.id).filter(
        Sprint.project_id.in_(project_ids)
    ).group_by(Sprint.project_id).all()
    return {row.project_id: {'total': row.total or 0, 'completed': row.completed or 0} for row in rows}


def serialize_project(project, stats=None):
    stats = stats or {'total': 0, 'completed': 0}
    return {
        'id': project.id,
        'title': project.title,
        'client': project.client,
        'description': project.description,
        'status': project.status,
        'start_date': iso(project.start_date),
        'end_date': iso(project.end_date),
        'budget': project.budget,
        'thumbnail': project.thumbnail,
        'creator': serialize_user_brief(project.creator),
        'manager': serialize_user_brief(project.manager),
        'task_count': stats['total'],
        'completed_task_count': stats['completed'],
        'created_at': iso(project.created_at),
        'updated_at': iso(project.updated_at),
    }


def serialize_sprint_summary(sprint):
    return {
        'id': sprint.id,
        'title': sprint.title,
        'sprint_number': sprint.sprint_number,
        'start_date': iso(sprint.start_date),
        'end_date': iso(sprint.end_date),
        'task_count': len(sprint.tasks),
    }

# ============================================
# 建立專案
# ============================================

@projects_bp.route('', methods=['POST'])
@jwt_required()
def create_project():
    authorize(Action.CREATE_PROJECT)
    result = validate_request_data(ProjectSchema)
    current_user = get_current_user()
    _validate_manager(result.get('manager_id'))

    project = Project(
        title=result['title'],
        client=result['client'],
        description=result.get('description'),
        start_date=result['start_date'],
        end_date=result['end_date'],
        budget=result.get('budget'),
        status=result.get('status', ProjectStatus.PLANNED.value),
        thumbnail=result.get('thumbnail'),
        manager_id=result.get('manager_id'),
        creator_id=current_user.id,
    )
    db.session.add(project)
    db.session.commit()

    logger.info(f"Project created: {project.id} by user {current_user.id}")

    return jsonify({
        'success': True,
        'message': 'Project created successfully',
        'project': serialize_project(project),
    }), 201

# ============================================
# 查詢專案列表
# ============================================

@projects_bp.route('', methods=['GET'])
@jwt_required()
def list_projects():
    """
    查詢看得到的專案

    Member 只看得到自己建立 / 負責, 或底下有任務指派給自己的專案
    Query: status, search, page, per_page
    """
    current_user = get_current_user()
    query = apply_project_visibility(
        Project.query.options(joinedload(Project.creator), joinedload(Project.manager)),
        current_user,
    )

    status = request.args.get('status')
    if status in values(ProjectStatus):
        query = query.filter(Project.status == status)

    search = (request.args.get('search') or '').strip()
    if search:
        pattern = f'%{search}%'
        query = query.filter(or_(Project.title.ilike(pattern), Project.client.ilike(pattern)))

    projects, pagination = paginate(query.order_by(Project.created_at.desc(), Project.id.desc()))
    stats = project_task_stats([project.id for project in projects])

    return jsonify({
        'success': True,
        'projects': [serialize_project(project, stats.get(project.id)) for project in projects],
        'pagination': pagination,
    }), 200

# ============================================
# 查詢單一專案
# ============================================

@projects_bp.route('/<int:project_id>', methods=['GET'])
@jwt_required()
def get_project(project_id):
    project = get_project_or_404(project_id)
    check_project_access(project)

    stats = project_task_stats([project.id])
    data = serialize_project(project, stats.get(project.id))
    data['sprints'] = [serialize_sprint_summary(sprint) for sprint in project.sprints]

    return jsonify({'success': True, 'project': data}), 200

# ============================================
# 更新專案
# ============================================

@projects_bp.route('/<int:project_id>', methods=['PUT', 'PATCH'])
@jwt_required()
def update_project(project_id):
    project = get_project_or_404(project_id)
    authorize(Action.UPDATE_PROJECT, owner_ids=project_owner_ids(project))
    result = validate_request_data(ProjectSchema, partial=True)

    start = result.get('start_date', project.start_date)
    end = result.get('end_date', project.end_date)
    if end < start:
        raise ValidationFailed(details=[{'path': 'end_date', 'message': 'End date must be after start date'}])

    if 'manager_id' in result:
        _validate_manager(result['manager_id'])

    for field in ('title', 'client', 'description', 'start_date', 'end_date', 'budget',
                  'status', 'thumbnail', 'manager_id'):
        if field in result:
            setattr(project, field, result[field])

    db.session.commit()
    logger.info(f"Project updated: {project.id} by user {get_current_user().id}")

    stats = project_task_stats([project.id])
    return jsonify({
        'success': True,
        'message': 'Project updated successfully',
        'project': serialize_project(project, stats.get(project.id)),
    }), 200

# ============================================
# 刪除專案
# ============================================

@projects_bp.route('/<int:project_id>', methods=['DELETE'])
@jwt_required()
def delete_project(project_id):
    """刪除專案 (sprint / 任務 / 評論 / 工時 / 附件一起刪)"""
    project = get_project_or_404(project_id)
    authorize(Action.DELETE_PROJECT, owner_ids=project_owner_ids(project))

    title = project.title
    storage_ids = attachment_storage_ids(Sprint.project_id == project.id)

    db.session.delete(project)
    db.session.commit()
    delete_stored_files(storage_ids)

    logger.info(f"Project deleted: {project_id} ({title}) by user {get_current_user().id}")

    return jsonify({'success': True, 'message': 'Project deleted successfully'}), 200

# ============================================
# 專案統計
# ============================================

@projects_bp.route('/<int:project_id>/stats', methods=['GET'])
@jwt_required()
def get_project_stats(project_id):
    """
    專案統計

    使用聚合查詢避免 N+1 問題
    """
    project = get_project_or_404(project_id)
    check_project_access(project)

    task_stats = db.session.query(
        func.count(Task.id).label('total'),
        func.sum(case((Task.status == TaskStatus.TODO.value, 1), else_=0)).label('todo'),
        func.sum(case((Task.status == TaskStatus.IN_PROGRESS.value, 1), else_=0)).label('in_progress'),
        func.sum(case((Task.status == TaskStatus.REVIEW.value, 1), else_=0)).label('review'),
        func.sum(case((Task.status == TaskStatus.DONE.value, 1), else_=0)).label('done'),
        func.sum(case((and_(Task.due_date < utcnow(), Task.status != TaskStatus.DONE.value), 1),
                      else_=0)).label('overdue'),
    ).join(Sprint, Task.sprint_id == Sprint.id).filter(Sprint.project_id == project.id).one()

    hours = db.session.query(func.coalesce(func.sum(TimeLog.hours), 0.0)).join(
        Task, TimeLog.task_id == Task.id
    ).join(Sprint, Task.sprint_id == Sprint.id).filter(Sprint.project_id == project.id).scalar()

    total = task_stats.total or 0
    done = task_stats.done or 0

    return jsonify({
        'success': True,
        'stats': {
            'tasks': {
                'total': total,
                'todo': task_stats.todo or 0,
                'in_progress': task_stats.in_progress or 0,
                'review': task_stats.review or 0,
                'done': done,
                'overdue': task_stats.overdue or 0,
            },
            'sprints': len(project.sprints),
            'hours_logged': float(hours or 0),
            'completion_rate': round(done / total * 100, 2) if total else 0,
        }
    }), 200
