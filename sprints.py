from flask import Blueprint, request, jsonify
from flask_jwt_extended import jwt_required
from sqlalchemy import func, select
from marshmallow import Schema, fields, validate, validates_schema, ValidationError
from models import db, Sprint, Project, iso
from errors import NotFound, ValidationFailed
from permissions import Action
from visibility import apply_project_visibility, project_owner_ids
from projects import (
    get_project_or_404, check_project_access, attachment_storage_ids, delete_stored_files,
)
from auth import authorize, get_current_user, validate_request_data, serialize_user_brief, UtcDateTime
import logging

sprints_bp = Blueprint('sprints', __name__)
logger = logging.getLogger(__name__)

# ============================================
# Input Validation Schemas
# ============================================

class CreateSprintSchema(Schema):
    title = fields.Str(required=True, validate=validate.Length(min=1, max=255),
                       error_messages={'required': 'Title is required'})
    description = fields.Str(allow_none=True, validate=validate.Length(max=5000))
    start_date = UtcDateTime(required=True)
    end_date = UtcDateTime(required=True)
    project_id = fields.Int(required=True)

    @validates_schema
    def validate_dates(self, data, **kwargs):
        start, end = data.get('start_date'), data.get('end_date')
        if start and end and end < start:
            raise ValidationError('End date must be after start date', 'end_date')


class UpdateSprintSchema(Schema):
    title = fields.Str(validate=validate.Length(min=1, max=255))
    description = fields.Str(allow_none=True, validate=validate.Length(max=5000))
    start_date = UtcDateTime()
    end_date = UtcDateTime()

# ============================================
# 輔助函數
# ============================================

def get_sprint_or_404(sprint_id):
    sprint = db.session.get(Sprint, sprint_id)
    if sprint is None:
        raise NotFound('Sprint not found')
    return sprint


def next_sprint_number(project_id):
    """同一個專案的 sprint 編號從 1 開始往上加"""
    current = db.session.scalar(
        select(func.max(Sprint.sprint_number)).where(Sprint.project_id == project_id)
    )
    return (current or 0) + 1


def serialize_sprint(sprint, include_tasks=False):
    data = {
        'id': sprint.id,
        'title': sprint.title,
        'description': sprint.description,
        'sprint_number': sprint.sprint_number,
        'start_date': iso(sprint.start_date),
        'end_date': iso(sprint.end_date),
        'project': {
            'id': sprint.project.id,
            'title': sprint.project.title,
        },
        'creator': serialize_user_brief(sprint.creator),
        'task_count': len(sprint.tasks),
        'created_at': iso(sprint.created_at),
    }
    if include_tasks:
        # 延遲 import, tasks 模組會 import 這裡
        from tasks import serialize_task
        data['tasks'] = [serialize_task(task) for task in sprint.tasks]
    return data

# ============================================
# Sprint CRUD
# ============================================

@sprints_bp.route('', methods=['GET'])
@jwt_required()
def list_sprints():
    """
    Sprint 列表

    Query: project_id (Member 只看得到自己看得到的專案)
    """
    current_user = get_current_user()
    query = Sprint.query.join(Project, Sprint.project_id == Project.id)
    query = apply_project_visibility(query, current_user)

    project_id = request.args.get('project_id', type=int)
    if project_id is not None:
        query = query.filter(Sprint.project_id == project_id)

    sprints = query.order_by(Sprint.project_id, Sprint.sprint_number).all()

    return jsonify({
        'success': True,
        'sprints': [serialize_sprint(sprint) for sprint in sprints],
    }), 200


@sprints_bp.route('/<int:sprint_id>', methods=['GET'])
@jwt_required()
def get_sprint(sprint_id):
    sprint = get_sprint_or_404(sprint_id)
    check_project_access(sprint.project)
    return jsonify({'success': True, 'sprint': serialize_sprint(sprint, include_tasks=True)}), 200


@sprints_bp.route('', methods=['POST'])
@jwt_required()
def create_sprint():
    authorize(Action.MANAGE_SPRINT)
    result = validate_request_data(CreateSprintSchema)
    project = get_project_or_404(result['project_id'])

    sprint = Sprint(
        title=result['title'],
        description=result.get('description'),
        start_date=result['start_date'],
        end_date=result['end_date'],
        project_id=project.id,
        sprint_number=next_sprint_number(project.id),
        creator_id=get_current_user().id,
    )
    db.session.add(sprint)
    db.session.commit()

    logger.info(f"Sprint {sprint.sprint_number} created in project {project.id}")

    return jsonify({
        'success': True,
        'message': 'Sprint created successfully',
        'sprint': serialize_sprint(sprint),
    }), 201


@sprints_bp.route('/<int:sprint_id>', methods=['PUT', 'PATCH'])
@jwt_required()
def update_sprint(sprint_id):
    sprint = get_sprint_or_404(sprint_id)
    authorize(Action.MANAGE_SPRINT, owner_ids=project_owner_ids(sprint.project))
    result = validate_request_data(UpdateSprintSchema)

    start = result.get('start_date', sprint.start_date)
    end = result.get('end_date', sprint.end_date)
    if end < start:
        raise ValidationFailed(details=[{'path': 'end_date', 'message': 'End date must be after start date'}])

    for field in ('title', 'description', 'start_date', 'end_date'):
        if field in result:
            setattr(sprint, field, result[field])

    db.session.commit()

    return jsonify({
        'success': True,
        'message': 'Sprint updated successfully',
        'sprint': serialize_sprint(sprint),
    }), 200


@sprints_bp.route('/<int:sprint_id>', methods=['DELETE'])
@jwt_required()
def delete_sprint(sprint_id):
    """刪除 sprint (底下的任務一起刪, 附件檔案在 commit 之後才刪)"""
    sprint = get_sprint_or_404(sprint_id)
    authorize(Action.MANAGE_SPRINT, owner_ids=project_owner_ids(sprint.project))
    storage_ids = attachment_storage_ids(Sprint.id == sprint.id)

    db.session.delete(sprint)
    db.session.commit()
    delete_stored_files(storage_ids)
    logger.info(f"Sprint deleted: {sprint_id}")

    return jsonify({'success': True, 'message': 'Sprint deleted successfully'}), 200
