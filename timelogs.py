from flask import Blueprint, request, jsonify
from flask_jwt_extended import jwt_required
from sqlalchemy import func
from marshmallow import Schema, fields, validate
from models import db, TimeLog, Task, Sprint, iso
from errors import NotFound
from permissions import Action
from activity import record_activity, TimeLogged
from tasks import get_task_or_404, check_task_access
from auth import (
    get_current_user, authorize, validate_request_data, paginate,
    serialize_user_brief, UtcDateTime,
)
import logging

timelogs_bp = Blueprint('timelogs', __name__)
logger = logging.getLogger(__name__)

hours_field = validate.Range(min=0, max=24, min_inclusive=False,
                             error='Hours must be greater than 0 and at most 24')


class CreateTimeLogSchema(Schema):
    hours = fields.Float(required=True, validate=hours_field)
    description = fields.Str(allow_none=True, validate=validate.Length(max=2000))
    date = UtcDateTime(required=True)
    task_id = fields.Int(required=True)


class UpdateTimeLogSchema(Schema):
    hours = fields.Float(validate=hours_field)
    description = fields.Str(allow_none=True, validate=validate.Length(max=2000))
    date = UtcDateTime()


def get_timelog_or_404(timelog_id):
    timelog = db.session.get(TimeLog, timelog_id)
    if timelog is None:
        raise NotFound('Time log not found')
    return timelog


def serialize_timelog(timelog):
    return {
        'id': timelog.id,
        'hours': timelog.hours,
        'description': timelog.description,
        'date': iso(timelog.date),
        'task': {
            'id': timelog.task.id,
            'title': timelog.task.title,
        },
        'user': serialize_user_brief(timelog.user),
        'created_at': iso(timelog.created_at),
    }


@timelogs_bp.route('/task/<int:task_id>', methods=['GET'])
@jwt_required()
def list_task_timelogs(task_id):
    task = get_task_or_404(task_id)
    check_task_access(task)

    logs = TimeLog.query.filter(TimeLog.task_id == task.id).order_by(
        TimeLog.date.desc(), TimeLog.id.desc()
    ).all()
    return jsonify({
        'success': True,
        'time_logs': [serialize_timelog(log) for log in logs],
        'total_hours': float(sum(log.hours for log in logs)),
    }), 200


@timelogs_bp.route('/user', methods=['GET'])
@jwt_required()
def list_user_timelogs():
    """
    使用者的工時紀錄

    Query: user_id (預設自己; 看別人要 Admin/Manager), project_id, start_date, end_date
    """
    current_user = get_current_user()
    user_id = request.args.get('user_id', current_user.id, type=int)
    authorize(Action.VIEW_USER_TIME, owner_ids={user_id})

    query = TimeLog.query.filter(TimeLog.user_id == user_id)

    project_id = request.args.get('project_id', type=int)
    if project_id is not None:
        query = query.join(Task, TimeLog.task_id == Task.id).join(
            Sprint, Task.sprint_id == Sprint.id
        ).filter(Sprint.project_id == project_id)

    start_date = request.args.get('start_date')
    if start_date:
        query = query.filter(TimeLog.date >= UtcDateTime().deserialize(start_date, 'start_date'))
    end_date = request.args.get('end_date')
    if end_date:
        query = query.filter(TimeLog.date <= UtcDateTime().deserialize(end_date, 'end_date'))

    total = query.with_entities(func.coalesce(func.sum(TimeLog.hours), 0.0)).scalar()
    logs, pagination = paginate(query.order_by(TimeLog.date.desc(), TimeLog.id.desc()))

    return jsonify({
        'success': True,
        'time_logs': [serialize_timelog(log) for log in logs],
        'total_hours': float(total or 0),
        'pagination': pagination,
    }), 200


@timelogs_bp.route('', methods=['POST'])
@jwt_required()
def create_timelog():
    """記工時: Member 只能記在指派給自己的任務"""
    result = validate_request_data(CreateTimeLogSchema)
    current_user = get_current_user()
    task = get_task_or_404(result['task_id'])
    check_task_access(task, Action.LOG_TIME)

    timelog = TimeLog(
        hours=result['hours'],
        description=result.get('description'),
        date=result['date'],
        task_id=task.id,
        user_id=current_user.id,
    )
    db.session.add(timelog)
    record_activity(db.session, task.id, current_user.id, TimeLogged(result['hours']))
    db.session.commit()

    logger.info(f"{timelog.hours}h logged on task {task.id} by user {current_user.id}")

    return jsonify({
        'success': True,
        'message': 'Time logged successfully',
        'time_log': serialize_timelog(timelog),
    }), 201


@timelogs_bp.route('/<int:timelog_id>', methods=['PUT', 'PATCH'])
@jwt_required()
def update_timelog(timelog_id):
    timelog = get_timelog_or_404(timelog_id)
    authorize(Action.UPDATE_TIME_LOG, owner_ids={timelog.user_id})
    result = validate_request_data(UpdateTimeLogSchema)

    for field in ('hours', 'description', 'date'):
        if field in result:
            setattr(timelog, field, result[field])
    db.session.commit()

    return jsonify({
        'success': True,
        'message': 'Time log updated successfully',
        'time_log': serialize_timelog(timelog),
    }), 200


@timelogs_bp.route('/<int:timelog_id>', methods=['DELETE'])
@jwt_required()
def delete_timelog(timelog_id):
    timelog = get_timelog_or_404(timelog_id)
    authorize(Action.DELETE_TIME_LOG, owner_ids={timelog.user_id})

    db.session.delete(timelog)
    db.session.commit()

    return jsonify({'success': True, 'message': 'Time log deleted successfully'}), 200
