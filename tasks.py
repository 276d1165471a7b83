from flask import Blueprint, request, jsonify
from flask_jwt_extended import jwt_required
from sqlalchemy.orm import joinedload, selectinload
from sqlalchemy import or_
from marshmallow import Schema, fields, validate
from models import db, Task, Sprint, User, TaskAssignment, iso, utcnow
from enums import TaskStatus, TaskPriority, values
from errors import Conflict, NotFound, ValidationFailed
from permissions import Action, check_transition, check_submission, check_assignment
from visibility import apply_task_visibility, assigned_to
from activity import (
    record_activity, serialize_activity, TaskCreated, StatusChanged, AssigneesChanged,
)
from extensions import get_service
from auth import (
    get_current_user, authorize, validate_request_data, paginate,
    serialize_user_brief, UtcDateTime,
)
import logging

tasks_bp = Blueprint('tasks', __name__)
logger = logging.getLogger(__name__)

# ============================================
# Input Validation Schemas
# ============================================

class CreateTaskSchema(Schema):
    """建立任務驗證"""
    title = fields.Str(
        required=True,
        validate=validate.Length(min=1, max=255),
        error_messages={'required': 'Task title is required'}
    )
    description = fields.Str(allow_none=True, validate=validate.Length(max=5000))
    status = fields.Str(
        validate=validate.OneOf(values(TaskStatus)),
        load_default=TaskStatus.TODO.value
    )
    priority = fields.Str(
        validate=validate.OneOf(values(TaskPriority)),
        load_default=TaskPriority.MEDIUM.value
    )
    estimate = fields.Float(allow_none=True, validate=validate.Range(min=0, min_inclusive=False))
    due_date = UtcDateTime(allow_none=True)
    sprint_id = fields.Int(required=True, error_messages={'required': 'Sprint is required'})
    parent_task_id = fields.Int(allow_none=True)
    assignee_ids = fields.List(fields.Int(), load_default=list)


class UpdateTaskSchema(Schema):
    """
    更新任務驗證

    version: 前端讀到的版本, 跟資料庫不一樣代表被別人改過了
    """
    title = fields.Str(validate=validate.Length(min=1, max=255))
    description = fields.Str(allow_none=True, validate=validate.Length(max=5000))
    status = fields.Str(validate=validate.OneOf(values(TaskStatus)))
    priority = fields.Str(validate=validate.OneOf(values(TaskPriority)))
    estimate = fields.Float(allow_none=True, validate=validate.Range(min=0, min_inclusive=False))
    due_date = UtcDateTime(allow_none=True)
    sprint_id = fields.Int()
    parent_task_id = fields.Int(allow_none=True)
    assignee_ids = fields.List(fields.Int())
    version = fields.Int()

# ============================================
# 輔助函數
# ============================================

def get_task_or_404(task_id, lock=False):
    """
    lock=True 時 SELECT ... FOR UPDATE, 狀態 / 指派的修改要在同一個 transaction 裡
    """
    query = Task.query.filter(Task.id == task_id)
    if lock:
        query = query.with_for_update().populate_existing()
    task = query.first()
    if task is None:
        raise NotFound('Task not found')
    return task


def check_task_access(task, action=Action.READ_TASK):
    return authorize(action, owner_ids={task.creator_id}, assignee_ids=task.assignee_ids)


def resolve_assignees(user_ids):
    """
    先查出所有被指派者, 再一次判斷整批能不能指派

    有不存在的 id -> NotFound; Manager 的名單裡有 Admin -> 整批拒絕
    """
    ids = list(dict.fromkeys(user_ids))
    if not ids:
        check_assignment(get_current_user().role, []).enforce()
        return []

    users = User.query.filter(User.id.in_(ids)).all()
    found = {user.id for user in users}
    missing = [uid for uid in ids if uid not in found]
    if missing:
        raise NotFound(f"Users not found: {', '.join(str(uid) for uid in missing)}")

    check_assignment(get_current_user().role, [user.role for user in users]).enforce()

    inactive = [user.id for user in users if not user.is_active]
    if inactive:
        raise ValidationFailed(details=[{
            'path': 'assignee_ids',
            'message': f"Cannot assign deactivated users: {', '.join(str(uid) for uid in inactive)}",
        }])
    return users


def _validate_parent(parent_task_id, task_id=None):
    if parent_task_id is None:
        return
    if task_id is not None and parent_task_id == task_id:
        raise ValidationFailed(details=[
            {'path': 'parent_task_id', 'message': 'A task cannot be its own parent'}
        ])
    parent = db.session.get(Task, parent_task_id)
    if parent is None:
        raise NotFound('Parent task not found')
    if task_id is None:
        return

    # 往上走 parent 鏈, 碰到自己就是循環
    seen = set()
    while parent is not None and parent.id not in seen:
        if parent.id == task_id:
            raise ValidationFailed(details=[
                {'path': 'parent_task_id', 'message': 'A task cannot be nested under its own subtask'}
            ])
        seen.add(parent.id)
        parent = parent.parent_task


def _apply_status(task, new_status, actor):
    """
    依狀態機改狀態並寫活動日誌

    Returns:
        bool: 狀態有沒有變
    """
    if new_status == task.status:
        return False

    decision = check_transition(actor.role, task.status, new_status)
    if not decision:
        logger.warning(f"Status change denied: task={task.id} user={actor.id} "
                       f"{task.status} -> {new_status}: {decision.reason}")
    decision.enforce()

    old_status = task.status
    task.status = new_status
    task.completed_at = utcnow() if new_status == TaskStatus.DONE.value else None

    record_activity(db.session, task.id, actor.id,
                    StatusChanged(old_status, new_status, forced=decision.forced))
    if decision.forced:
        logger.info(f"Task {task.id} forced from {old_status} to Done by user {actor.id}")
    return True


def serialize_task(task, detail=False):
    data = {
        'id': task.id,
        'title': task.title,
        'description': task.description,
        'status': task.status,
        'priority': task.priority,
        'estimate': task.estimate,
        'due_date': iso(task.due_date),
        'completed_at': iso(task.completed_at),
        'sprint_id': task.sprint_id,
        'project_id': task.sprint.project_id if task.sprint else None,
        'parent_task_id': task.parent_task_id,
        'creator': serialize_user_brief(task.creator),
        'assignees': [serialize_user_brief(a.user) for a in task.assignments],
        'version': task.version,
        'created_at': iso(task.created_at),
        'updated_at': iso(task.updated_at),
    }
    if detail:
        data.update({
            'sprint': {
                'id': task.sprint.id,
                'title': task.sprint.title,
                'sprint_number': task.sprint.sprint_number,
            },
            'subtasks': [{
                'id': sub.id,
                'title': sub.title,
                'status': sub.status,
            } for sub in task.subtasks],
            'comment_count': len(task.comments),
            'attachment_count': len(task.attachments),
            'hours_logged': float(sum(log.hours for log in task.time_logs)),
            'activities': [serialize_activity(log) for log in task.activities],
        })
    return data

# ============================================
# 查詢任務
# ============================================

@tasks_bp.route('', methods=['GET'])
@jwt_required()
def list_tasks():
    """
    任務列表

    Member 只看得到自己建立或被指派的任務 (條件直接放在 SQL 裡)
    Query: sprint_id, project_id, status, priority, assignee_id, search, page, per_page
    """
    current_user = get_current_user()
    query = apply_task_visibility(
        Task.query.options(
            joinedload(Task.sprint),
            joinedload(Task.creator),
            selectinload(Task.assignments).joinedload(TaskAssignment.user),
        ),
        current_user,
    )

    sprint_id = request.args.get('sprint_id', type=int)
    if sprint_id is not None:
        query = query.filter(Task.sprint_id == sprint_id)

    project_id = request.args.get('project_id', type=int)
    if project_id is not None:
        query = query.join(Sprint, Task.sprint_id == Sprint.id).filter(Sprint.project_id == project_id)

    status = request.args.get('status')
    if status in values(TaskStatus):
        query = query.filter(Task.status == status)

    priority = request.args.get('priority')
    if priority in values(TaskPriority):
        query = query.filter(Task.priority == priority)

    assignee_id = request.args.get('assignee_id', type=int)
    if assignee_id is not None:
        query = query.filter(assigned_to(assignee_id))

    search = (request.args.get('search') or '').strip()
    if search:
        pattern = f'%{search}%'
        query = query.filter(or_(Task.title.ilike(pattern), Task.description.ilike(pattern)))

    tasks, pagination = paginate(query.order_by(Task.created_at.desc(), Task.id.desc()))

    return jsonify({
        'success': True,
        'tasks': [serialize_task(task) for task in tasks],
        'pagination': pagination,
    }), 200


@tasks_bp.route('/<int:task_id>', methods=['GET'])
@jwt_required()
def get_task(task_id):
    task = get_task_or_404(task_id)
    check_task_access(task)
    return jsonify({'success': True, 'task': serialize_task(task, detail=True)}), 200

# ============================================
# 建立任務
# ============================================

@tasks_bp.route('', methods=['POST'])
@jwt_required()
def create_task():
    """
    建立任務 (Admin/Manager)

    任務、指派、活動日誌在同一個 transaction
    """
    authorize(Action.CREATE_TASK)
    result = validate_request_data(CreateTaskSchema)
    current_user = get_current_user()

    sprint = db.session.get(Sprint, result['sprint_id'])
    if sprint is None:
        raise NotFound('Sprint not found')
    _validate_parent(result.get('parent_task_id'))

    assignees = resolve_assignees(result['assignee_ids']) if result['assignee_ids'] else []

    initial_status = result['status']
    decision = check_transition(current_user.role, TaskStatus.TODO.value, initial_status).enforce()

    task = Task(
        title=result['title'],
        description=result.get('description'),
        status=initial_status,
        priority=result['priority'],
        estimate=result.get('estimate'),
        due_date=result.get('due_date'),
        sprint_id=sprint.id,
        parent_task_id=result.get('parent_task_id'),
        creator_id=current_user.id,
        completed_at=utcnow() if initial_status == TaskStatus.DONE.value else None,
    )
    db.session.add(task)
    db.session.flush()

    for user in assignees:
        db.session.add(TaskAssignment(task_id=task.id, user_id=user.id))

    record_activity(db.session, task.id, current_user.id, TaskCreated(task.title))
    if initial_status != TaskStatus.TODO.value:
        record_activity(db.session, task.id, current_user.id,
                        StatusChanged(TaskStatus.TODO.value, initial_status, forced=decision.forced))
    if assignees:
        record_activity(db.session, task.id, current_user.id,
                        AssigneesChanged(added_ids=tuple(user.id for user in assignees)))

    db.session.commit()
    logger.info(f"Task created: {task.id} in sprint {sprint.id} by user {current_user.id}")

    return jsonify({
        'success': True,
        'message': 'Task created successfully',
        'task': serialize_task(task, detail=True),
    }), 201

# ============================================
# 更新任務
# ============================================

@tasks_bp.route('/<int:task_id>', methods=['PUT', 'PATCH'])
@jwt_required()
def update_task(task_id):
    """
    更新任務

    先鎖住任務那一列, 狀態和指派的修改在同一個 transaction。
    Task.version 是 SQLAlchemy 的 version_id_col, 同時有人改過會變成 409。
    """
    current_user = get_current_user()
    task = get_task_or_404(task_id, lock=True)
    check_task_access(task, Action.UPDATE_TASK)
    result = validate_request_data(UpdateTaskSchema)

    if 'version' in result and result['version'] != task.version:
        raise Conflict('The task was modified by another request. Please reload and retry.')

    changed = False

    # 指派: 算出新增 / 移除的人
    if 'assignee_ids' in result:
        requested = list(dict.fromkeys(result['assignee_ids']))
        current_ids = task.assignee_ids
        added = [uid for uid in requested if uid not in current_ids]
        removed = sorted(current_ids - set(requested))

        if added or removed:
            resolve_assignees(requested)
            for assignment in list(task.assignments):
                if assignment.user_id in removed:
                    task.assignments.remove(assignment)
            for uid in added:
                task.assignments.append(TaskAssignment(user_id=uid))
            record_activity(db.session, task.id, current_user.id,
                            AssigneesChanged(added_ids=tuple(added), removed_ids=tuple(removed)))
            changed = True

    if 'status' in result:
        changed = _apply_status(task, result['status'], current_user) or changed

    if 'sprint_id' in result and result['sprint_id'] != task.sprint_id:
        if db.session.get(Sprint, result['sprint_id']) is None:
            raise NotFound('Sprint not found')
        task.sprint_id = result['sprint_id']
        changed = True

    if 'parent_task_id' in result and result['parent_task_id'] != task.parent_task_id:
        _validate_parent(result['parent_task_id'], task.id)
        task.parent_task_id = result['parent_task_id']
        changed = True

    for field in ('title', 'description', 'priority', 'estimate', 'due_date'):
        if field in result and getattr(task, field) != result[field]:
            setattr(task, field, result[field])
            changed = True

    if changed:
        # 只改到指派時也要讓 version +1
        task.updated_at = utcnow()

    db.session.commit()
    logger.info(f"Task updated: {task.id} by user {current_user.id} ({sorted(result)})")

    return jsonify({
        'success': True,
        'message': 'Task updated successfully',
        'task': serialize_task(task, detail=True),
    }), 200


@tasks_bp.route('/submit/<int:task_id>', methods=['PUT'])
@jwt_required()
def submit_task(task_id):
    """被指派的人把任務送審 (ToDo / InProgress -> Review)"""
    current_user = get_current_user()
    task = get_task_or_404(task_id, lock=True)
    authorize(Action.SUBMIT_TASK, owner_ids={task.creator_id}, assignee_ids=task.assignee_ids)
    check_submission(task.status).enforce()

    old_status = task.status
    task.status = TaskStatus.REVIEW.value
    task.updated_at = utcnow()
    record_activity(db.session, task.id, current_user.id,
                    StatusChanged(old_status, TaskStatus.REVIEW.value))

    db.session.commit()
    logger.info(f"Task {task.id} submitted for review by user {current_user.id}")

    return jsonify({
        'success': True,
        'message': 'Task submitted for review',
        'task': serialize_task(task, detail=True),
    }), 200

# ============================================
# 刪除任務
# ============================================

@tasks_bp.route('/<int:task_id>', methods=['DELETE'])
@jwt_required()
def delete_task(task_id):
    """刪除任務 (Admin/Manager), 附件檔案在 commit 之後才刪"""
    authorize(Action.DELETE_TASK)
    task = get_task_or_404(task_id)

    storage_ids = [a.storage_id for a in task.attachments if a.storage_id]

    db.session.delete(task)
    db.session.commit()

    storage = get_service('file_storage')
    for storage_id in storage_ids:
        storage.delete(storage_id)

    logger.info(f"Task deleted: {task_id} by user {get_current_user().id}")
    return jsonify({'success': True, 'message': 'Task deleted successfully'}), 200
