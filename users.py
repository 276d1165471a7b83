from flask import Blueprint, request, jsonify
from flask_jwt_extended import jwt_required
from sqlalchemy import func, case, or_, select
from marshmallow import Schema, fields, validate
from models import db, User, Task, TaskAssignment, TimeLog, Project, ActivityLog
from enums import UserRole, TaskStatus, values
from errors import Conflict, Forbidden, NotFound
from permissions import Action, can_grant_role
from identity import normalize_email
from activity import serialize_activity
from mailer import send_invite_email, invite_url
from extensions import get_service
from auth import (
    get_current_user, authorize, validate_request_data, paginate,
    serialize_user, password_field,
)
import logging

users_bp = Blueprint('users', __name__)
logger = logging.getLogger(__name__)

# ============================================
# Input Validation Schemas
# ============================================

class CreateUserSchema(Schema):
    """管理員直接建立帳號"""
    email = fields.Email(required=True)
    name = fields.Str(required=True, validate=validate.Length(min=2, max=100))
    password = password_field(required=False)
    role = fields.Str(validate=validate.OneOf(values(UserRole)), load_default=UserRole.MEMBER.value)
    department = fields.Str(allow_none=True, validate=validate.Length(max=100))
    skills = fields.List(fields.Str(validate=validate.Length(min=1, max=50)), allow_none=True)


class InviteUserSchema(Schema):
    email = fields.Email(required=True)
    name = fields.Str(required=True, validate=validate.Length(min=2, max=100))
    role = fields.Str(validate=validate.OneOf(values(UserRole)), load_default=UserRole.MEMBER.value)
    department = fields.Str(allow_none=True, validate=validate.Length(max=100))
    skills = fields.List(fields.Str(validate=validate.Length(min=1, max=50)), allow_none=True)


class UpdateUserSchema(Schema):
    """
    更新使用者

    role 只有 Admin 能改; is_active 只有 Admin/Manager 能改; 都不能改自己
    """
    name = fields.Str(validate=validate.Length(min=2, max=100))
    email = fields.Email()
    role = fields.Str(validate=validate.OneOf(values(UserRole)))
    department = fields.Str(allow_none=True, validate=validate.Length(max=100))
    skills = fields.List(fields.Str(validate=validate.Length(min=1, max=50)))
    is_active = fields.Bool()

# ============================================
# 輔助函數
# ============================================

def get_user_or_404(user_id):
    user = db.session.get(User, user_id)
    if user is None:
        raise NotFound('User not found')
    return user


def _guard_admin_target(target):
    """Manager 不能修改、停用或刪除 Admin 的帳號"""
    current_user = get_current_user()
    can_grant_role(current_user.role, target.role).enforce()

# ============================================
# 使用者列表
# ============================================

@users_bp.route('', methods=['GET'])
@jwt_required()
def list_users():
    """
    使用者列表 (Admin/Manager)

    Query: role, is_active, search (name / email), page, per_page
    """
    authorize(Action.LIST_USERS)

    query = User.query
    role = request.args.get('role')
    if role in values(UserRole):
        query = query.filter(User.role == role)

    is_active = request.args.get('is_active')
    if is_active is not None:
        query = query.filter(User.is_active == (is_active.lower() == 'true'))

    search = (request.args.get('search') or '').strip()
    if search:
        pattern = f'%{search}%'
        query = query.filter(or_(User.name.ilike(pattern), User.email.ilike(pattern)))

    users, pagination = paginate(query.order_by(User.created_at.desc(), User.id.desc()))

    return jsonify({
        'success': True,
        'users': [serialize_user(user, include_private=True) for user in users],
        'pagination': pagination,
    }), 200


@users_bp.route('/<int:user_id>', methods=['GET'])
@jwt_required()
def get_user(user_id):
    """查詢單一使用者 (團隊成員資料所有人都看得到)"""
    user = get_user_or_404(user_id)
    current_user = get_current_user()
    return jsonify({
        'success': True,
        'user': serialize_user(user, include_private=current_user.is_privileged or current_user.id == user.id),
    }), 200

# ============================================
# 成員統計
# ============================================

@users_bp.route('/<int:user_id>/stats', methods=['GET'])
@jwt_required()
def get_user_stats(user_id):
    """
    成員統計: 被指派的任務、建立 / 負責的專案、工時、最近活動

    本人或 Admin/Manager 才能看
    """
    user = get_user_or_404(user_id)
    authorize(Action.VIEW_USER_STATS, owner_ids={user.id})

    task_stats = db.session.query(
        func.count(TaskAssignment.id).label('total'),
        func.sum(case((Task.status == TaskStatus.DONE.value, 1), else_=0)).label('completed'),
        func.sum(case((Task.status == TaskStatus.IN_PROGRESS.value, 1), else_=0)).label('in_progress'),
        func.sum(case((Task.status == TaskStatus.REVIEW.value, 1), else_=0)).label('in_review'),
        func.sum(case((Task.status == TaskStatus.TODO.value, 1), else_=0)).label('todo'),
    ).join(Task, TaskAssignment.task_id == Task.id).filter(
        TaskAssignment.user_id == user.id
    ).one()

    total_hours = db.session.scalar(
        select(func.coalesce(func.sum(TimeLog.hours), 0.0)).where(TimeLog.user_id == user.id)
    )
    created_tasks = db.session.scalar(
        select(func.count(Task.id)).where(Task.creator_id == user.id)
    )
    created_projects = db.session.scalar(
        select(func.count(Project.id)).where(Project.creator_id == user.id)
    )
    managed_projects = db.session.scalar(
        select(func.count(Project.id)).where(Project.manager_id == user.id)
    )

    recent_assignments = (
        TaskAssignment.query
        .filter(TaskAssignment.user_id == user.id)
        .order_by(TaskAssignment.assigned_at.desc(), TaskAssignment.id.desc())
        .limit(10)
        .all()
    )
    recent_activities = (
        ActivityLog.query
        .filter(ActivityLog.user_id == user.id)
        .order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc())
        .limit(10)
        .all()
    )

    total = task_stats.total or 0
    completed = task_stats.completed or 0

    return jsonify({
        'success': True,
        'user': serialize_user(user),
        'stats': {
            'total_tasks': total,
            'completed_tasks': completed,
            'in_progress_tasks': task_stats.in_progress or 0,
            'in_review_tasks': task_stats.in_review or 0,
            'todo_tasks': task_stats.todo or 0,
            'completion_rate': round(completed / total * 100, 2) if total else 0,
            'created_tasks': created_tasks or 0,
            'created_projects': created_projects or 0,
            'managed_projects': managed_projects or 0,
            'total_hours_logged': float(total_hours or 0),
        },
        'recent_tasks': [{
            'id': assignment.task.id,
            'title': assignment.task.title,
            'status': assignment.task.status,
            'priority': assignment.task.priority,
            'sprint': {
                'id': assignment.task.sprint.id,
                'title': assignment.task.sprint.title,
                'project': {
                    'id': assignment.task.sprint.project.id,
                    'title': assignment.task.sprint.project.title,
                },
            },
            'assigned_at': assignment.assigned_at.isoformat() if assignment.assigned_at else None,
        } for assignment in recent_assignments],
        'recent_activities': [serialize_activity(log) for log in recent_activities],
    }), 200

# ============================================
# 建立 / 邀請使用者
# ============================================

@users_bp.route('', methods=['POST'])
@jwt_required()
def create_user():
    """Admin/Manager 直接建立帳號; Manager 不能建立 Admin"""
    authorize(Action.CREATE_USER)
    result = validate_request_data(CreateUserSchema)
    current_user = get_current_user()
    can_grant_role(current_user.role, result['role']).enforce()

    user = get_service('identity_resolver').create_user(
        result['email'],
        result['name'],
        role=result['role'],
        password=result.get('password'),
        department=result.get('department'),
        skills=result.get('skills'),
    )
    logger.info(f"User {user.email} created by {current_user.email}")

    return jsonify({
        'success': True,
        'message': 'User created successfully',
        'user': serialize_user(user, include_private=True),
    }), 201


@users_bp.route('/invite', methods=['POST'])
@jwt_required()
def invite_user():
    """
    邀請使用者

    寄信失敗不算錯, 回應裡會附上邀請連結讓管理員自己轉交
    """
    authorize(Action.INVITE_USER)
    result = validate_request_data(InviteUserSchema)
    current_user = get_current_user()
    can_grant_role(current_user.role, result['role']).enforce()

    resolver = get_service('identity_resolver')
    existing = resolver.find_by_email(result['email'])
    if existing is not None:
        # 重新邀請停用中的帳號: 不能碰 Admin, 換角色要有改角色的權限
        _guard_admin_target(existing)
        if existing.role != result['role']:
            authorize(Action.CHANGE_ROLE, owner_ids={existing.id})

    user, token = resolver.invite(
        result['email'],
        result['name'],
        role=result['role'],
        department=result.get('department'),
        skills=result.get('skills'),
    )

    email_sent = send_invite_email(user.email, user.name, token, current_user.name)

    payload = {
        'success': True,
        'message': 'Invitation sent successfully' if email_sent
        else 'User invited, but the invitation email could not be sent',
        'user': serialize_user(user, include_private=True),
        'email_sent': email_sent,
        'invite_expires_at': user.invite_token_expires_at.isoformat(),
    }
    if not email_sent:
        payload['invite_url'] = invite_url(token)

    return jsonify(payload), 201

# ============================================
# 更新使用者
# ============================================

@users_bp.route('/<int:user_id>', methods=['PUT', 'PATCH'])
@jwt_required()
def update_user(user_id):
    user = get_user_or_404(user_id)
    result = validate_request_data(UpdateUserSchema)
    current_user = get_current_user()

    authorize(Action.UPDATE_USER, owner_ids={user.id})

    # 改別人的帳號: Manager 碰不到 Admin, 也不能改別人的 email
    if user.id != current_user.id:
        _guard_admin_target(user)

    if 'role' in result and result['role'] != user.role:
        authorize(Action.CHANGE_ROLE, owner_ids={user.id})

    if 'is_active' in result and result['is_active'] != user.is_active:
        authorize(Action.SET_ACTIVE, owner_ids={user.id})

    if 'email' in result:
        email = normalize_email(result['email'])
        if email != user.email:
            if user.id != current_user.id and current_user.role != UserRole.ADMIN.value:
                raise Forbidden("Only Admins can change another user's email")
            exists = db.session.scalar(select(User.id).where(User.email == email))
            if exists:
                raise Conflict('Email already in use')
            user.email = email

    for field in ('name', 'role', 'department', 'skills', 'is_active'):
        if field in result:
            setattr(user, field, result[field])

    db.session.commit()
    logger.info(f"User {user.email} updated by {current_user.email}: {sorted(result)}")

    return jsonify({
        'success': True,
        'message': 'User updated successfully',
        'user': serialize_user(user, include_private=True),
    }), 200

# ============================================
# 刪除使用者 (停用)
# ============================================

@users_bp.route('/<int:user_id>', methods=['DELETE'])
@jwt_required()
def delete_user(user_id):
    """
    刪除使用者 = 停用帳號

    任務、評論、附件都還指向這個 user, 所以不真的刪資料
    """
    user = get_user_or_404(user_id)
    authorize(Action.DELETE_USER, owner_ids={user.id})
    _guard_admin_target(user)

    user.is_active = False
    user.invite_token = None
    user.invite_token_expires_at = None
    db.session.commit()

    logger.info(f"User deactivated: {user.email} by {get_current_user().email}")

    return jsonify({
        'success': True,
        'message': 'User deactivated successfully',
        'user': serialize_user(user),
    }), 200
