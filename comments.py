from flask import Blueprint, jsonify
from flask_jwt_extended import jwt_required
from sqlalchemy.orm import joinedload
from marshmallow import Schema, fields, validate
from models import db, Comment, iso
from errors import NotFound, ValidationFailed
from permissions import Action
from activity import record_activity, Commented
from tasks import get_task_or_404, check_task_access
from auth import get_current_user, authorize, validate_request_data, serialize_user_brief
import logging

comments_bp = Blueprint('comments', __name__)
logger = logging.getLogger(__name__)


class CreateCommentSchema(Schema):
    content = fields.Str(required=True, validate=validate.Length(min=1, max=5000),
                         error_messages={'required': 'Comment content is required'})
    task_id = fields.Int(required=True)
    parent_id = fields.Int(allow_none=True)


class UpdateCommentSchema(Schema):
    content = fields.Str(required=True, validate=validate.Length(min=1, max=5000))


def get_comment_or_404(comment_id):
    comment = db.session.get(Comment, comment_id)
    if comment is None:
        raise NotFound('Comment not found')
    return comment


def serialize_comment(comment, include_replies=False):
    data = {
        'id': comment.id,
        'content': comment.content,
        'task_id': comment.task_id,
        'parent_id': comment.parent_id,
        'user': serialize_user_brief(comment.user),
        'created_at': iso(comment.created_at),
        'updated_at': iso(comment.updated_at),
    }
    if include_replies:
        data['replies'] = [serialize_comment(reply) for reply in
                           sorted(comment.replies, key=lambda c: c.id)]
    return data


@comments_bp.route('/task/<int:task_id>', methods=['GET'])
@jwt_required()
def list_task_comments(task_id):
    """任務的評論 (最上層評論 + 回覆)"""
    task = get_task_or_404(task_id)
    check_task_access(task)

    comments = (
        Comment.query
        .options(joinedload(Comment.user))
        .filter(Comment.task_id == task.id, Comment.parent_id.is_(None))
        .order_by(Comment.created_at.asc(), Comment.id.asc())
        .all()
    )
    return jsonify({
        'success': True,
        'comments': [serialize_comment(comment, include_replies=True) for comment in comments],
    }), 200


@comments_bp.route('', methods=['POST'])
@jwt_required()
def create_comment():
    result = validate_request_data(CreateCommentSchema)
    current_user = get_current_user()
    task = get_task_or_404(result['task_id'])
    check_task_access(task, Action.COMMENT)

    parent_id = result.get('parent_id')
    if parent_id is not None:
        parent = get_comment_or_404(parent_id)
        if parent.task_id != task.id:
            raise ValidationFailed(details=[
                {'path': 'parent_id', 'message': 'Parent comment belongs to another task'}
            ])

    comment = Comment(
        content=result['content'],
        task_id=task.id,
        user_id=current_user.id,
        parent_id=parent_id,
    )
    db.session.add(comment)
    db.session.flush()
    record_activity(db.session, task.id, current_user.id, Commented(comment.id))
    db.session.commit()

    return jsonify({
        'success': True,
        'message': 'Comment added successfully',
        'comment': serialize_comment(comment),
    }), 201


@comments_bp.route('/<int:comment_id>', methods=['PUT', 'PATCH'])
@jwt_required()
def update_comment(comment_id):
    comment = get_comment_or_404(comment_id)
    authorize(Action.UPDATE_COMMENT, owner_ids={comment.user_id})
    result = validate_request_data(UpdateCommentSchema)

    comment.content = result['content']
    db.session.commit()

    return jsonify({
        'success': True,
        'message': 'Comment updated successfully',
        'comment': serialize_comment(comment),
    }), 200


@comments_bp.route('/<int:comment_id>', methods=['DELETE'])
@jwt_required()
def delete_comment(comment_id):
    """刪除評論 (回覆一起刪)"""
    comment = get_comment_or_404(comment_id)
    authorize(Action.DELETE_COMMENT, owner_ids={comment.user_id})

    db.session.delete(comment)
    db.session.commit()
    logger.info(f"Comment deleted: {comment_id} by user {get_current_user().id}")

    return jsonify({'success': True, 'message': 'Comment deleted successfully'}), 200
