from flask import Blueprint, request, jsonify
from flask_jwt_extended import jwt_required
from marshmallow import Schema, fields, validate
from models import db, Attachment, iso
from errors import NotFound, ValidationFailed
from permissions import Action
from activity import record_activity, AttachmentAdded
from extensions import get_service
from tasks import get_task_or_404, check_task_access
from auth import get_current_user, authorize, validate_request_data, serialize_user_brief
import logging

attachments_bp = Blueprint('attachments', __name__)
logger = logging.getLogger(__name__)


class CreateAttachmentSchema(Schema):
    """登記一個已經在外部的檔案 (只存 URL)"""
    task_id = fields.Int(required=True)
    filename = fields.Str(required=True, validate=validate.Length(min=1, max=255),
                          error_messages={'required': 'Filename is required'})
    file_url = fields.Url(required=True, error_messages={'invalid': 'Invalid file URL'})
    file_type = fields.Str(required=True, validate=validate.Length(min=1, max=100))
    file_size = fields.Int(required=True, validate=validate.Range(
        min=1, error='File size must be a positive number'))


def get_attachment_or_404(attachment_id):
    attachment = db.session.get(Attachment, attachment_id)
    if attachment is None:
        raise NotFound('Attachment not found')
    return attachment


def serialize_attachment(attachment):
    return {
        'id': attachment.id,
        'filename': attachment.filename,
        'file_url': attachment.file_url,
        'file_type': attachment.file_type,
        'file_size': attachment.file_size,
        'task_id': attachment.task_id,
        'uploaded_by': serialize_user_brief(attachment.uploaded_by),
        'uploaded_at': iso(attachment.uploaded_at),
    }


def _add_attachment(task, **values):
    current_user = get_current_user()
    attachment = Attachment(task_id=task.id, uploaded_by_id=current_user.id, **values)
    db.session.add(attachment)
    record_activity(db.session, task.id, current_user.id, AttachmentAdded(attachment.filename))
    db.session.commit()
    logger.info(f"Attachment {attachment.filename} added to task {task.id} by user {current_user.id}")
    return attachment


@attachments_bp.route('/task/<int:task_id>', methods=['GET'])
@jwt_required()
def list_task_attachments(task_id):
    task = get_task_or_404(task_id)
    check_task_access(task)

    attachments = Attachment.query.filter(Attachment.task_id == task.id).order_by(
        Attachment.uploaded_at.desc(), Attachment.id.desc()
    ).all()
    return jsonify({
        'success': True,
        'attachments': [serialize_attachment(a) for a in attachments],
    }), 200


@attachments_bp.route('/upload', methods=['POST'])
@jwt_required()
def upload_attachment():
    """上傳檔案 (multipart: file, task_id)"""
    task_id = request.form.get('task_id', type=int)
    if task_id is None:
        raise ValidationFailed(details=[{'path': 'task_id', 'message': 'Task ID is required'}])

    task = get_task_or_404(task_id)
    check_task_access(task, Action.ADD_ATTACHMENT)

    upload = request.files.get('file')
    if upload is None or not upload.filename:
        raise ValidationFailed(details=[{'path': 'file', 'message': 'No file uploaded'}])

    storage = get_service('file_storage')
    stored = storage.upload(upload.read(), upload.filename)

    try:
        attachment = _add_attachment(
            task,
            filename=upload.filename,
            file_url=stored.url,
            storage_id=stored.storage_id,
            file_type=upload.mimetype,
            file_size=stored.size,
        )
    except Exception:
        storage.delete(stored.storage_id)
        raise

    return jsonify({
        'success': True,
        'message': 'File uploaded successfully',
        'attachment': serialize_attachment(attachment),
    }), 201


@attachments_bp.route('', methods=['POST'])
@jwt_required()
def create_attachment():
    result = validate_request_data(CreateAttachmentSchema)
    task = get_task_or_404(result['task_id'])
    check_task_access(task, Action.ADD_ATTACHMENT)

    attachment = _add_attachment(
        task,
        filename=result['filename'],
        file_url=result['file_url'],
        file_type=result['file_type'],
        file_size=result['file_size'],
    )
    return jsonify({
        'success': True,
        'message': 'Attachment created successfully',
        'attachment': serialize_attachment(attachment),
    }), 201


@attachments_bp.route('/<int:attachment_id>', methods=['DELETE'])
@jwt_required()
def delete_attachment(attachment_id):
    """上傳者 / 任務建立者 / Admin / Manager 可以刪"""
    attachment = get_attachment_or_404(attachment_id)
    authorize(Action.DELETE_ATTACHMENT,
              owner_ids={attachment.uploaded_by_id, attachment.task.creator_id})

    storage_id = attachment.storage_id
    db.session.delete(attachment)
    db.session.commit()

    if storage_id:
        get_service('file_storage').delete(storage_id)

    return jsonify({'success': True, 'message': 'Attachment deleted successfully'}), 200
