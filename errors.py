from flask import current_app, jsonify
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError
from werkzeug.exceptions import HTTPException
from marshmallow import ValidationError
import logging
import traceback

logger = logging.getLogger(__name__)


# ============================================
# 錯誤類型
# ============================================

class ApiError(Exception):
    """
    所有業務錯誤的基底類別

    在 blueprint 或 service 裡 raise, 由 register_error_handlers 統一轉成 JSON
    """
    status_code = 400
    error_code = 'bad_request'
    default_message = 'The request could not be processed'

    def __init__(self, message=None, details=None):
        self.message = message or self.default_message
        self.details = details or []
        super().__init__(self.message)

    def to_dict(self):
        payload = {
            'success': False,
            'error': self.error_code,
            'message': self.message,
        }
        if self.details:
            payload['details'] = self.details
        return payload


class BadRequest(ApiError):
    status_code = 400
    error_code = 'bad_request'
    default_message = 'Request body must be JSON'


class ValidationFailed(ApiError):
    status_code = 400
    error_code = 'validation_failed'
    default_message = 'Validation failed'


class InvalidCredentials(ApiError):
    status_code = 401
    error_code = 'invalid_credentials'
    default_message = 'Invalid email or password'


class AccountInactive(ApiError):
    status_code = 403
    error_code = 'account_inactive'
    default_message = 'Account is deactivated'

    def __init__(self, message=None, requires_activation=False):
        super().__init__(message)
        self.requires_activation = requires_activation

    def to_dict(self):
        payload = super().to_dict()
        if self.requires_activation:
            payload['requires_activation'] = True
        return payload


class ProviderVerificationFailed(ApiError):
    status_code = 401
    error_code = 'provider_verification_failed'
    default_message = 'OAuth authentication failed'


class OAuthNotConfigured(ApiError):
    status_code = 503
    error_code = 'oauth_not_configured'
    default_message = 'OAuth provider is not configured'


class InvalidOrExpiredInvite(ApiError):
    status_code = 400
    error_code = 'invalid_or_expired_invite'
    default_message = 'Invite token is invalid or has expired'


class InvalidOrExpiredToken(ApiError):
    status_code = 401
    error_code = 'invalid_or_expired_token'
    default_message = 'Invalid or expired token'


class UserNotFound(ApiError):
    status_code = 401
    error_code = 'user_not_found'
    default_message = 'User not found'


class Forbidden(ApiError):
    status_code = 403
    error_code = 'forbidden'
    default_message = 'Insufficient permissions'


class ForbiddenAssignment(Forbidden):
    error_code = 'forbidden_assignment'
    default_message = 'Managers cannot assign tasks to Administrators'


class InvalidStatusTransition(ApiError):
    status_code = 400
    error_code = 'invalid_status_transition'
    default_message = 'Invalid task status transition'


class NotFound(ApiError):
    status_code = 404
    error_code = 'not_found'
    default_message = 'The requested resource does not exist'


class Conflict(ApiError):
    status_code = 409
    error_code = 'conflict'
    default_message = 'The resource conflicts with an existing one'


# ============================================
# 輔助函數
# ============================================

def flatten_validation_messages(messages, prefix=''):
    """
    把 marshmallow 的巢狀錯誤 dict 攤平成 [{path, message}, ...]

    {'assignee_ids': {0: ['Not a valid integer.']}}
    -> [{'path': 'assignee_ids.0', 'message': 'Not a valid integer.'}]
    """
    details = []
    if isinstance(messages, dict):
        for key, value in messages.items():
            path = f'{prefix}.{key}' if prefix else str(key)
            details.extend(flatten_validation_messages(value, path))
    elif isinstance(messages, (list, tuple)):
        for item in messages:
            if isinstance(item, (dict, list, tuple)):
                details.extend(flatten_validation_messages(item, prefix))
            else:
                details.append({'path': prefix or '_schema', 'message': str(item)})
    else:
        details.append({'path': prefix or '_schema', 'message': str(messages)})
    return details


def error_response(error_code, message, status, **extra):
    payload = {'success': False, 'error': error_code, 'message': message}
    payload.update(extra)
    return jsonify(payload), status


def _rollback():
    # 延遲 import, 避免 models <-> errors 循環
    from models import db
    db.session.rollback()


# ============================================
# 註冊全域錯誤處理
# ============================================

def register_error_handlers(app):
    """統一錯誤格式: {success: false, error, message, details?}"""

    @app.errorhandler(ApiError)
    def handle_api_error(error):
        _rollback()
        if error.status_code >= 500:
            logger.error(f"{error.error_code}: {error.message}")
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(ValidationError)
    def handle_validation_error(error):
        _rollback()
        return error_response(
            'validation_failed', 'Validation failed', 400,
            details=flatten_validation_messages(error.messages)
        )

    @app.errorhandler(StaleDataError)
    def handle_stale_data(error):
        _rollback()
        logger.warning(f"Concurrent update detected: {error}")
        return error_response(
            'conflict', 'The resource was modified by another request. Please reload and retry.', 409
        )

    @app.errorhandler(IntegrityError)
    def handle_integrity_error(error):
        _rollback()
        logger.warning(f"Integrity error: {error.orig}")
        return error_response('conflict', 'The request conflicts with existing data', 409)

    @app.errorhandler(OperationalError)
    def handle_operational_error(error):
        _rollback()
        logger.error(f"Database unavailable: {error}", exc_info=True)
        return error_response('database_unavailable', 'The database is currently unavailable', 503)

    @app.errorhandler(SQLAlchemyError)
    def handle_database_error(error):
        _rollback()
        logger.error(f"Database error: {error}", exc_info=True)
        return error_response('database_error', 'A database error occurred', 500)

    @app.errorhandler(HTTPException)
    def handle_http_exception(error):
        # 404 / 405 / 413 / 429 等 werkzeug 錯誤
        if error.code == 429:
            logger.warning(f"Rate limit exceeded: {error.description}")
            return error_response(
                'rate_limit_exceeded', 'Too many requests. Please try again later.', 429
            )
        code = (error.name or 'error').lower().replace(' ', '_')
        return error_response(code, error.description, error.code)

    @app.errorhandler(Exception)
    def handle_unexpected_error(error):
        """
        最後的防線

        不把 exception 細節給前端, 只有 DEBUG 時附上 stack
        """
        _rollback()
        logger.error(f"Unexpected error: {error}", exc_info=True)
        extra = {}
        if current_app.debug:
            extra['stack'] = traceback.format_exception(type(error), error, error.__traceback__)
        return error_response(
            'internal_server_error', 'An unexpected error occurred. Please try again later.', 500,
            **extra
        )
