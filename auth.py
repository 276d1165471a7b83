from flask import Blueprint, request, jsonify, current_app
from flask_jwt_extended import jwt_required, get_jwt, get_current_user as current_jwt_user
from marshmallow import Schema, fields, validate, ValidationError, EXCLUDE
from models import db, to_utc_naive
from datetime import datetime, time
from sqlalchemy.exc import SQLAlchemyError
from enums import AuthMethod
from errors import BadRequest, InvalidOrExpiredToken, ValidationFailed, flatten_validation_messages
from extensions import limiter, get_service
from oauth import PROVIDERS, GOOGLE
from permissions import evaluate
from tokens import ACCESS
import logging

auth_bp = Blueprint('auth', __name__)
logger = logging.getLogger(__name__)


# ============================================
# Input Validation Schemas (用 marshmallow)
# ============================================

def password_field(required=True):
    # bcrypt 只處理前 72 bytes
    return fields.Str(
        required=required,
        validate=validate.Length(min=6, max=72, error='Password must be 6-72 characters'),
        error_messages={'required': 'Password is required'}
    )


class UtcDateTime(fields.DateTime):
    """ISO 日期時間, 轉成 naive UTC; 只給日期 (2024-01-31) 也可以"""

    def _deserialize(self, value, attr, data, **kwargs):
        try:
            parsed = super()._deserialize(value, attr, data, **kwargs)
        except ValidationError:
            day = fields.Date()._deserialize(value, attr, data, **kwargs)
            return datetime.combine(day, time.min)
        return to_utc_naive(parsed)


class RegisterSchema(Schema):
    """註冊輸入驗證 (角色一律是 Member, body 裡的 role 會被忽略)"""
    email = fields.Email(required=True, error_messages={
        'required': 'Email is required',
        'invalid': 'Invalid email format'
    })
    password = password_field()
    name = fields.Str(
        required=True,
        validate=validate.Length(min=2, max=100, error='Name must be 2-100 characters'),
        error_messages={'required': 'Name is required'}
    )
    department = fields.Str(allow_none=True, validate=validate.Length(max=100))
    skills = fields.List(fields.Str(validate=validate.Length(min=1, max=50)), allow_none=True)


class LoginSchema(Schema):
    """登入輸入驗證"""
    email = fields.Email(required=True)
    password = fields.Str(required=True, validate=validate.Length(min=1))


class OAuthSchema(Schema):
    provider = fields.Str(required=True, validate=validate.OneOf(PROVIDERS))
    id_token = fields.Str(allow_none=True)
    access_token = fields.Str(allow_none=True)


class AcceptInviteSchema(Schema):
    token = fields.Str(required=True, validate=validate.Length(min=1))
    password = password_field()


class UpdateProfileSchema(Schema):
    """個人資料更新驗證"""
    name = fields.Str(validate=validate.Length(min=2, max=100))
    department = fields.Str(allow_none=True, validate=validate.Length(max=100))
    skills = fields.List(fields.Str(validate=validate.Length(min=1, max=50)))


class ChangePasswordSchema(Schema):
    """密碼修改驗證"""
    current_password = fields.Str(required=True)
    new_password = password_field()


# ============================================
# Helper Functions
# ============================================

def _set_refresh_cookie(response, pair):
    settings = current_app.config
    response.set_cookie(
        settings['REFRESH_COOKIE_NAME'],
        pair.refresh_token,
        max_age=int(pair.refresh_expires.total_seconds()),
        httponly=True,
        secure=settings['REFRESH_COOKIE_SECURE'],
        samesite=settings['REFRESH_COOKIE_SAMESITE'],
    )
    return response


def _token_response(user, pair, message, status=200):
    """登入成功的統一回應: access token 放 body, refresh token 放 cookie (body 也帶一份)"""
    response = jsonify({
        'success': True,
        'message': message,
        'user': serialize_user(user, include_private=True),
        'access_token': pair.access_token,
        'refresh_token': pair.refresh_token,
        'token_type': 'Bearer',
        'expires_in': int(pair.access_expires.total_seconds()),
        'method': pair.method,
    })
    response.status_code = status
    return _set_refresh_cookie(response, pair)


# ============================================
# 註冊 API
# ============================================

@auth_bp.route('/register', methods=['POST'])
@limiter.limit("5 per hour")
def register():
    """
    使用者註冊

    REQUIRE_ACTIVATION 開啟時帳號先停用, 不發 token, 等管理員啟用
    """
    result = validate_request_data(RegisterSchema)
    resolver = get_service('identity_resolver')

    user = resolver.register(
        result['email'],
        result['password'],
        result['name'],
        department=result.get('department'),
        skills=result.get('skills'),
    )

    if not user.is_active:
        return jsonify({
            'success': True,
            'message': 'Registration successful. Your account is pending activation by an administrator.',
            'requires_activation': True,
            'user': serialize_user(user, include_private=True),
        }), 201

    pair = get_service('token_issuer').issue(user, AuthMethod.CREDENTIALS)
    return _token_response(user, pair, 'User registered successfully', status=201)


# ============================================
# 登入 API
# ============================================

@auth_bp.route('/login', methods=['POST'])
@limiter.limit("10 per minute")
def login():
    """
    使用者登入

    email 錯和密碼錯回同一個訊息, 避免帳號枚舉
    """
    result = validate_request_data(LoginSchema)
    user = get_service('identity_resolver').resolve_by_credentials(
        result['email'], result['password']
    )

    pair = get_service('token_issuer').issue(user, AuthMethod.CREDENTIALS)
    logger.info(f"User logged in: {user.email}")
    return _token_response(user, pair, 'Login successful')


@auth_bp.route('/oauth', methods=['POST'])
@limiter.limit("10 per minute")
def oauth_login():
    """
    Google / Facebook 登入

    Google 傳 id_token, Facebook 傳 access_token
    """
    result = validate_request_data(OAuthSchema)
    provider = result['provider']
    assertion = result.get('id_token') if provider == GOOGLE else result.get('access_token')

    if not assertion:
        field = 'id_token' if provider == GOOGLE else 'access_token'
        raise ValidationFailed(details=[
            {'path': field, 'message': f'{field} is required for {provider}'}
        ])

    user = get_service('identity_resolver').resolve_or_create_oauth(provider, assertion)

    if not user.is_active:
        return jsonify({
            'success': True,
            'message': 'Account created. Your account is pending activation by an administrator.',
            'requires_activation': True,
            'user': serialize_user(user, include_private=True),
        }), 201

    pair = get_service('token_issuer').issue(user, AuthMethod.OAUTH)
    logger.info(f"User logged in via {provider}: {user.email}")
    return _token_response(user, pair, f'{provider.capitalize()} login successful')


@auth_bp.route('/accept-invite', methods=['POST'])
def accept_invite():
    """接受邀請: 設定密碼並啟用帳號, 直接登入"""
    result = validate_request_data(AcceptInviteSchema)
    user = get_service('identity_resolver').resolve_invite(result['token'], result['password'])

    pair = get_service('token_issuer').issue(user, AuthMethod.CREDENTIALS)
    return _token_response(user, pair, 'Invitation accepted successfully')


# ============================================
# Token 刷新 API
# ============================================

@auth_bp.route('/refresh', methods=['POST'])
def refresh():
    """
    用 refresh token 換新的 access token

    refresh token 從 HTTP-only cookie 讀, 沒有的話看 body 的 refresh_token。
    新的 access token 沿用原本登入方式的過期時間。
    """
    token = request.cookies.get(current_app.config['REFRESH_COOKIE_NAME'])
    if not token:
        body = request.get_json(silent=True) or {}
        token = body.get('refresh_token') if isinstance(body, dict) else None

    if not token:
        raise InvalidOrExpiredToken('Refresh token not provided')

    issuer = get_service('token_issuer')
    access_token, user, method = issuer.refresh(token)

    return jsonify({
        'success': True,
        'message': 'Token refreshed successfully',
        'access_token': access_token,
        'token_type': 'Bearer',
        'expires_in': int(issuer.expiry_for(method, ACCESS).total_seconds()),
        'method': method,
    }), 200


# ============================================
# 登出 API
# ============================================

@auth_bp.route('/logout', methods=['POST'])
@jwt_required()
def logout():
    """
    登出: 清掉 refresh token cookie

    token 本身是 stateless 的, access token 到期前仍然有效
    """
    response = jsonify({'success': True, 'message': 'Logged out successfully'})
    response.delete_cookie(
        current_app.config['REFRESH_COOKIE_NAME'],
        httponly=True,
        secure=current_app.config['REFRESH_COOKIE_SECURE'],
        samesite=current_app.config['REFRESH_COOKIE_SAMESITE'],
    )
    logger.info(f"User logged out: {get_jwt().get('email')}")
    return response, 200


# ============================================
# 取得 / 更新當前使用者資訊
# ============================================

@auth_bp.route('/me', methods=['GET'])
@jwt_required()
def get_me():
    user = get_current_user()
    return jsonify({
        'success': True,
        'user': serialize_user(user, include_private=True),
        'method': get_jwt().get('method'),
    }), 200


@auth_bp.route('/me', methods=['PATCH'])
@jwt_required()
def update_me():
    """更新當前使用者資料 (不能改 role / email / 啟用狀態)"""
    user = get_current_user()
    result = validate_request_data(UpdateProfileSchema)

    for field in ('name', 'department', 'skills'):
        if field in result:
            setattr(user, field, result[field])

    db.session.commit()
    logger.info(f"User profile updated: {user.email}")

    return jsonify({
        'success': True,
        'message': 'Profile updated successfully',
        'user': serialize_user(user, include_private=True),
    }), 200


@auth_bp.route('/me/avatar', methods=['PUT'])
@jwt_required()
def upload_avatar():
    """上傳頭像 (multipart, 欄位名稱 avatar), 舊的檔案會刪掉"""
    user = get_current_user()
    upload = request.files.get('avatar')
    if upload is None or not upload.filename:
        raise ValidationFailed(details=[{'path': 'avatar', 'message': 'Avatar file is required'}])
    if not (upload.mimetype or '').startswith('image/'):
        raise ValidationFailed(details=[{'path': 'avatar', 'message': 'Avatar must be an image'}])

    storage = get_service('file_storage')
    stored = storage.upload(upload.read(), upload.filename)
    old_storage_id = user.avatar_storage_id

    user.avatar_url = stored.url
    user.avatar_storage_id = stored.storage_id
    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        storage.delete(stored.storage_id)
        raise

    if old_storage_id:
        storage.delete(old_storage_id)

    return jsonify({
        'success': True,
        'message': 'Avatar updated successfully',
        'user': serialize_user(user, include_private=True),
    }), 200


# ============================================
# 修改密碼
# ============================================

@auth_bp.route('/change-password', methods=['POST'])
@jwt_required()
def change_password():
    user = get_current_user()
    result = validate_request_data(ChangePasswordSchema)

    get_service('identity_resolver').change_password(
        user, result['current_password'], result['new_password']
    )
    return jsonify({'success': True, 'message': 'Password changed successfully'}), 200


# ============================================
# 輔助函數 (供其他模組使用)
# ============================================

def get_current_user():
    """
    取得當前登入的使用者

    @jwt_required() 之後才能呼叫; user_lookup_loader 已經擋掉停用的帳號
    """
    return current_jwt_user()


def authorize(action, owner_ids=(), assignee_ids=()):
    """
    用當前使用者跑權限判斷, 不允許就 raise

    Returns:
        Decision
    """
    user = get_current_user()
    decision = evaluate(user.role, user.id, action, owner_ids=owner_ids, assignee_ids=assignee_ids)
    if not decision:
        logger.warning(f"Permission denied: user={user.id} role={user.role} "
                       f"action={getattr(action, 'value', action)} reason={decision.reason}")
    return decision.enforce()


def validate_request_data(schema_class, data=None, partial=False):
    """
    統一的輸入驗證函數

    沒傳 data 就讀 request JSON; 驗證失敗 raise ValidationFailed,
    details 是攤平的 [{path, message}]
    """
    if data is None:
        data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise BadRequest()

    try:
        return schema_class().load(data, partial=partial, unknown=EXCLUDE)
    except ValidationError as err:
        raise ValidationFailed(details=flatten_validation_messages(err.messages))


def get_pagination():
    settings = current_app.config
    page = max(request.args.get('page', 1, type=int) or 1, 1)
    per_page = request.args.get('per_page', settings['DEFAULT_PAGE_SIZE'], type=int)
    per_page = max(1, min(per_page or settings['DEFAULT_PAGE_SIZE'], settings['MAX_PAGE_SIZE']))
    return page, per_page


def paginate(query):
    """
    分頁

    Returns:
        tuple: (items, pagination dict)
    """
    page, per_page = get_pagination()
    pages = query.paginate(page=page, per_page=per_page, error_out=False)
    return pages.items, {
        'page': page,
        'per_page': per_page,
        'total': pages.total,
        'total_pages': pages.pages,
    }


def serialize_user(user, include_private=False):
    if user is None:
        return None
    data = {
        'id': user.id,
        'email': user.email,
        'name': user.name,
        'role': user.role,
        'department': user.department,
        'skills': user.skills or [],
        'avatar_url': user.avatar_url,
        'is_active': user.is_active,
    }
    if include_private:
        data.update({
            'last_login': user.last_login.isoformat() if user.last_login else None,
            'created_at': user.created_at.isoformat() if user.created_at else None,
        })
    return data


def serialize_user_brief(user):
    if user is None:
        return None
    return {
        'id': user.id,
        'name': user.name,
        'email': user.email,
        'role': user.role,
        'avatar_url': user.avatar_url,
    }
