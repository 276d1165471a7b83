"""
身分解析 (Identity Resolver)

帳密 / OAuth / 邀請連結 三種方式, 最後都對應到唯一一筆 User。
只會新增或更新 User, 不會刪除。
"""
from datetime import timedelta
import logging
import secrets

from sqlalchemy import select

from enums import UserRole
from errors import (
    AccountInactive, Conflict, InvalidCredentials, InvalidOrExpiredInvite,
    ProviderVerificationFailed, ValidationFailed,
)
from models import User, utcnow

logger = logging.getLogger(__name__)

PENDING_ACTIVATION_MESSAGE = (
    'Your account is pending activation. Please contact an administrator to activate your account.'
)
DEACTIVATED_MESSAGE = 'Account is deactivated. Please contact administrator.'

# bcrypt 只處理前 72 bytes
BCRYPT_MAX_BYTES = 72


def normalize_email(email):
    return (email or '').strip().lower()


class IdentityResolver:
    """
    Args:
        session: SQLAlchemy session (通常是 db.session)
        bcrypt: Flask-Bcrypt 實例
        oauth_verifier: OAuthVerifier, verify(provider, assertion) -> OAuthProfile
        require_activation: 新帳號是否需要管理員啟用
        invite_expires_days: 邀請連結有效天數
    """

    def __init__(self, session, bcrypt, oauth_verifier=None, require_activation=False,
                 invite_expires_days=7):
        self.session = session
        self.bcrypt = bcrypt
        self.oauth_verifier = oauth_verifier
        self.require_activation = require_activation
        self.invite_expires_days = invite_expires_days

    # ============================================
    # 密碼
    # ============================================

    def hash_password(self, password):
        if len(password.encode('utf-8')) > BCRYPT_MAX_BYTES:
            raise ValidationFailed(details=[
                {'path': 'password', 'message': 'Password is too long'}
            ])
        return self.bcrypt.generate_password_hash(password).decode('utf-8')

    def check_password(self, user, password):
        try:
            return self.bcrypt.check_password_hash(user.password_hash, password)
        except ValueError:
            # 超過 72 bytes 的密碼不可能對
            return False

    def _placeholder_hash(self):
        # OAuth / 邀請建立的帳號, 沒人知道這組密碼
        return self.hash_password(secrets.token_urlsafe(32))

    def find_by_email(self, email):
        return self.session.scalar(select(User).where(User.email == normalize_email(email)))

    def _new_user(self, email, name, role=UserRole.MEMBER, password=None, department=None,
                  skills=None, avatar_url=None, is_active=True):
        user = User(
            email=normalize_email(email),
            name=name,
            role=UserRole(role).value,
            password_hash=self.hash_password(password) if password else self._placeholder_hash(),
            department=department,
            skills=list(skills or []),
            avatar_url=avatar_url,
            is_active=is_active,
        )
        self.session.add(user)
        return user

    # ============================================
    # 註冊 / 帳密登入
    # ============================================

    def register(self, email, password, name, department=None, skills=None):
        """自行註冊一律是 Member"""
        if self.find_by_email(email):
            raise Conflict('User with this email already exists')

        user = self._new_user(
            email, name,
            password=password,
            department=department,
            skills=skills,
            is_active=not self.require_activation,
        )
        self.session.commit()
        logger.info(f"New user registered: {user.email} (active={user.is_active})")
        return user

    def resolve_by_credentials(self, email, password):
        """
        帳密登入

        email 不存在和密碼錯誤回同一個錯誤訊息;
        先驗密碼再看是否啟用, 密碼錯的人看不到帳號狀態
        """
        user = self.find_by_email(email)
        if user is None or not self.check_password(user, password):
            logger.warning(f"Failed login attempt for email: {normalize_email(email)}")
            raise InvalidCredentials()

        if not user.is_active:
            logger.warning(f"Inactive user login attempt: {user.email}")
            raise AccountInactive(self._inactive_message(user), requires_activation=True)

        user.last_login = utcnow()
        self.session.commit()
        return user

    def _inactive_message(self, user):
        # 從沒登入過的帳號視為等待啟用
        if user.last_login is None:
            return PENDING_ACTIVATION_MESSAGE
        return DEACTIVATED_MESSAGE

    # ============================================
    # OAuth
    # ============================================

    def resolve_or_create_oauth(self, provider, assertion):
        """
        OAuth 登入

        驗證失敗不會建立任何資料; 同一個身分重複登入回傳同一筆 User
        """
        profile = self.oauth_verifier.verify(provider, assertion)

        user = self.find_by_email(profile.email)
        if user is None:
            user = self._new_user(
                profile.email, profile.name,
                avatar_url=profile.picture,
                is_active=not self.require_activation,
            )
            if user.is_active:
                user.last_login = utcnow()
            self.session.commit()
            logger.info(f"User created via {provider} OAuth: {user.email}")
            return user

        # 已有帳號時, provider 沒驗證過的 email 不能拿來連結
        if not profile.email_verified:
            logger.warning(f"Unverified {provider} email for existing user: {user.email}")
            raise ProviderVerificationFailed(f'{provider.capitalize()} email address is not verified')

        if not user.is_active:
            logger.warning(f"Inactive user OAuth attempt: {user.email}")
            raise AccountInactive(self._inactive_message(user), requires_activation=True)

        if profile.picture and profile.picture != user.avatar_url:
            user.avatar_url = profile.picture
        user.last_login = utcnow()
        self.session.commit()
        return user

    # ============================================
    # 邀請
    # ============================================

    def invite(self, email, name, role=UserRole.MEMBER, department=None, skills=None):
        """
        建立 (或重新邀請) 一個帳號並產生邀請 token

        已啟用的帳號不能再邀請; 停用中的帳號會更新資料並換一組新 token

        Returns:
            tuple: (user, invite_token)
        """
        token = secrets.token_hex(32)
        expires_at = utcnow() + timedelta(days=self.invite_expires_days)

        user = self.find_by_email(email)
        if user is not None:
            if user.is_active:
                raise Conflict('User with this email already exists')
            user.name = name
            user.role = UserRole(role).value
            if department is not None:
                user.department = department
            if skills is not None:
                user.skills = list(skills)
        else:
            user = self._new_user(
                email, name, role=role, department=department, skills=skills, is_active=False,
            )

        user.invite_token = token
        user.invite_token_expires_at = expires_at
        self.session.commit()
        logger.info(f"Invite created for {user.email} (role={user.role})")
        return user, token

    def resolve_invite(self, token, new_password):
        """用邀請 token 設定密碼並啟用帳號"""
        if not token:
            raise InvalidOrExpiredInvite()

        user = self.session.scalar(select(User).where(User.invite_token == token))
        if user is None:
            raise InvalidOrExpiredInvite('Invalid invite token')
        if user.invite_token_expires_at is None or user.invite_token_expires_at < utcnow():
            raise InvalidOrExpiredInvite('Invite token has expired')

        user.password_hash = self.hash_password(new_password)
        user.invite_token = None
        user.invite_token_expires_at = None
        user.is_active = True
        user.last_login = utcnow()
        self.session.commit()
        logger.info(f"Invite accepted: {user.email}")
        return user

    # ============================================
    # 管理員建立帳號 / 修改密碼
    # ============================================

    def create_user(self, email, name, role=UserRole.MEMBER, password=None, department=None,
                    skills=None, is_active=True):
        if self.find_by_email(email):
            raise Conflict('User with this email already exists')

        user = self._new_user(
            email, name,
            role=role,
            password=password,
            department=department,
            skills=skills,
            is_active=is_active,
        )
        self.session.commit()
        logger.info(f"User created: {user.email} (role={user.role})")
        return user

    def change_password(self, user, current_password, new_password):
        if not self.check_password(user, current_password):
            raise InvalidCredentials('Current password is incorrect')

        user.password_hash = self.hash_password(new_password)
        self.session.commit()
        logger.info(f"Password changed for user: {user.email}")
        return user
