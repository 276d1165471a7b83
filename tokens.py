"""
Token 簽發 (Token Issuer)

access / refresh token 用不同的 secret 簽章, 過期時間依登入方式
(credentials / oauth) 分開設定。Token 的 claim 格式跟 Flask-JWT-Extended
相容 (sub / type / jti / fresh), 所以 @jwt_required() 可以直接驗證 access token。
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
import uuid

import jwt

from config import parse_duration
from enums import AuthMethod
from errors import InvalidOrExpiredToken, UserNotFound, AccountInactive

logger = logging.getLogger(__name__)

ACCESS = 'access'
REFRESH = 'refresh'


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    method: str
    access_expires: timedelta
    refresh_expires: timedelta


def _utcnow():
    return datetime.now(timezone.utc)


class TokenIssuer:
    """
    Args:
        access_secret / refresh_secret: 兩把不同的簽章 key
        expiries: {(method, kind): timedelta}
        user_loader: user_id -> User 或 None (refresh 時重新查使用者)
        clock: 回傳目前時間 (UTC aware datetime), 測試可以換掉
    """

    def __init__(self, access_secret, refresh_secret, expiries, user_loader=None,
                 algorithm='HS256', clock=_utcnow):
        if access_secret == refresh_secret:
            raise ValueError('Access and refresh tokens must use distinct secrets')
        self._secrets = {ACCESS: access_secret, REFRESH: refresh_secret}
        self._expiries = dict(expiries)
        self._user_loader = user_loader
        self.algorithm = algorithm
        self._clock = clock

    @classmethod
    def from_config(cls, settings, user_loader=None):
        expiries = {
            (AuthMethod.CREDENTIALS.value, ACCESS): parse_duration(settings['JWT_CREDENTIALS_ACCESS_EXPIRES']),
            (AuthMethod.CREDENTIALS.value, REFRESH): parse_duration(settings['JWT_CREDENTIALS_REFRESH_EXPIRES']),
            (AuthMethod.OAUTH.value, ACCESS): parse_duration(settings['JWT_OAUTH_ACCESS_EXPIRES']),
            (AuthMethod.OAUTH.value, REFRESH): parse_duration(settings['JWT_OAUTH_REFRESH_EXPIRES']),
        }
        return cls(
            settings['JWT_ACCESS_SECRET_KEY'],
            settings['JWT_REFRESH_SECRET_KEY'],
            expiries,
            user_loader=user_loader,
            algorithm=settings.get('JWT_ALGORITHM', 'HS256'),
        )

    def secret_for(self, kind):
        if kind not in self._secrets:
            raise InvalidOrExpiredToken()
        return self._secrets[kind]

    def expiry_for(self, method, kind):
        return self._expiries[(AuthMethod(method).value, kind)]

    # ============================================
    # 簽發
    # ============================================

    def _encode(self, user, method, kind):
        now = self._clock()
        payload = {
            'sub': str(user.id),
            'type': kind,
            'jti': uuid.uuid4().hex,
            'fresh': False,
            'iat': now,
            'nbf': now,
            'exp': now + self.expiry_for(method, kind),
            'id': user.id,
            'email': user.email,
            'role': user.role,
            'name': user.name,
            'method': AuthMethod(method).value,
        }
        return jwt.encode(payload, self._secrets[kind], algorithm=self.algorithm)

    def issue_access(self, user, method=AuthMethod.CREDENTIALS):
        return self._encode(user, method, ACCESS)

    def issue(self, user, method=AuthMethod.CREDENTIALS):
        """簽發一組 access + refresh token"""
        method = AuthMethod(method).value
        return TokenPair(
            access_token=self._encode(user, method, ACCESS),
            refresh_token=self._encode(user, method, REFRESH),
            method=method,
            access_expires=self.expiry_for(method, ACCESS),
            refresh_expires=self.expiry_for(method, REFRESH),
        )

    # ============================================
    # 驗證
    # ============================================

    def verify(self, token, kind=ACCESS):
        """
        驗證 token 並回傳 claims

        簽章錯誤、過期、格式錯誤、類型不符一律 InvalidOrExpiredToken
        """
        if not token or not isinstance(token, str):
            raise InvalidOrExpiredToken(f'Invalid or expired {kind} token')

        try:
            claims = jwt.decode(
                token,
                self.secret_for(kind),
                algorithms=[self.algorithm],
                options={'require': ['exp', 'iat', 'sub']},
            )
        except jwt.InvalidTokenError as e:
            logger.info(f"Rejected {kind} token: {e}")
            raise InvalidOrExpiredToken(f'Invalid or expired {kind} token')

        if claims.get('type') != kind:
            raise InvalidOrExpiredToken(f'Invalid or expired {kind} token')

        try:
            AuthMethod(claims.get('method'))
            int(claims['sub'])
        except (ValueError, TypeError):
            raise InvalidOrExpiredToken(f'Invalid or expired {kind} token')

        return claims

    def refresh(self, refresh_token):
        """
        用 refresh token 換新的 access token

        登入方式記在 token 的 method claim 裡, 新 token 沿用同一套過期規則

        Returns:
            tuple: (access_token, user, method)
        """
        claims = self.verify(refresh_token, REFRESH)
        user = self._user_loader(int(claims['sub'])) if self._user_loader else None

        if user is None:
            raise UserNotFound()
        if not user.is_active:
            logger.warning(f"Refresh attempt for inactive user: {user.email}")
            raise AccountInactive()

        method = claims['method']
        return self.issue_access(user, method), user, method
