"""
OAuth 驗證

Google: 驗證 ID token (google-auth)
Facebook: 先 debug_token 確認 token 有效, 再到 graph API 拿 profile
失敗一律 ProviderVerificationFailed, 不重試
"""
from dataclasses import dataclass
import logging

import requests
from google.auth import exceptions as google_exceptions
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token as google_id_token

from errors import ProviderVerificationFailed, OAuthNotConfigured

logger = logging.getLogger(__name__)

GOOGLE = 'google'
FACEBOOK = 'facebook'
PROVIDERS = (GOOGLE, FACEBOOK)


@dataclass(frozen=True)
class OAuthProfile:
    provider: str
    email: str
    name: str
    picture: str = None
    email_verified: bool = False


class OAuthVerifier:

    def __init__(self, google_client_id=None, facebook_app_id=None, facebook_app_secret=None,
                 graph_url='https://graph.facebook.com', timeout=10, http=None):
        self.google_client_id = google_client_id
        self.facebook_app_id = facebook_app_id
        self.facebook_app_secret = facebook_app_secret
        self.graph_url = graph_url.rstrip('/')
        self.timeout = timeout
        self.http = http or requests.Session()

    @classmethod
    def from_config(cls, settings):
        return cls(
            google_client_id=settings.get('GOOGLE_CLIENT_ID'),
            facebook_app_id=settings.get('FACEBOOK_APP_ID'),
            facebook_app_secret=settings.get('FACEBOOK_APP_SECRET'),
            graph_url=settings.get('FACEBOOK_GRAPH_URL', 'https://graph.facebook.com'),
            timeout=settings.get('OAUTH_HTTP_TIMEOUT', 10),
        )

    def verify(self, provider, assertion):
        if provider == GOOGLE:
            return self.verify_google(assertion)
        if provider == FACEBOOK:
            return self.verify_facebook(assertion)
        raise ProviderVerificationFailed('Invalid OAuth provider. Must be "google" or "facebook"')

    # ============================================
    # Google
    # ============================================

    def verify_google(self, id_token):
        if not self.google_client_id:
            raise OAuthNotConfigured('Google OAuth is not configured')
        if not id_token:
            raise ProviderVerificationFailed('Google ID token is required')

        try:
            payload = google_id_token.verify_oauth2_token(
                id_token,
                google_requests.Request(),
                audience=self.google_client_id,
            )
        except ValueError as e:
            # 簽章錯誤、過期、audience 不符都是 ValueError
            logger.warning(f"Google token verification failed: {e}")
            raise ProviderVerificationFailed(f'Google token verification failed: {e}')
        except google_exceptions.TransportError as e:
            logger.warning(f"Google certificate fetch failed: {e}")
            raise ProviderVerificationFailed('Google token verification failed: provider unreachable')

        if not payload:
            raise ProviderVerificationFailed('Invalid Google token payload')
        if not payload.get('email'):
            raise ProviderVerificationFailed('Email is required from Google token')
        if not payload.get('name'):
            raise ProviderVerificationFailed('Name is required from Google token')

        return OAuthProfile(
            provider=GOOGLE,
            email=payload['email'],
            name=payload['name'],
            picture=payload.get('picture'),
            email_verified=bool(payload.get('email_verified', False)),
        )

    # ============================================
    # Facebook
    # ============================================

    def _graph_get(self, path, params):
        try:
            response = self.http.get(f'{self.graph_url}/{path}', params=params, timeout=self.timeout)
        except requests.RequestException as e:
            logger.warning(f"Facebook graph request failed: {e}")
            raise ProviderVerificationFailed('Facebook token verification failed: provider unreachable')

        try:
            data = response.json()
        except ValueError:
            data = {}

        if not response.ok:
            message = (data.get('error') or {}).get('message') or 'Invalid token'
            raise ProviderVerificationFailed(f'Facebook token verification failed: {message}')
        return data

    def verify_facebook(self, access_token):
        if not self.facebook_app_id or not self.facebook_app_secret:
            raise OAuthNotConfigured('Facebook OAuth is not configured')
        if not access_token:
            raise ProviderVerificationFailed('Facebook access token is required')

        debug = self._graph_get('debug_token', {
            'input_token': access_token,
            'access_token': f'{self.facebook_app_id}|{self.facebook_app_secret}',
        })
        token_data = debug.get('data') or {}
        if not token_data.get('is_valid'):
            raise ProviderVerificationFailed('Invalid Facebook token')
        # token 必須是發給我們 app 的
        if token_data.get('app_id') and str(token_data['app_id']) != str(self.facebook_app_id):
            raise ProviderVerificationFailed('Facebook token was issued for another application')

        user_id = token_data.get('user_id')
        if not user_id:
            raise ProviderVerificationFailed('Invalid Facebook token')

        profile = self._graph_get(str(user_id), {
            'fields': 'id,name,email,picture',
            'access_token': access_token,
        })

        if not profile.get('email'):
            raise ProviderVerificationFailed(
                'Email is required from Facebook. Please grant email permission.'
            )
        if not profile.get('name'):
            raise ProviderVerificationFailed('Name is required from Facebook')

        picture = ((profile.get('picture') or {}).get('data') or {}).get('url')
        return OAuthProfile(
            provider=FACEBOOK,
            email=profile['email'],
            name=profile['name'],
            picture=picture,
            email_verified=True,
        )
