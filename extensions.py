"""
Flask 擴展實例

在 create_app 裡 init_app, blueprint 直接 import 使用
"""
from flask import current_app
from flask_jwt_extended import JWTManager
from flask_bcrypt import Bcrypt
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_mail import Mail

jwt = JWTManager()
bcrypt = Bcrypt()
limiter = Limiter(key_func=get_remote_address)
mail = Mail()


def get_service(name):
    """
    從 app.extensions 取得 create_app 建好的 service
    (token_issuer / identity_resolver / oauth_verifier / file_storage)
    """
    service = current_app.extensions.get(name)
    if service is None:
        raise RuntimeError(f'Service "{name}" is not initialised')
    return service
