from flask import Flask, current_app, request, jsonify, send_from_directory
from flask_cors import CORS
from config import Config, get_config
from models import db, User, utcnow
from extensions import jwt, bcrypt, limiter, mail
from errors import register_error_handlers, error_response
from tokens import TokenIssuer
from oauth import OAuthVerifier
from identity import IdentityResolver
from storage import LocalFileStorage
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
import logging
from logging.handlers import RotatingFileHandler
import os

logger = logging.getLogger(__name__)


# ============================================
# Logging 設定
# ============================================

def setup_logging(app):
    """
    設定 logging

    1. 分開 info 和 error logs
    2. 使用 RotatingFileHandler 避免 log 檔案過大
    3. 各模組的 logger 都掛在 root logger 下, 一起寫進檔案
    """
    level = getattr(logging, str(app.config.get('LOG_LEVEL', 'INFO')).upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(level)

    if app.debug or app.testing:
        return

    log_dir = app.config.get('LOG_DIR', 'logs')
    os.makedirs(log_dir, exist_ok=True)

    formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )

    # Info log handler (記錄一般資訊)
    info_handler = RotatingFileHandler(
        os.path.join(log_dir, 'app.log'),
        maxBytes=10240000,  # 10MB
        backupCount=10
    )
    info_handler.setLevel(level)
    info_handler.setFormatter(formatter)

    # Error log handler (只記錄錯誤)
    error_handler = RotatingFileHandler(
        os.path.join(log_dir, 'error.log'),
        maxBytes=10240000,  # 10MB
        backupCount=10
    )
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(formatter)

    root.addHandler(info_handler)
    root.addHandler(error_handler)

    app.logger.info('Application startup')


# ============================================
# JWT callbacks
# ============================================

def register_jwt_callbacks(app):
    """
    access token 由 TokenIssuer 簽發, 這裡讓 Flask-JWT-Extended 用同一把 key 驗證,
    並且每個 request 都重新查一次使用者 (停用的帳號 token 立刻失效)
    """

    @jwt.decode_key_loader
    def decode_key(jwt_header, jwt_data):
        return current_app.extensions['token_issuer'].secret_for(jwt_data.get('type', 'access'))

    @jwt.user_lookup_loader
    def load_user(jwt_header, jwt_data):
        user = db.session.get(User, int(jwt_data['sub']))
        if user is None or not user.is_active:
            return None
        return user

    @jwt.user_lookup_error_loader
    def user_lookup_error(jwt_header, jwt_data):
        user = db.session.get(User, int(jwt_data['sub']))
        if user is not None and not user.is_active:
            logger.warning(f"Token used by inactive user: {user.email}")
            return error_response('account_inactive', 'Account is deactivated', 403)
        return error_response('user_not_found', 'User not found', 401)

    @jwt.expired_token_loader
    def expired_token(jwt_header, jwt_payload):
        logger.warning(f"Expired token attempt from: {request.remote_addr}")
        return error_response(
            'invalid_or_expired_token',
            'The token has expired. Please refresh your token or login again.', 401
        )

    @jwt.invalid_token_loader
    def invalid_token(error):
        logger.warning(f"Invalid token attempt from: {request.remote_addr}, error: {error}")
        return error_response(
            'invalid_or_expired_token',
            'Token validation failed. Please provide a valid token.', 401
        )

    @jwt.unauthorized_loader
    def missing_token(error):
        return error_response(
            'authorization_required',
            'Access token is required. Please provide an authorization token.', 401
        )


# ============================================
# Application factory
# ============================================

def create_app(config_class=None):
    """
    建立 Flask app

    所有擴展和 service 都在這裡建立一次, 放進 app.extensions
    """
    app = Flask(__name__)
    app.config.from_object(config_class or get_config())
    Config.validate(app.config)

    setup_logging(app)

    # CORS: 不要用 '*', 從設定讀允許的來源
    CORS(app,
         supports_credentials=True,
         origins=app.config['CORS_ORIGINS'],
         methods=['GET', 'POST', 'PUT', 'PATCH', 'DELETE', 'OPTIONS'],
         allow_headers=['Content-Type', 'Authorization'])

    # 擴展初始化
    db.init_app(app)
    jwt.init_app(app)
    bcrypt.init_app(app)
    limiter.init_app(app)
    mail.init_app(app)

    # Services
    oauth_verifier = OAuthVerifier.from_config(app.config)
    app.extensions['oauth_verifier'] = oauth_verifier
    app.extensions['token_issuer'] = TokenIssuer.from_config(
        app.config,
        user_loader=lambda user_id: db.session.get(User, user_id),
    )
    app.extensions['identity_resolver'] = IdentityResolver(
        db.session,
        bcrypt,
        oauth_verifier,
        require_activation=app.config['REQUIRE_ACTIVATION'],
        invite_expires_days=app.config['INVITE_TOKEN_EXPIRES_DAYS'],
    )
    app.extensions['file_storage'] = LocalFileStorage.from_config(app.config)

    register_jwt_callbacks(app)
    register_error_handlers(app)
    register_blueprints(app)
    register_core_routes(app)

    if app.config.get('AUTO_CREATE_TABLES'):
        with app.app_context():
            db.create_all()
            logger.info('Database tables created')

    return app


def register_blueprints(app):
    from auth import auth_bp
    from users import users_bp
    from projects import projects_bp
    from sprints import sprints_bp
    from tasks import tasks_bp
    from comments import comments_bp
    from timelogs import timelogs_bp
    from attachments import attachments_bp
    from reports import reports_bp

    app.register_blueprint(auth_bp, url_prefix='/auth')
    app.register_blueprint(users_bp, url_prefix='/users')
    app.register_blueprint(projects_bp, url_prefix='/projects')
    app.register_blueprint(sprints_bp, url_prefix='/sprints')
    app.register_blueprint(tasks_bp, url_prefix='/tasks')
    app.register_blueprint(comments_bp, url_prefix='/comments')
    app.register_blueprint(timelogs_bp, url_prefix='/timelogs')
    app.register_blueprint(attachments_bp, url_prefix='/attachments')
    app.register_blueprint(reports_bp, url_prefix='/reports')


def register_core_routes(app):

    # ============================================
    # Request/Response Logging
    # ============================================

    @app.before_request
    def log_request():
        if not app.debug:
            logger.info(f"Request: {request.method} {request.path} from {request.remote_addr}")

    @app.after_request
    def log_response(response):
        if not app.debug:
            logger.info(f"Response: {response.status_code} for {request.method} {request.path}")

        # security headers
        response.headers['X-Content-Type-Options'] = 'nosniff'
        response.headers['X-Frame-Options'] = 'DENY'
        response.headers['X-XSS-Protection'] = '1; mode=block'
        return response

    # ============================================
    # Health Check
    # ============================================

    @app.route('/health', methods=['GET'])
    def health_check():
        """給 load balancer / 監控系統用"""
        try:
            db.session.execute(text('SELECT 1'))
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Health check failed: {e}")
            return jsonify({
                'status': 'unhealthy',
                'database': 'disconnected',
                'error': 'Database connection failed'
            }), 503

        return jsonify({
            'status': 'healthy',
            'database': 'connected',
            'version': app.config['API_VERSION'],
            'timestamp': utcnow().isoformat()
        }), 200

    # ============================================
    # 上傳的檔案
    # ============================================

    @app.route(f"{app.config['UPLOAD_URL_PREFIX'].rstrip('/')}/<path:filename>", methods=['GET'])
    def uploaded_file(filename):
        return send_from_directory(os.path.abspath(app.config['UPLOAD_FOLDER']), filename)

    # ============================================
    # API 首頁
    # ============================================

    @app.route('/')
    @limiter.limit("10 per minute")
    def home():
        return jsonify({
            'message': 'Team Task Tracker API',
            'version': app.config['API_VERSION'],
            'endpoints': {
                'health': {'path': '/health', 'methods': ['GET']},
                'auth': {
                    'register': {'path': '/auth/register', 'methods': ['POST']},
                    'login': {'path': '/auth/login', 'methods': ['POST']},
                    'oauth': {'path': '/auth/oauth', 'methods': ['POST']},
                    'accept_invite': {'path': '/auth/accept-invite', 'methods': ['POST']},
                    'refresh': {'path': '/auth/refresh', 'methods': ['POST']},
                    'logout': {'path': '/auth/logout', 'methods': ['POST']},
                    'me': {'path': '/auth/me', 'methods': ['GET', 'PATCH']},
                    'avatar': {'path': '/auth/me/avatar', 'methods': ['PUT']},
                    'change_password': {'path': '/auth/change-password', 'methods': ['POST']}
                },
                'users': {
                    'list': {'path': '/users', 'methods': ['GET', 'POST']},
                    'invite': {'path': '/users/invite', 'methods': ['POST']},
                    'detail': {'path': '/users/:id', 'methods': ['GET', 'PUT', 'DELETE']},
                    'stats': {'path': '/users/:id/stats', 'methods': ['GET']}
                },
                'projects': {
                    'list': {'path': '/projects', 'methods': ['GET', 'POST']},
                    'detail': {'path': '/projects/:id', 'methods': ['GET', 'PUT', 'DELETE']},
                    'stats': {'path': '/projects/:id/stats', 'methods': ['GET']}
                },
                'sprints': {
                    'list': {'path': '/sprints', 'methods': ['GET', 'POST']},
                    'detail': {'path': '/sprints/:id', 'methods': ['GET', 'PUT', 'DELETE']}
                },
                'tasks': {
                    'list': {'path': '/tasks', 'methods': ['GET', 'POST']},
                    'detail': {'path': '/tasks/:id', 'methods': ['GET', 'PUT', 'DELETE']},
                    'submit': {'path': '/tasks/submit/:id', 'methods': ['PUT']}
                },
                'comments': {'path': '/comments', 'methods': ['POST', 'PUT', 'DELETE']},
                'timelogs': {'path': '/timelogs', 'methods': ['GET', 'POST', 'PUT', 'DELETE']},
                'attachments': {'path': '/attachments', 'methods': ['GET', 'POST', 'DELETE']},
                'reports': {
                    'project_progress': {'path': '/reports/project/:id/progress', 'methods': ['GET']},
                    'time_summary': {'path': '/reports/user/time-summary', 'methods': ['GET']},
                    'dashboard': {'path': '/reports/dashboard', 'methods': ['GET']}
                }
            },
            'rate_limits': {
                'default': app.config['RATELIMIT_DEFAULT'],
                'auth': {
                    'register': '5 per hour',
                    'login': '10 per minute',
                    'oauth': '10 per minute'
                }
            }
        })


# ============================================
# 啟動應用
# ============================================

if __name__ == '__main__':
    # production 不要用 Flask 內建的 server, 用 gunicorn: gunicorn "app:create_app()"
    app = create_app()
    port = int(os.getenv('FLASK_PORT', 8888))

    app.run(
        debug=app.config['DEBUG'],
        port=port,
        host='0.0.0.0'
    )
