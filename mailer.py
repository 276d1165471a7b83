"""
邀請信 (Flask-Mail)

寄信失敗不影響邀請流程, 只記 log 並回傳 False
"""
from smtplib import SMTPException
import logging

from flask import current_app
from flask_mail import Message
from markupsafe import escape

from extensions import mail

logger = logging.getLogger(__name__)


def invite_url(token):
    frontend = current_app.config['FRONTEND_URL'].rstrip('/')
    return f'{frontend}/accept-invite?token={token}'


def _invite_bodies(name, url, inviter_name, app_name, expires_days):
    text = (
        f"Hi {name},\n\n"
        f"{inviter_name} has invited you to join the team on {app_name}.\n\n"
        f"Click the link below to accept the invitation and set up your account:\n"
        f"{url}\n\n"
        f"This invitation link will expire in {expires_days} days.\n"
    )
    # 名字是使用者輸入的, 放進 HTML 前要 escape
    html = (
        f"<p>Hi {escape(name)},</p>"
        f"<p><strong>{escape(inviter_name)}</strong> has invited you to join the team on {escape(app_name)}.</p>"
        f"<p>Click the link below to accept the invitation and set up your account:</p>"
        f'<p><a href="{url}">Accept Invitation</a></p>'
        f'<p style="font-size: 12px; color: #666;">Or copy and paste this link into your browser:<br>{url}</p>'
        f'<p style="font-size: 12px; color: #666;">This invitation link will expire in {expires_days} days.</p>'
    )
    return text, html


def send_invite_email(email, name, token, inviter_name):
    """
    寄出邀請信

    Returns:
        bool: 有沒有寄出去
    """
    settings = current_app.config
    if not settings.get('MAIL_ENABLED'):
        logger.warning(f"Email service disabled; invite for {email} was not sent")
        return False

    app_name = settings.get('MAIL_FROM_NAME', 'Task Tracker')
    url = invite_url(token)
    text, html = _invite_bodies(
        name, url, inviter_name, app_name, settings.get('INVITE_TOKEN_EXPIRES_DAYS', 7)
    )

    message = Message(
        subject=f"You've been invited to join {app_name}",
        recipients=[email],
        sender=(app_name, settings['MAIL_DEFAULT_SENDER']),
        body=text,
        html=html,
    )

    try:
        mail.send(message)
    except (SMTPException, OSError) as e:
        logger.warning(f"Failed to send invite email to {email}: {e}")
        return False

    logger.info(f"Invite email sent to {email}")
    return True
