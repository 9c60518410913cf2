"""Fire-and-forget user notifications, emails and operator alerts.

Everything here runs after the ledger unit of work has committed; a failure
is logged and never reaches the money path.
"""
from flask import current_app
from flask_mail import Message
from sqlalchemy.exc import SQLAlchemyError

from extensions import db, mail
from logger import app_logger
from models import Notification, NotificationType, User

SEVERITIES = {member.value: member for member in NotificationType}
# "error" is what callers coming from the withdrawal flow tend to say
SEVERITIES["error"] = NotificationType.DANGER


class Notifier:

    @staticmethod
    def notify(user_id: int, title: str, message: str, severity: str = "info"):
        try:
            notification = Notification(
                user_id=user_id,
                title=title,
                message=message,
                type=SEVERITIES.get(severity, NotificationType.INFO),
            )
            db.session.add(notification)
            db.session.commit()
            return notification
        except SQLAlchemyError as e:
            db.session.rollback()
            app_logger.error(f"Notification '{title}' for user {user_id} failed: {e}")
            return None

    @staticmethod
    def email_user(email: str, subject: str, html: str) -> bool:
        if not email:
            app_logger.warning(f"Email '{subject}' skipped: no address")
            return False
        try:
            mail.send(Message(subject=subject, recipients=[email], html=html))
            return True
        except Exception as e:
            # SMTP, socket and config errors all surface from here
            app_logger.error(f"Email '{subject}' to {email} failed: {e}")
            return False

    @staticmethod
    def notify_and_email(user_id: int, title: str, message: str, severity: str = "info"):
        Notifier.notify(user_id, title, message, severity)
        user = db.session.get(User, user_id)
        if user is not None:
            Notifier.email_user(user.email, title, f"<p>{message}</p>")

    @staticmethod
    def alert_operators(subject: str, message: str, critical: bool = False):
        log = app_logger.critical if critical else app_logger.warning
        log(f"[OPERATOR ALERT] {subject}: {message}")
        admin_email = current_app.config.get("ADMIN_EMAIL")
        if admin_email:
            Notifier.email_user(admin_email, f"[Ledger] {subject}", f"<p>{message}</p>")

    # ===== Inbox =====

    @staticmethod
    def list_for_user(user_id: int, unread_only: bool = False):
        query = Notification.query.filter_by(user_id=user_id)
        if unread_only:
            query = query.filter_by(is_read=False)
        return query.order_by(Notification.created_at.desc(), Notification.id.desc()).all()

    @staticmethod
    def mark_read(notification_id: int, user_id: int) -> bool:
        notification = Notification.query.filter_by(id=notification_id, user_id=user_id).first()
        if notification is None:
            return False
        notification.is_read = True
        db.session.commit()
        return True
