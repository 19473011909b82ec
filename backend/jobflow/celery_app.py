"""
Celery worker draining the notification outbox with SELECT FOR UPDATE SKIP LOCKED.
"""
from celery import Celery
from sqlalchemy import text
from datetime import datetime, timedelta, timezone
import requests
import logging
from .config import settings
from .database import SessionLocal
from .models import NotificationOutbox

logger = logging.getLogger(__name__)

celery_app = Celery(
    "jobflow",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND
)

celery_app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def send_webhook_notification(notification: NotificationOutbox) -> tuple[bool, str | None]:
    """POST one outbox row to the configured webhook."""
    if not settings.NOTIFICATION_WEBHOOK_URL:
        return False, "NOT_CONFIGURED"

    payload = {
        "id": str(notification.id),
        "type": notification.type,
        "tenant_id": str(notification.tenant_id),
        "job_id": str(notification.job_id) if notification.job_id else None,
        "task_id": str(notification.task_id) if notification.task_id else None,
        "task_title": notification.task_title,
        "recipient_user_id": str(notification.recipient_user_id),
        "message": notification.message,
        "metadata": notification.meta_data or {},
    }
    try:
        response = requests.post(
            settings.NOTIFICATION_WEBHOOK_URL,
            json=payload,
            headers={"Idempotency-Key": notification.idempotency_key},
            timeout=settings.NOTIFICATION_TIMEOUT_SECONDS,
        )
    except requests.RequestException as e:
        return False, f"EXCEPTION: {e}"

    if 200 <= response.status_code < 300:
        return True, None
    if response.status_code == 429:
        retry_after = response.headers.get("Retry-After", "60")
        return False, f"RATE_LIMIT:{retry_after if retry_after.isdigit() else 60}"
    return False, f"HTTP_{response.status_code}: {response.text[:200]}"


def apply_delivery_result(notification: NotificationOutbox, success: bool, error: str | None, *, now: datetime) -> None:
    """Update an outbox row after a delivery attempt."""
    if success:
        notification.status = 'sent'
        notification.sent_at = now
        notification.last_error = None
        return

    notification.attempts = (notification.attempts or 0) + 1
    notification.last_error = error

    if error == "NOT_CONFIGURED":
        notification.status = 'failed'
        notification.failed_at = now
    elif error and error.startswith("RATE_LIMIT:"):
        retry_after = int(error.split(":")[1])
        notification.next_retry_at = now + timedelta(seconds=retry_after)
        logger.warning("Rate limited for %ss: %s", retry_after, notification.id)
    elif notification.attempts >= settings.NOTIFICATION_MAX_ATTEMPTS:
        notification.status = 'failed'
        notification.failed_at = now
        logger.error("Failed after %d attempts: %s, error: %s", notification.attempts, notification.id, error)
    else:
        backoff_seconds = 2 ** notification.attempts * 60  # 2min, 4min, 8min
        notification.next_retry_at = now + timedelta(seconds=backoff_seconds)
        logger.warning(
            "Retry %d/%d in %ss: %s",
            notification.attempts,
            settings.NOTIFICATION_MAX_ATTEMPTS,
            backoff_seconds,
            notification.id,
        )


@celery_app.task(name="process_notification_outbox")
def process_notification_outbox(batch_size: int = 100):
    """
    Process pending notifications using SELECT FOR UPDATE SKIP LOCKED.

    Concurrent workers never process the same row.
    """
    db = SessionLocal()
    processed_count = 0
    notification_ids: list = []

    try:
        query = text("""
            SELECT id
            FROM notification_outbox
            WHERE status = 'pending'
              AND (next_retry_at IS NULL OR next_retry_at <= NOW())
            ORDER BY created_at
            LIMIT :batch_size
            FOR UPDATE SKIP LOCKED
        """)

        result = db.execute(query, {"batch_size": batch_size})
        notification_ids = [row[0] for row in result.fetchall()]
        logger.info("Locked %d notifications for processing", len(notification_ids))

        for notif_id in notification_ids:
            notification = db.query(NotificationOutbox).filter(
                NotificationOutbox.id == notif_id
            ).first()
            if notification is None:
                continue

            success, error = send_webhook_notification(notification)
            apply_delivery_result(notification, success, error, now=_utcnow())
            if success:
                processed_count += 1

        db.commit()
        logger.info("Processed %d/%d notifications", processed_count, len(notification_ids))

    except Exception:
        db.rollback()
        logger.error("Error processing outbox", exc_info=True)
        raise

    finally:
        db.close()

    return {"processed": processed_count, "total_locked": len(notification_ids)}


def enqueue_outbox_dispatch(_result=None) -> None:
    """Kick the outbox worker after a commit. Never fails the caller."""
    try:
        process_notification_outbox.delay()
    except Exception:
        logger.warning("Could not enqueue outbox dispatch; beat schedule will pick it up", exc_info=True)


# Schedule periodic processing
celery_app.conf.beat_schedule = {
    'process-outbox-every-30s': {
        'task': 'process_notification_outbox',
        'schedule': 30.0,
    },
}
