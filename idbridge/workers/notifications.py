"""Recovery notice background worker.

Run with ``arq idbridge.workers.notifications.WorkerSettings``.
"""

import logging

from idbridge.config import get_settings
from idbridge.services.notification_service import EmailProvider, build_recovery_notice
from idbridge.workers.settings import RECOVERY_QUEUE, get_redis_settings

logger = logging.getLogger(__name__)


async def send_recovery_notice(ctx: dict, email: str) -> dict:
    """Tell the account owner that their password was reset."""
    settings = get_settings()
    provider = EmailProvider(settings)
    if not provider.is_configured():
        logger.warning("SMTP not configured; skipping recovery notice for %s", email)
        return {"success": False, "error": "SMTP not configured"}

    result = await provider.send(build_recovery_notice(email, settings.app_name))
    if result["success"]:
        logger.info("Recovery notice sent to %s", email)
    else:
        logger.error("Recovery notice to %s failed: %s", email, result.get("error"))
    return result


class WorkerSettings:
    """arq worker settings for recovery notices."""

    functions = [send_recovery_notice]
    redis_settings = get_redis_settings()
    queue_name = RECOVERY_QUEUE

    max_jobs = 10
    job_timeout = 60
    max_tries = 3
