import logging
import os
import sys

import requests
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger


def _env_number(name: str, default, cast, minimum=None):
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = cast(raw)
    except (TypeError, ValueError):
        logging.getLogger("scheduler").warning("Invalid %s=%r, fallback to %s", name, raw, default)
        return default
    if minimum is not None and value < minimum:
        logging.getLogger("scheduler").warning("Out-of-range %s=%r, fallback to %s", name, raw, default)
        return default
    return value


API_BASE_URL = os.getenv("API_BASE_URL", "http://api:4321")
QUEUE_CLEANUP_CRON = os.getenv("QUEUE_CLEANUP_CRON", "0 3 * * *")
QUEUE_RETRY_CRON = os.getenv("QUEUE_RETRY_CRON", "").strip()
QUEUE_RETENTION_DAYS = _env_number("QUEUE_RETENTION_DAYS", 7, int, minimum=0)
SCHEDULER_TIMEOUT = _env_number("SCHEDULER_TIMEOUT", 30.0, float, minimum=0.1)
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
ADMIN_TOKEN = os.getenv("ADMIN_TOKEN", "").strip()

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger("scheduler")


def _post(path: str, params: dict | None = None) -> bool:
    url = f"{API_BASE_URL.rstrip('/')}/{path.lstrip('/')}"
    headers = {"X-Admin-Token": ADMIN_TOKEN} if ADMIN_TOKEN else None
    try:
        logger.info("POST %s %s", url, params or "")
        response = requests.post(url, params=params, timeout=SCHEDULER_TIMEOUT, headers=headers)
    except requests.RequestException as exc:
        logger.error("Request to %s failed: %s", url, exc)
        return False
    logger.info("Response %s: %s", response.status_code, response.text[:500])
    return response.ok


def trigger_cleanup() -> None:
    _post("/queue/clear-completed", {"older_than_days": QUEUE_RETENTION_DAYS})


def trigger_retry_failed() -> None:
    _post("/queue/retry-all-failed")


def _cron(name: str, expression: str) -> CronTrigger:
    try:
        return CronTrigger.from_crontab(expression)
    except ValueError as exc:
        logger.error("Invalid %s '%s': %s", name, expression, exc)
        sys.exit(1)


def main() -> None:
    scheduler = BlockingScheduler(timezone="UTC")
    scheduler.add_job(trigger_cleanup, _cron("QUEUE_CLEANUP_CRON", QUEUE_CLEANUP_CRON))
    logger.info(
        "Queue cleanup scheduled with cron: %s (retention %s days)",
        QUEUE_CLEANUP_CRON,
        QUEUE_RETENTION_DAYS,
    )
    if QUEUE_RETRY_CRON:
        scheduler.add_job(trigger_retry_failed, _cron("QUEUE_RETRY_CRON", QUEUE_RETRY_CRON))
        logger.info("Failed-task retry scheduled with cron: %s", QUEUE_RETRY_CRON)

    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Scheduler stopped")


if __name__ == "__main__":
    main()
