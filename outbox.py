"""
Email outbox

Requests never send email themselves. They enqueue a message in the same
transaction as the write that triggered it, and this worker posts pending
messages to the HTTP email relay, retrying with back-off.

Run with: python outbox.py
"""
import logging
import os
import time
from datetime import datetime, timedelta, timezone
from typing import Optional

import requests

from database import create_document, db
from logging_config import setup_logging
from schemas import OutboxMessage

logger = logging.getLogger(__name__)

EMAIL_API_URL = os.getenv("EMAIL_API_URL")
EMAIL_API_KEY = os.getenv("EMAIL_API_KEY", "")
EMAIL_FROM = os.getenv("EMAIL_FROM", "no-reply@localhost")
MAX_ATTEMPTS = int(os.getenv("OUTBOX_MAX_ATTEMPTS", "5"))
POLL_SECONDS = int(os.getenv("OUTBOX_POLL_SECONDS", "30"))
REQUEST_TIMEOUT = 10


def _now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def enqueue_email(to: str, subject: str, html: str, session=None) -> str:
    message = OutboxMessage(to=to, subject=subject, html=html, next_attempt_at=_now())
    return create_document("outbox", message, session=session)


def backoff(attempts: int) -> timedelta:
    return timedelta(minutes=2 ** max(attempts - 1, 0))


def send_email(message: dict) -> None:
    if not EMAIL_API_URL:
        raise RuntimeError("EMAIL_API_URL is not configured")
    r = requests.post(
        EMAIL_API_URL,
        json={"from": EMAIL_FROM, "to": message["to"], "subject": message["subject"], "html": message["html"]},
        headers={"Authorization": f"Bearer {EMAIL_API_KEY}"},
        timeout=REQUEST_TIMEOUT,
    )
    r.raise_for_status()


def deliver_pending(limit: int = 50, now: Optional[datetime] = None) -> dict:
    """Attempt every due message once. Returns counts per outcome."""
    now = now or _now()
    counts = {"sent": 0, "retry": 0, "failed": 0}
    due = db["outbox"].find({"status": "pending", "next_attempt_at": {"$lte": now}}).sort("next_attempt_at", 1).limit(limit)
    for message in list(due):
        try:
            send_email(message)
        except (requests.RequestException, RuntimeError) as e:
            attempts = message.get("attempts", 0) + 1
            status = "failed" if attempts >= MAX_ATTEMPTS else "pending"
            db["outbox"].update_one(
                {"_id": message["_id"]},
                {"$set": {
                    "attempts": attempts,
                    "status": status,
                    "last_error": str(e)[:500],
                    "next_attempt_at": now + backoff(attempts),
                    "updated_at": now,
                }},
            )
            counts["failed" if status == "failed" else "retry"] += 1
            logger.warning("Email to %s failed (attempt %s/%s): %s", message["to"], attempts, MAX_ATTEMPTS, e)
            continue
        db["outbox"].update_one(
            {"_id": message["_id"]},
            {"$set": {"status": "sent", "attempts": message.get("attempts", 0) + 1, "updated_at": now}},
        )
        counts["sent"] += 1
        logger.info("Email sent to %s: %s", message["to"], message["subject"])
    return counts


def run_worker() -> None:
    logger.info("Outbox worker started, polling every %ss", POLL_SECONDS)
    while True:
        counts = deliver_pending()
        if any(counts.values()):
            logger.info("Outbox pass: %s", counts)
        time.sleep(POLL_SECONDS)


if __name__ == "__main__":
    setup_logging()
    run_worker()
