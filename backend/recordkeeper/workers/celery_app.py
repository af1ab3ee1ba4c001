"""Celery application for background housekeeping."""

import ssl

from celery import Celery

from recordkeeper.core.config import get_settings

settings = get_settings()

broker_url = settings.broker_url
backend_url = settings.result_backend_url

# Upstash only accepts TLS; redis:// URLs pointing at it are upgraded.
if ".upstash.io" in broker_url and broker_url.startswith("redis://"):
    broker_url = broker_url.replace("redis://", "rediss://", 1)
if ".upstash.io" in backend_url and backend_url.startswith("redis://"):
    backend_url = backend_url.replace("redis://", "rediss://", 1)
is_ssl = broker_url.startswith("rediss://") or backend_url.startswith("rediss://")


def _with_ssl_param(url: str) -> str:
    # The Redis result backend reads ssl_cert_reqs from the URL during init.
    if not url.startswith("rediss://") or "ssl_cert_reqs" in url:
        return url
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}ssl_cert_reqs=none"


celery_app = Celery(
    "recordkeeper",
    broker=_with_ssl_param(broker_url),
    backend=_with_ssl_param(backend_url),
)

celery_config = {
    "task_serializer": "json",
    "accept_content": ["json"],
    "result_serializer": "json",
    "timezone": "UTC",
    "enable_utc": True,
    "task_acks_late": True,  # Acknowledge after task completion
    "task_reject_on_worker_lost": True,  # Re-queue if worker dies
    "worker_prefetch_multiplier": 1,
    "task_time_limit": 600,
    "task_soft_time_limit": 540,
    "result_expires": 3600,
    "broker_connection_retry_on_startup": True,
    "worker_hijack_root_logger": False,
    "task_default_queue": "housekeeping",
    "task_routes": {
        "recordkeeper.workers.tasks.cleanup_expired_sessions": {"queue": "housekeeping"},
    },
    "beat_schedule": {
        "cleanup-expired-import-sessions": {
            "task": "recordkeeper.workers.tasks.cleanup_expired_sessions",
            "schedule": 3600.0,
        },
    },
}

if is_ssl:
    ssl_dict = {"ssl_cert_reqs": ssl.CERT_NONE}
    celery_config["broker_use_ssl"] = ssl_dict
    celery_config["redis_backend_use_ssl"] = ssl_dict

celery_app.conf.update(celery_config)

# Tasks use @celery_app.task, importing registers them.
from recordkeeper.workers.tasks import housekeeping  # noqa: E402,F401
