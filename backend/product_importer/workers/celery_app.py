"""Celery application for the import worker."""

import ssl

from celery import Celery
from celery.schedules import crontab
from celery.signals import setup_logging

from product_importer.core.config import get_settings
from product_importer.core.logging import configure_logging

IMPORT_QUEUE = "imports"


def _broker_url(url: str) -> tuple[str, bool]:
    """Return the URL Celery should use and whether it needs TLS.

    Upstash hosts are forced onto rediss://. The redis result backend reads
    ssl_cert_reqs from the URL itself while it initializes, so it goes there too.
    """
    if ".upstash.io" in url and url.startswith("redis://"):
        url = "rediss://" + url.removeprefix("redis://")
    if not url.startswith("rediss://"):
        return url, False
    if "ssl_cert_reqs" not in url:
        url += ("&" if "?" in url else "?") + "ssl_cert_reqs=none"
    return url, True


settings = get_settings()
broker_url, broker_tls = _broker_url(settings.celery_broker_url or settings.redis_url)
backend_url, backend_tls = _broker_url(settings.celery_result_url or settings.redis_url)

celery_app = Celery(
    "product_importer",
    broker=broker_url,
    backend=backend_url,
    include=[
        "product_importer.workers.tasks.import_products",
        "product_importer.workers.tasks.artifact_retention",
    ],
)

celery_config = {
    "task_serializer": "json",
    "accept_content": ["json"],
    "result_serializer": "json",
    "timezone": "UTC",
    "enable_utc": True,
    "task_routes": {
        "product_importer.workers.tasks.run_import_job": {"queue": IMPORT_QUEUE},
        "product_importer.workers.tasks.purge_expired_artifacts": {"queue": IMPORT_QUEUE},
    },
    "task_default_queue": IMPORT_QUEUE,
    "beat_schedule": {
        "purge-expired-artifacts": {
            "task": "product_importer.workers.tasks.purge_expired_artifacts",
            "schedule": crontab(hour=2, minute=0),
        },
    },
    # A redelivered job is harmless: the runner's claim lets only one worker process it.
    "task_acks_late": True,
    "task_reject_on_worker_lost": True,
    "worker_prefetch_multiplier": 1,
    "result_expires": 3600,
    "broker_connection_retry_on_startup": True,
    "worker_hijack_root_logger": False,
    "result_backend_always_retry": True,
    "result_backend_max_retries": 3,
}

if broker_tls:
    celery_config["broker_use_ssl"] = {"ssl_cert_reqs": ssl.CERT_NONE}
    celery_config["broker_transport_options"] = {"ssl_cert_reqs": ssl.CERT_NONE}
if backend_tls:
    celery_config["redis_backend_use_ssl"] = {"ssl_cert_reqs": ssl.CERT_NONE}
    celery_config["result_backend_transport_options"] = {"ssl_cert_reqs": ssl.CERT_NONE}

celery_app.conf.update(celery_config)


@setup_logging.connect
def _configure_worker_logging(**kwargs) -> None:
    configure_logging()
