from __future__ import annotations

import os

from celery import Celery

CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", CELERY_BROKER_URL)
CELERY_TASK_ALWAYS_EAGER = os.getenv("CELERY_TASK_ALWAYS_EAGER", "").lower() in {"1", "true", "yes"}
CARDS_QUEUE = os.getenv("CARDPIPELINE_QUEUE", "cards")

celery_app = Celery(
    "cardpipeline",
    broker=CELERY_BROKER_URL,
    backend=CELERY_RESULT_BACKEND,
    include=["cardpipeline.celery_tasks.cards"],
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    task_track_started=True,
    task_default_queue=CARDS_QUEUE,
    task_routes={"cardpipeline.generate-cards": {"queue": CARDS_QUEUE}},
    # one book per worker process at a time; a book can take the better part of an hour
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_time_limit=int(os.getenv("CELERY_TASK_TIME_LIMIT", "7200")),
    result_expires=int(os.getenv("CELERY_RESULT_EXPIRES", 24 * 3600)),
    task_always_eager=CELERY_TASK_ALWAYS_EAGER,
    task_eager_propagates=True,
)
