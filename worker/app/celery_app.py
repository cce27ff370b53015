from celery import Celery
from .config import settings

celery_app = Celery(
    "dockback",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["worker.app.tasks"],
)

celery_app.conf.task_routes = {
    "app.tasks.*": {"queue": "dockback"},
}
celery_app.conf.task_acks_late = True
celery_app.conf.worker_prefetch_multiplier = 1
