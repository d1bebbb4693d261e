from __future__ import annotations

from redis import Redis
from rq import Queue
from rq.job import Job

from app.config.settings import settings
from app.jobs.price_refresh import run_cache_sweep, run_price_refresh


def get_redis_connection() -> Redis:
    return Redis.from_url(settings.redis_url)


def get_queue(name: str | None = None) -> Queue:
    queue_name = name or settings.price_queue_name
    return Queue(name=queue_name, connection=get_redis_connection())


def enqueue_price_refresh(user_id: str | None = None) -> Job:
    queue = get_queue()
    return queue.enqueue(run_price_refresh, user_id=user_id)


def enqueue_cache_sweep() -> Job:
    queue = get_queue()
    return queue.enqueue(run_cache_sweep)
