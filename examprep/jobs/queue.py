from rq import Queue
from redis import Redis
from examprep.core.config import settings

redis = Redis.from_url(settings.REDIS_URL)
queue = Queue(settings.RQ_QUEUE, connection=redis)


def get_queue() -> Queue:
    return queue
