import logging
from rq import Worker
from examprep.core.config import settings
from examprep.jobs.queue import redis

if __name__ == "__main__":
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    w = Worker([settings.RQ_QUEUE], connection=redis)
    w.work(with_scheduler=True)
