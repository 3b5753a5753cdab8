"""Runs queued pipeline executions when PIPELINE_DISPATCH_MODE=rq."""

import logging

from rq import Worker

from config import settings
from services.pipeline_queue import PIPELINE_QUEUE_NAME, get_redis_connection

logger = logging.getLogger("worker")


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    if settings.PIPELINE_DISPATCH_MODE != "rq":
        logger.warning(
            "PIPELINE_DISPATCH_MODE is %r; the API runs executions inline and will not enqueue here",
            settings.PIPELINE_DISPATCH_MODE,
        )
    worker = Worker([PIPELINE_QUEUE_NAME], connection=get_redis_connection())
    logger.info("Waiting for pipeline jobs on %s", PIPELINE_QUEUE_NAME)
    # No scheduler: pipeline jobs are never deferred or retried by RQ.
    worker.work()


if __name__ == "__main__":
    main()
