"""RQ worker process entrypoint for credit grant retries."""

import logging

from rq import Worker

from services.credit_grant_queue import CREDIT_GRANT_QUEUE_NAME, get_redis_connection


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    redis_conn = get_redis_connection()
    worker = Worker([CREDIT_GRANT_QUEUE_NAME], connection=redis_conn)
    worker.work(with_scheduler=True)


if __name__ == "__main__":
    main()
