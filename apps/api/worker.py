"""RQ worker process entrypoint for ledger jobs."""

from rq import Worker

from services.ledger_queue import OVERAGE_QUEUE_NAME, SUBSCRIPTION_QUEUE_NAME, get_redis_connection


def main():
    redis_conn = get_redis_connection()
    worker = Worker([SUBSCRIPTION_QUEUE_NAME, OVERAGE_QUEUE_NAME], connection=redis_conn)
    worker.work(with_scheduler=True)


if __name__ == "__main__":
    main()
