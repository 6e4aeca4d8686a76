#!/usr/bin/env python3
"""
Redis Queue Worker for detached extraction sessions

Run this script in a separate process to extract sessions that were started
with ``POST /sessions?detached=true``.

Usage:
    python worker.py [--burst] [--name WORKER_NAME]

Options:
    --burst: Run in burst mode (exit when queue is empty)
    --name: Set a custom worker name
"""

import argparse
import logging
import os
import sys

import redis
from rq import Queue, Worker

from qbank import config
from qbank.services.queue_service import create_redis_connection

# Configure logging
logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

logger = logging.getLogger(__name__)


def main():
    parser = argparse.ArgumentParser(description="Question extraction worker")
    parser.add_argument(
        "--burst",
        action="store_true",
        help="Run in burst mode (exit when queue is empty)"
    )
    parser.add_argument(
        "--name",
        type=str,
        default=None,
        help="Set a custom worker name"
    )
    args = parser.parse_args()

    try:
        redis_conn = create_redis_connection()
        redis_conn.ping()
        logger.info("Connected to Redis successfully")

        worker_name = args.name or f"worker-{os.getpid()}"
        worker = Worker([Queue(config.EXTRACTION_QUEUE, connection=redis_conn)], connection=redis_conn, name=worker_name)

        logger.info(f"Starting worker '{worker_name}' for queue: {config.EXTRACTION_QUEUE}")
        if args.burst:
            logger.info("Running in burst mode")

        worker.work(burst=args.burst)

    except redis.ConnectionError as e:
        logger.error(f"Failed to connect to Redis: {e}")
        logger.error("Make sure Redis is running and check your Redis configuration")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Worker interrupted by user")
        sys.exit(0)


if __name__ == "__main__":
    main()
