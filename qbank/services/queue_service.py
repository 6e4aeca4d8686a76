import redis
from rq import Queue
from rq.exceptions import NoSuchJobError
from rq.job import Job
import logging
from typing import Optional, Dict, Any

from .. import config

logger = logging.getLogger(__name__)


def create_redis_connection() -> redis.Redis:
    return redis.Redis(
        host=config.REDIS_HOST,
        port=config.REDIS_PORT,
        db=config.REDIS_DB,
        password=config.REDIS_PASSWORD,
    )


class QueueService:
    def __init__(self, redis_conn: Optional[redis.Redis] = None):
        try:
            self.redis_conn = redis_conn or create_redis_connection()

            # Test connection
            self.redis_conn.ping()
            logger.info(f"Connected to Redis at {config.REDIS_HOST}:{config.REDIS_PORT}")

            self.extraction_queue = Queue(config.EXTRACTION_QUEUE, connection=self.redis_conn)

        except redis.ConnectionError as e:
            logger.error(f"Failed to connect to Redis: {e}")
            raise

    def enqueue_extraction(self, session_id: int) -> str:
        """
        Enqueue a detached extraction run for an upload session

        Returns:
            str: Job ID
        """
        from .extraction_worker import process_extraction_session

        try:
            job = self.extraction_queue.enqueue(
                process_extraction_session,
                session_id,
                job_timeout='30m'
            )
            logger.info(f"Enqueued extraction job {job.id} for session {session_id}")
            return job.id

        except Exception as e:
            logger.error(f"Failed to enqueue extraction job for session {session_id}: {e}")
            raise

    def get_job_status(self, job_id: str) -> Optional[Dict[str, Any]]:
        try:
            job = Job.fetch(job_id, connection=self.redis_conn)
        except NoSuchJobError:
            logger.warning(f"Job {job_id} not found")
            return None

        status = job.get_status()
        status_info = {
            "job_id": job.id,
            "status": getattr(status, "value", status),
            "created_at": job.created_at.isoformat() if job.created_at else None,
            "started_at": job.started_at.isoformat() if job.started_at else None,
            "ended_at": job.ended_at.isoformat() if job.ended_at else None,
            "result": job.result,
        }
        if job.exc_info:
            status_info["error"] = job.exc_info
        return status_info

    def get_queue_info(self) -> Dict[str, Any]:
        return {
            "name": self.extraction_queue.name,
            "pending_jobs": len(self.extraction_queue),
            "failed_jobs": len(self.extraction_queue.failed_job_registry),
            "started_jobs": len(self.extraction_queue.started_job_registry),
            "finished_jobs": len(self.extraction_queue.finished_job_registry),
        }
