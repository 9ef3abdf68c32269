#!/usr/bin/env python3
"""
Redis Queue Worker - Runs ingestion passes and item reprocessing jobs from the Redis queue
"""

import json
import logging
import signal
import threading
import time

import redis

from radar.config import settings, config
from radar.database import init_db, session_scope
from radar.pipeline.ingestion_pipeline import IngestionPipeline
from radar.services.queue_service import QueueService

logger = logging.getLogger(__name__)

stop_event = threading.Event()


def _handle_signal(signum, frame):
    logger.info(f"Received signal {signum}, finishing the current item and stopping")
    stop_event.set()


def process_job(job: dict, queue_service: QueueService, redis_client=None) -> None:
    """Execute one queued job with its own database session"""
    with session_scope() as db:
        pipeline = IngestionPipeline(db)

        if "item_id" in job:
            result = pipeline.reprocess_item(int(job["item_id"]))
            logger.info(f"Reprocessed item {job['item_id']}: {result.to_dict() if result else 'failed'}")
            return

        source_type = job["source_type"]
        lock = None
        if redis_client is not None:
            # One pass per source type at a time across all workers
            lock = redis_client.lock(f"ingest_lock:{source_type}", timeout=config.job_timeout, blocking_timeout=0)
            if not lock.acquire(blocking=False):
                logger.info(f"A {source_type} pass is already running, skipping job")
                return

        try:
            results = pipeline.run_source_type(source_type, stop_event)
            queue_service.set_run_status(source_type, [result.to_dict() for result in results])
            logger.info(f"Completed {source_type} pass over {len(results)} sources")
        except Exception as e:
            logger.error(f"{source_type} pass failed: {str(e)}")
            queue_service.set_run_status(source_type, [], error=str(e))
        finally:
            if lock is not None and lock.owned():
                lock.release()


def start_scheduler(queue_service: QueueService) -> threading.Thread:
    """Queue a pass for each source type on its own interval"""
    intervals = {
        source_type: config.schedule_interval(source_type)
        for source_type in config.source_types
        if config.schedule_interval(source_type) > 0
    }

    def run():
        next_run = {source_type: 0.0 for source_type in intervals}
        while not stop_event.is_set():
            now = time.monotonic()
            for source_type, interval in intervals.items():
                if now >= next_run[source_type]:
                    queue_service.enqueue_ingest(source_type)
                    next_run[source_type] = now + interval
            stop_event.wait(1)

    thread = threading.Thread(target=run, name="ingest-scheduler", daemon=True)
    thread.start()
    logger.info(f"Scheduler started: {intervals}")
    return thread


def start_worker(with_scheduler: bool = True):
    """Direct Redis queue worker"""
    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    init_db()
    redis_client = redis.from_url(settings.redis_url)
    queue_service = QueueService(redis_client)
    logger.info(f"Starting Redis queue worker on '{config.redis_queue_name}'...")

    if with_scheduler:
        start_scheduler(queue_service)

    while not stop_event.is_set():
        try:
            job_data = redis_client.brpop(config.redis_queue_name, timeout=config.redis_queue_timeout)

            if job_data:
                _, job_json = job_data
                job = json.loads(job_json)
                logger.info(f"Processing job {job}")
                process_job(job, queue_service, redis_client)

        except (json.JSONDecodeError, KeyError, ValueError) as e:
            logger.error(f"Dropping malformed job: {str(e)}")
        except redis.RedisError as e:
            logger.error(f"Worker error: {str(e)}")
            time.sleep(config.redis_sleep_interval)

    logger.info("Worker stopped")


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    start_worker()
