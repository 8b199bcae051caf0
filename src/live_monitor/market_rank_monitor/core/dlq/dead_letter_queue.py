"""
Dead-letter queue for ingestion units that could not be written.

Jobs live in a `dlq:job:{id}` hash each, with the ids kept in insertion order
in the `dlq:jobs` list. Requeueing hands the job back to the ingestion worker
through an injected handler.
"""

import logging
import time
import uuid
from collections import Counter
from typing import Any, Callable, Dict, List, Optional, Union

from live_monitor.market_rank_monitor.core.config import Settings
from live_monitor.market_rank_monitor.core.data.schema import DLQJob, decode_dlq_job
from live_monitor.market_rank_monitor.core.exceptions import (
    ConfigurationError,
    DLQJobNotFoundError,
)
from live_monitor.market_rank_monitor.core.storage import keys
from live_monitor.market_rank_monitor.core.storage.redis_client import RedisStore

logger = logging.getLogger(__name__)

RetryHandler = Callable[[DLQJob], Any]

# a job removed or purged while its retry ran stays gone
UPDATE_IF_PRESENT_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
    redis.call('HSET', KEYS[1], unpack(ARGV))
    return 1
end
return 0
"""


def _now_ms() -> int:
    return int(time.time() * 1000)


class DeadLetterQueue:
    def __init__(self, store: RedisStore, settings: Settings = None, handler: Optional[RetryHandler] = None):
        self.store = store
        self.settings = settings or Settings()
        self.handler = handler
        self._update_if_present = store.client.register_script(UPDATE_IF_PRESENT_SCRIPT)

    # -------------------------------- write ----------------------------------
    def enqueue(
        self, type: str, payload: Dict[str, Any], error: Union[Exception, str], priority: str = "normal"
    ) -> DLQJob:
        job = DLQJob(
            id=uuid.uuid4().hex,
            type=type,
            payload=payload,
            attempt_count=1,
            last_error=str(error),
            created_at=_now_ms(),
            priority=priority,
        )

        with self.store.guard(f"DLQ enqueue {type}"):
            pipe = self.store.pipeline(transaction=True)
            pipe.hset(keys.dlq_job(job.id), mapping=job.to_hash())
            pipe.rpush(keys.DLQ_JOB_IDS, job.id)
            pipe.execute()

        logger.warning(f"DLQ <- {job.type} {job.symbols()} ({job.priority}): {job.last_error}")
        self._enforce_max_size()
        return job

    def _enforce_max_size(self) -> None:
        client = self.store.client
        with self.store.guard("DLQ trim"):
            overflow = client.llen(keys.DLQ_JOB_IDS) - self.settings.dlq_max_size
            if overflow <= 0:
                return
            oldest = client.lrange(keys.DLQ_JOB_IDS, 0, overflow - 1)
            pipe = self.store.pipeline(transaction=True)
            pipe.ltrim(keys.DLQ_JOB_IDS, overflow, -1)
            for job_id in oldest:
                pipe.delete(keys.dlq_job(job_id))
            pipe.execute()
        logger.warning(f"DLQ over {self.settings.dlq_max_size} jobs, dropped {len(oldest)} oldest")

    def remove(self, job_id: str) -> None:
        with self.store.guard(f"DLQ remove {job_id}"):
            pipe = self.store.pipeline(transaction=True)
            pipe.lrem(keys.DLQ_JOB_IDS, 0, job_id)
            pipe.delete(keys.dlq_job(job_id))
            pipe.execute()

    # -------------------------------- read -----------------------------------
    def _job_ids(self) -> List[str]:
        with self.store.guard("DLQ ids"):
            return self.store.client.lrange(keys.DLQ_JOB_IDS, 0, -1)

    def _all_jobs(self) -> List[DLQJob]:
        ids = self._job_ids()
        replies = self.store.hgetall_many(keys.dlq_job(i) for i in ids)
        return [job for job in map(decode_dlq_job, replies) if job is not None]

    def list(self, type_filter: str = None, limit: int = 100) -> List[DLQJob]:
        """Jobs oldest first."""
        jobs = self._all_jobs()
        if type_filter:
            jobs = [j for j in jobs if j.type == type_filter]
        return jobs[:limit]

    def get(self, job_id: str) -> Optional[DLQJob]:
        return decode_dlq_job(self.store.hgetall(keys.dlq_job(job_id)))

    def stats(self) -> Dict[str, Any]:
        jobs = self._all_jobs()
        return {"total": len(jobs), "by_type": dict(Counter(j.type for j in jobs))}

    def should_retry(self, job: DLQJob, now: int = None) -> bool:
        now = now if now is not None else _now_ms()
        max_age_ms = self.settings.dlq_max_age_hours * 3600 * 1000
        return job.attempt_count < self.settings.dlq_max_attempts and now - job.created_at < max_age_ms

    # ------------------------------- requeue ---------------------------------
    def requeue_one(self, job_id: str) -> bool:
        """
        Re-run one job through the handler.

        Success removes the job; failure bumps attempt_count and keeps it.
        """
        if self.handler is None:
            raise ConfigurationError("DLQ has no retry handler")

        job = self.get(job_id)
        if job is None:
            raise DLQJobNotFoundError(job_id)

        try:
            self.handler(job)
        except Exception as e:
            attempts = job.attempt_count + 1
            with self.store.guard(f"DLQ update {job_id}"):
                updated = self._update_if_present(
                    keys=[keys.dlq_job(job_id)],
                    args=["attempt_count", str(attempts), "last_error", str(e), "last_attempt_at", str(_now_ms())],
                )
            if not updated:
                logger.info(f"DLQ job {job_id} was removed while its retry ran")
            logger.warning(f"DLQ retry of {job_id} {job.symbols()} failed (attempt {attempts}): {e}")
            return False

        self.remove(job_id)
        logger.info(f"DLQ job {job_id} {job.symbols()} requeued")
        return True

    def requeue_all(self) -> Dict[str, int]:
        """Retry every eligible job. Ineligible jobs are left untouched."""
        now = _now_ms()
        eligible = [j for j in self._all_jobs() if self.should_retry(j, now)]

        requeued = failed = 0
        for job in eligible:
            if self.requeue_one(job.id):
                requeued += 1
            else:
                failed += 1

        logger.info(f"DLQ requeue_all: {requeued} requeued, {failed} failed of {len(eligible)}")
        return {"requeued": requeued, "failed": failed, "total": len(eligible)}

    def purge(self) -> int:
        ids = self._job_ids()
        with self.store.guard("DLQ purge"):
            pipe = self.store.pipeline(transaction=True)
            for job_id in ids:
                pipe.delete(keys.dlq_job(job_id))
            pipe.delete(keys.DLQ_JOB_IDS)
            pipe.execute()
        logger.info(f"DLQ purged {len(ids)} jobs")
        return len(ids)
