# Redis key space. {date} is the exchange-local YYYY-MM-DD, {session} a storage session.

RANK_FIELDS = ("price", "cap", "capdiff", "chg")

# chg is stored as an integer score to keep ordering stable
CHG_SCALE = 10_000


def rank(date: str, session: str, field: str) -> str:
    if field not in RANK_FIELDS:
        raise ValueError(f"Unknown rank field: {field}")
    return f"rank:{date}:{session}:{field}"


def rank_version(date: str, session: str, field: str) -> str:
    return f"meta:{rank(date, session, field)}:v"


def last(date: str, session: str, symbol: str) -> str:
    return f"last:{date}:{session}:{symbol}"


def stats(date: str, session: str) -> str:
    return f"stats:{date}:{session}"


FRESHNESS_LAST_UPDATE = "freshness:last_update"

WORKER_LAST_SUCCESS_TS = "worker:last_success_ts"
BULK_LAST_SUCCESS_TS = "bulk:last_success_ts"
BULK_LAST_DURATION_MS = "bulk:last_duration_ms"
BULK_LAST_ERROR = "bulk:last_error"

STATIC_DATA_LOCK = "lock:static_data_update"


def worker_health(operation: str) -> str:
    return f"worker:health:{operation}"


DLQ_JOB_IDS = "dlq:jobs"


def dlq_job(job_id: str) -> str:
    return f"dlq:job:{job_id}"
