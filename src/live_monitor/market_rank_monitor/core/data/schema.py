"""
Typed records for everything read back from the store.

Raw Redis replies (string maps, JSON strings) are decoded here and nowhere
else, so the rest of the package only handles these models.
"""

import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)


# ============================== rank records ==================================
class LastRecord(BaseModel):
    """Latest full snapshot of one symbol for a (date, session)."""

    price: float = Field(..., description="Effective price")
    change_pct: float = Field(..., description="Percent change vs reference close")
    market_cap: float = Field(..., description="Market cap in billions")
    market_cap_diff: float = Field(..., description="Market cap delta vs previous close, billions")
    name: Optional[str] = None
    sector: Optional[str] = None
    industry: Optional[str] = None

    def to_hash(self) -> Dict[str, str]:
        return {k: str(v) for k, v in self.model_dump().items() if v is not None}


def decode_last_record(raw: Dict[str, str]) -> Optional[LastRecord]:
    if not raw:
        return None
    try:
        return LastRecord(**raw)
    except ValidationError as e:
        logger.warning(f"Unreadable last record {raw}: {e}")
        return None


class RankExtreme(BaseModel):
    symbol: str
    value: float


class FieldStats(BaseModel):
    min: Optional[RankExtreme] = None
    max: Optional[RankExtreme] = None


# ================================== DLQ =======================================
class DLQJob(BaseModel):
    id: str
    type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    attempt_count: int = 1
    last_error: str = ""
    created_at: int = Field(..., description="Epoch millis")
    last_attempt_at: Optional[int] = None
    priority: Literal["normal", "low"] = "normal"

    def symbols(self) -> List[str]:
        if self.payload.get("symbols"):
            return list(self.payload["symbols"])
        if self.payload.get("symbol"):
            return [self.payload["symbol"]]
        return []

    def to_hash(self) -> Dict[str, str]:
        data = self.model_dump()
        data["payload"] = json.dumps(self.payload)
        return {k: str(v) for k, v in data.items() if v is not None}


def decode_dlq_job(raw: Dict[str, str]) -> Optional[DLQJob]:
    if not raw:
        return None
    try:
        data = dict(raw)
        data["payload"] = json.loads(data.get("payload") or "{}")
        return DLQJob(**data)
    except (ValueError, ValidationError) as e:
        logger.warning(f"Unreadable DLQ job {raw.get('id')}: {e}")
        return None


# ================================== lock ======================================
class LockRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    owner_id: str = Field(..., alias="ownerId")
    created_at: Optional[int] = Field(None, alias="createdAt", description="Epoch millis")

    def encode(self) -> str:
        return json.dumps(self.model_dump(by_alias=True))


def decode_lock_value(raw: Optional[str]) -> Optional[LockRecord]:
    """
    Structured {ownerId, createdAt} first, then the legacy bare-owner encoding.

    TODO: drop the bare-string fallback once no holder writes the old format.
    """
    if raw is None:
        return None
    try:
        data = json.loads(raw)
        if isinstance(data, dict) and data.get("ownerId"):
            return LockRecord(**data)
    except (ValueError, ValidationError):
        pass
    return LockRecord(owner_id=raw, created_at=None)


# ================================ health ======================================
class HealthStatus(BaseModel):
    operation: str
    last_success_at: Optional[datetime] = None
    last_success_count: int = 0
    last_failure_at: Optional[datetime] = None
    last_error: Optional[str] = None
    is_healthy: bool = False
    hours_since_last_success: Optional[float] = None


class AgePercentiles(BaseModel):
    p50: float
    p90: float
    p99: float


class FreshnessMetrics(BaseModel):
    fresh: int = 0
    recent: int = 0
    stale: int = 0
    very_stale: int = 0
    missing: int = 0
    total: int = 0
    percentage: Dict[str, float] = Field(default_factory=dict)
    age_percentiles: Optional[AgePercentiles] = None
