import redis
import json
from typing import Any, Optional, List, Dict
from datetime import date
import logging

from clinic_engine.core.config import settings

logger = logging.getLogger(__name__)

class RedisHelper:
    def __init__(self, host: str = "localhost", port: int = 6379, db: int = 0, decode_responses: bool = True,
                 enabled: bool = True, client: Optional[redis.Redis] = None):
        self.redis_client = None
        self.available = False
        if not enabled:
            return
        try:
            self.redis_client = client or redis.Redis(
                host=host, port=port, db=db, decode_responses=decode_responses,
                socket_connect_timeout=1, socket_timeout=1
            )
            self.redis_client.ping()
            self.available = True
        except (redis.ConnectionError, redis.TimeoutError):
            self.redis_client = None
            self.available = False
            logger.warning("Redis not available, serving reads from the database")

    def get(self, key: str) -> Optional[Any]:
        if not self.available:
            return None
        try:
            value = self.redis_client.get(key)
            return json.loads(value) if value else None
        except (redis.RedisError, json.JSONDecodeError):
            return None

    def set(self, key: str, value: Any, ttl: int = 3600) -> bool:
        if not self.available:
            return False
        try:
            serialized = json.dumps(value, default=str)
            return bool(self.redis_client.setex(key, ttl, serialized))
        except (redis.RedisError, TypeError):
            return False

    def invalidate_pattern(self, pattern: str) -> int:
        if not self.available:
            return 0
        try:
            keys = self.redis_client.keys(pattern)
            return self.redis_client.delete(*keys) if keys else 0
        except redis.RedisError:
            return 0

    @staticmethod
    def _scope(value: Optional[int]) -> str:
        return str(value) if value is not None else "all"

    def _schedule_key(self, day: date, clinic_id: Optional[int], therapist_id: Optional[int]) -> str:
        return f"schedule:day:{day}:clinic:{self._scope(clinic_id)}:therapist:{self._scope(therapist_id)}"

    def _income_key(self, day: date, clinic_id: Optional[int]) -> str:
        return f"income:daily:{day}:clinic:{self._scope(clinic_id)}"

    def cache_day_schedule(self, day: date, clinic_id: Optional[int], therapist_id: Optional[int],
                           schedule: List[Dict]) -> bool:
        return self.set(self._schedule_key(day, clinic_id, therapist_id), schedule, ttl=settings.schedule_cache_ttl)

    def get_day_schedule(self, day: date, clinic_id: Optional[int],
                         therapist_id: Optional[int]) -> Optional[List[Dict]]:
        return self.get(self._schedule_key(day, clinic_id, therapist_id))

    def cache_income_summary(self, day: date, clinic_id: Optional[int], summary: Dict) -> bool:
        return self.set(self._income_key(day, clinic_id), summary, ttl=settings.income_cache_ttl)

    def get_income_summary(self, day: date, clinic_id: Optional[int]) -> Optional[Dict]:
        return self.get(self._income_key(day, clinic_id))

    def invalidate_schedule_cache(self, day: date = None) -> int:
        pattern = f"schedule:day:{day}:*" if day else "schedule:day:*"
        return self.invalidate_pattern(pattern)

    def invalidate_income_cache(self, day: date = None) -> int:
        # Clinic-scoped and all-clinic summaries for the day both go
        pattern = f"income:daily:{day}:*" if day else "income:daily:*"
        return self.invalidate_pattern(pattern)

redis_helper = RedisHelper(
    host=settings.redis_host,
    port=settings.redis_port,
    db=settings.redis_db,
    enabled=settings.redis_enabled
)
