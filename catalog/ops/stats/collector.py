"""
Metric records and their redis-backed collection sessions.
"""
import json
import time
import uuid
from dataclasses import asdict, dataclass

import psutil
from redis.exceptions import RedisError


@dataclass
class Metric:
    """Base metric data structure."""

    timestamp: float
    name: str
    value: float
    kind: str = "gauge"  # counter, histogram, gauge
    tags: dict[str, str] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        if not data.get("tags"):
            data.pop("tags", None)
        return data


def compute_statistics(metrics: list[dict]) -> dict[str, dict[str, float]]:
    """Per-name count/sum/avg/min/max, with percentiles from ten samples up."""
    if not metrics:
        return {}

    grouped: dict[str, list[float]] = {}
    for m in metrics:
        name = m.get("name", "unknown")
        values = grouped.setdefault(name, [])
        if isinstance(m.get("value"), int | float):
            values.append(m["value"])

    stats = {}
    for name, values in grouped.items():
        if not values:
            continue

        sorted_vals = sorted(values)
        n = len(sorted_vals)

        stats[name] = {
            "count": n,
            "sum": sum(values),
            "avg": sum(values) / n,
            "min": sorted_vals[0],
            "max": sorted_vals[-1],
        }

        if n >= 10:
            for p in [50, 75, 90, 95, 99]:
                idx = min(int(n * p / 100), n - 1)
                stats[name][f"p{p}"] = sorted_vals[idx]

    return stats


class MetricsSession:
    """A bounded window of metrics shipped to redis for later analysis."""

    def __init__(self, session_id: str = None, redis_client=None, ttl_seconds: int = 3600):
        self.id = session_id or str(uuid.uuid4())
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds
        self.start_time = time.time()
        self.key_prefix = f"metrics:{self.id}:"

    @property
    def data_key(self) -> str:
        return f"{self.key_prefix}data"

    async def record_batch(self, metrics: list[Metric]) -> bool:
        if not self.redis or not metrics:
            return False

        try:
            pipeline = self.redis.pipeline()
            for metric in metrics:
                pipeline.rpush(self.data_key, json.dumps(metric.to_dict()))
            pipeline.expire(self.data_key, self.ttl_seconds)
            await pipeline.execute()
            return True
        except (RedisError, OSError):
            return False

    async def get_metrics(self) -> list[dict]:
        if not self.redis:
            return []

        try:
            data = await self.redis.lrange(self.data_key, 0, -1)
            return [json.loads(item) for item in data]
        except (RedisError, OSError):
            return []

    async def clear(self) -> int:
        if not self.redis:
            return 0

        try:
            cursor = 0
            deleted = 0
            while True:
                cursor, keys = await self.redis.scan(cursor, match=f"{self.key_prefix}*")
                if keys:
                    deleted += await self.redis.delete(*keys)
                if cursor == 0:
                    break
            return deleted
        except (RedisError, OSError):
            return 0


class MetricsCollector:
    """Process and request level metrics that accompany cache metrics in a session."""

    def __init__(self):
        self.process = psutil.Process()

    def collect_process_metrics(self) -> list[Metric]:
        timestamp = time.time()
        mem_info = self.process.memory_info()
        return [
            Metric(timestamp=timestamp, name="process_cpu_percent", value=self.process.cpu_percent()),
            Metric(timestamp=timestamp, name="process_memory_rss_mb", value=mem_info.rss / 1024 / 1024),
        ]

    def create_request_metric(self, endpoint: str, method: str, duration_seconds: float, status: int) -> Metric:
        return Metric(
            timestamp=time.time(),
            name="request_duration_seconds",
            value=duration_seconds,
            kind="histogram",
            tags={"endpoint": endpoint, "method": method, "status": str(status)},
        )
