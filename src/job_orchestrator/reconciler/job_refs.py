from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from redis.exceptions import RedisError

from ..errors import map_redis_error


@dataclass(frozen=True)
class ExternalJobRef:
    """work item id -> provider job id, as stored at submission time."""

    work_item_id: str
    job_id: str
    submitted_at: Optional[datetime] = None


class ExternalJobRefStore:
    """TTL-bound job references in Redis.

    Keys: ``<prefix><id>`` holds the provider job id and
    ``<prefix><id>:submitted`` the submission time in epoch ms. A missing key
    after the TTL is meaningful to the reconciler ("lost external job id").
    """

    def __init__(self, client, *, prefix: str = "runpod:job:", ttl_s: int = 3600):
        if ttl_s <= 0:
            raise ValueError("ttl_s must be > 0")
        self._client = client
        self._prefix = prefix
        self._ttl_s = ttl_s

    def _key(self, work_item_id: str) -> str:
        return f"{self._prefix}{work_item_id}"

    async def put(self, work_item_id: str, job_id: str) -> ExternalJobRef:
        now_ms = int(time.time() * 1000)
        try:
            await self._client.set(self._key(work_item_id), job_id, ex=self._ttl_s)
            await self._client.set(f"{self._key(work_item_id)}:submitted", str(now_ms), ex=self._ttl_s)
        except RedisError as exc:
            raise map_redis_error(exc) from exc
        return ExternalJobRef(
            work_item_id, job_id, datetime.fromtimestamp(now_ms / 1000, tz=timezone.utc)
        )

    async def get(self, work_item_id: str) -> Optional[ExternalJobRef]:
        try:
            job_id, submitted = await self._client.mget(
                self._key(work_item_id), f"{self._key(work_item_id)}:submitted"
            )
        except RedisError as exc:
            raise map_redis_error(exc) from exc
        if not job_id:
            return None
        submitted_at = None
        if submitted:
            try:
                submitted_at = datetime.fromtimestamp(int(submitted) / 1000, tz=timezone.utc)
            except ValueError:
                submitted_at = None
        return ExternalJobRef(work_item_id, str(job_id), submitted_at)

    async def delete(self, work_item_id: str) -> None:
        try:
            await self._client.delete(self._key(work_item_id), f"{self._key(work_item_id)}:submitted")
        except RedisError as exc:
            raise map_redis_error(exc) from exc
