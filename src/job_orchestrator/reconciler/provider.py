"""
External job provider (RunPod-compatible serverless REST API).

Only the four calls the orchestrator needs: submit, status, cancel, health.
See https://docs.runpod.io/serverless/references/job-states for statuses.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional, Protocol

import httpx
from loguru import logger
from pydantic import BaseModel, ConfigDict

from ..errors import ProviderError, ProviderNotConfigured
from ..metrics import PROVIDER_CALLS_TOTAL
from ..settings import OrchestratorSettings
from ..workitems import GenerationInput


class JobStatus(str, Enum):
    IN_QUEUE = "IN_QUEUE"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    TIMED_OUT = "TIMED_OUT"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def _missing_(cls, value):
        return cls.UNKNOWN


class JobStatusReport(BaseModel):
    """Provider's view of one job."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = ""
    status: JobStatus
    output: Optional[Any] = None
    error: Optional[str] = None
    executionTime: Optional[int] = None
    delayTime: Optional[int] = None

    @property
    def output_key(self) -> Optional[str]:
        """Blob key of the produced artifact, if the worker reported one."""
        if not isinstance(self.output, dict):
            return None
        key = self.output.get("s3Key") or self.output.get("key")
        return str(key) if key else None


class ExternalJobProvider(Protocol):
    @property
    def enabled(self) -> bool: ...

    async def submit(self, job_input: GenerationInput, *, execution_timeout_ms: int) -> str: ...

    async def get_status(self, job_id: str) -> JobStatusReport: ...

    async def cancel(self, job_id: str) -> None: ...

    async def health(self) -> dict: ...


class RunPodProvider:
    """RunPod serverless endpoint client over httpx.

    Usage:
        provider = RunPodProvider.from_settings(settings)
        job_id = await provider.submit(item.generation_input(), execution_timeout_ms=20_000)
        report = await provider.get_status(job_id)
        await provider.aclose()
    """

    def __init__(
        self,
        api_key: Optional[str],
        endpoint_id: Optional[str],
        *,
        base_url: str = "https://api.runpod.ai/v2",
        timeout_s: float = 10.0,
        enabled: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._enabled = bool(enabled and api_key and endpoint_id)
        self._endpoint_id = endpoint_id
        self._client: Optional[httpx.AsyncClient] = None
        if self._enabled:
            self._client = httpx.AsyncClient(
                base_url=f"{base_url.rstrip('/')}/{endpoint_id}",
                headers={"Authorization": f"Bearer {api_key}"},
                timeout=timeout_s,
                transport=transport,
            )
            logger.info(f"RunPod client initialized endpoint={endpoint_id}")
        else:
            logger.warning("RunPod API key or endpoint ID not configured. RunPod integration disabled.")

    @classmethod
    def from_settings(cls, settings: OrchestratorSettings, **kwargs) -> "RunPodProvider":
        return cls(
            settings.RUNPOD_API_KEY,
            settings.RUNPOD_ENDPOINT_ID,
            base_url=settings.RUNPOD_BASE_URL,
            timeout_s=settings.PROVIDER_TIMEOUT_S,
            enabled=settings.PROVIDER_ENABLED,
            **kwargs,
        )

    @property
    def enabled(self) -> bool:
        return self._enabled

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    async def _call(self, operation: str, method: str, path: str, **kwargs) -> dict:
        if self._client is None:
            raise ProviderNotConfigured("RunPod not configured")
        try:
            resp = await self._client.request(method, path, **kwargs)
            resp.raise_for_status()
            body = resp.json() if resp.content else {}
        except (httpx.HTTPError, ValueError) as exc:
            PROVIDER_CALLS_TOTAL.labels(operation=operation, outcome="error").inc()
            raise ProviderError(f"RunPod {operation} failed: {type(exc).__name__}: {exc}") from exc
        PROVIDER_CALLS_TOTAL.labels(operation=operation, outcome="ok").inc()
        return body

    async def submit(self, job_input: GenerationInput, *, execution_timeout_ms: int) -> str:
        payload = {
            "input": job_input.model_dump(),
            "policy": {"executionTimeout": execution_timeout_ms},
        }
        body = await self._call("submit", "POST", "/run", json=payload)
        job_id = body.get("id")
        if not job_id:
            raise ProviderError(f"RunPod submit returned no job id: {body}")
        logger.info(
            f"Job submitted to RunPod job_id={job_id} media_id={job_input.mediaId} "
            f"execution_timeout_ms={execution_timeout_ms}"
        )
        return str(job_id)

    async def get_status(self, job_id: str) -> JobStatusReport:
        body = await self._call("status", "GET", f"/status/{job_id}")
        try:
            return JobStatusReport.model_validate(body)
        except ValueError as exc:
            raise ProviderError(f"RunPod status response malformed for job_id={job_id}: {exc}") from exc

    async def cancel(self, job_id: str) -> None:
        await self._call("cancel", "POST", f"/cancel/{job_id}")
        logger.info(f"Job cancelled on RunPod job_id={job_id}")

    async def health(self) -> dict:
        body = await self._call("health", "GET", "/health")
        logger.debug(f"Retrieved endpoint health: {body}")
        return body
