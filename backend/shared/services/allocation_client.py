"""
Allocation service client (httpx).

`POST /allocations/auto-assign {studentId, courseId, schedulingHints}` asks
the external service to pick a trainer. The service is idempotent per
student+course on its side, so the call is safe to repeat.

Response mapping:
- 2xx with allocationId + trainerId and a non-pending status -> assignment
- 202, status=pending, or no trainerId -> AllocationPendingError (transient)
- timeout / transport error / 5xx / 429 -> AllocationServiceError (transient)
- any other 4xx -> AllocationRejectedError (fatal)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

from shared.config.settings import AllocationServiceSettings, get_settings
from shared.exceptions.pipeline import (
    AllocationPendingError,
    AllocationRejectedError,
    AllocationServiceError,
)
from shared.models.scheduling import SchedulingHints

logger = logging.getLogger(__name__)

AUTO_ASSIGN_PATH = "/allocations/auto-assign"


@dataclass(frozen=True)
class AllocationAssignment:
    allocation_id: str
    trainer_id: str
    status: str
    raw: Dict[str, Any] = field(default_factory=dict)


def _response_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text[:2000]


def _first(data: Dict[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = data.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


def parse_assignment(status_code: int, body: Any) -> AllocationAssignment:
    """Map a 2xx auto-assign response onto an assignment or a pending error."""
    if not isinstance(body, dict):
        raise AllocationServiceError("unexpected response body", status_code=status_code, response_body=body)
    data = body.get("data") if isinstance(body.get("data"), dict) else body

    status = (_first(data, "status") or "").lower()
    allocation_id = _first(data, "allocationId", "allocation_id", "id")
    trainer_id = _first(data, "trainerId", "trainer_id")

    if status_code == 202 or status == "pending" or not trainer_id:
        raise AllocationPendingError(status_code=status_code, response_body=body)
    if not allocation_id:
        raise AllocationServiceError("response is missing allocationId", status_code=status_code, response_body=body)
    return AllocationAssignment(allocation_id=allocation_id, trainer_id=trainer_id, status=status or "approved", raw=body)


class AllocationClient:
    def __init__(
        self,
        service: Optional[AllocationServiceSettings] = None,
        *,
        http: Optional[httpx.AsyncClient] = None,
    ):
        self._service = service or get_settings().allocation_service
        self._http = http

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http is None:
            headers: Dict[str, str] = {}
            if self._service.allocation_service_token:
                headers["Authorization"] = f"Bearer {self._service.allocation_service_token}"
            self._http = httpx.AsyncClient(
                base_url=self._service.allocation_service_url.rstrip("/"),
                timeout=self._service.allocation_service_timeout,
                headers=headers,
            )
        return self._http

    async def auto_assign(
        self,
        *,
        student_id: str,
        course_id: str,
        hints: SchedulingHints,
        correlation_id: Optional[str] = None,
    ) -> AllocationAssignment:
        request = {
            "studentId": student_id,
            "courseId": course_id,
            "schedulingHints": hints.to_metadata(),
        }
        headers = {"X-Correlation-Id": correlation_id} if correlation_id else None
        try:
            response = await self.http.post(AUTO_ASSIGN_PATH, json=request, headers=headers)
        except httpx.TimeoutException as e:
            raise AllocationServiceError(f"timeout calling {AUTO_ASSIGN_PATH}: {e!r}") from e
        except httpx.TransportError as e:
            raise AllocationServiceError(f"transport error calling {AUTO_ASSIGN_PATH}: {e!r}") from e

        body = _response_body(response)
        status_code = response.status_code
        if status_code >= 500 or status_code == 429:
            raise AllocationServiceError(f"HTTP {status_code}", status_code=status_code, response_body=body)
        if status_code >= 400:
            raise AllocationRejectedError(f"HTTP {status_code}", status_code=status_code, response_body=body)

        assignment = parse_assignment(status_code, body)
        logger.info(
            f"Allocation service assigned trainer {assignment.trainer_id} "
            f"(allocation={assignment.allocation_id}, student={student_id}, course={course_id})"
        )
        return assignment

    async def close(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None
