# alertflow/engine/http_engine.py
"""
HTTP analysis engine client.

POSTs the task and its payload to a remote analysis service. Each request
uses a per-request timeout equal to the task's remaining deadline.

Error mapping:
  - httpx.TimeoutException       -> AnalysisTimeoutError
  - transport errors, 429, 5xx   -> TransientFailure
  - other 4xx, malformed bodies  -> PermanentFailure
"""

import logging
import uuid
from typing import Optional, Dict, Any, List

import httpx

from ..errors import AnalysisTimeoutError, TransientFailure, PermanentFailure, InvalidTaskError
from ..models.entities import AnalysisTask, AnalysisResult, AnalysisStatus, AnalysisType, utc_now
from .base import AnalysisEngine, CancellationToken

logger = logging.getLogger("alertflow.engine.http")

DEFAULT_REQUEST_TIMEOUT = 120.0


class HTTPAnalysisEngine(AnalysisEngine):

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        supported_types: Optional[List[AnalysisType]] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        headers = {"X-API-Key": api_key} if api_key else {}
        self.base_url = base_url.rstrip("/")
        self._supported = list(supported_types or AnalysisType)
        self._client = httpx.Client(base_url=self.base_url, headers=headers, transport=transport)

    def close(self):
        """Close the httpx client"""
        self._client.close()

    def validate_request(self, task: AnalysisTask, payload: Dict[str, Any]):
        if task.type not in self._supported:
            raise InvalidTaskError(f"analysis type {task.type.value} not supported by {self.base_url}")
        if not isinstance(payload, dict):
            raise InvalidTaskError(f"task {task.id}: payload must be an object")

    def get_supported_types(self) -> List[AnalysisType]:
        return list(self._supported)

    def get_engine_info(self) -> Dict[str, Any]:
        return {
            "name": "http",
            "base_url": self.base_url,
            "supported_types": [t.value for t in self._supported],
        }

    def analyze(self, token: CancellationToken, task: AnalysisTask, payload: Dict[str, Any]) -> AnalysisResult:
        token.raise_if_done()
        remaining = token.remaining()
        timeout = remaining if remaining is not None else DEFAULT_REQUEST_TIMEOUT
        started = utc_now()

        try:
            response = self._client.post(
                "/analyze",
                json={"task": task.to_dict(), "payload": payload},
                timeout=httpx.Timeout(timeout),
            )
            response.raise_for_status()
            body = response.json()
        except httpx.TimeoutException as e:
            logger.warning(f"Analysis request timed out | task_id={task.id} | timeout={timeout:.2f}s")
            raise AnalysisTimeoutError(f"analysis request timed out after {timeout:.2f}s") from e
        except httpx.HTTPStatusError as e:
            code = e.response.status_code
            message = f"HTTP {code}: {e.response.text[:200]}"
            if code == 429 or code >= 500:
                raise TransientFailure(message) from e
            raise PermanentFailure(message) from e
        except httpx.TransportError as e:
            raise TransientFailure(f"transport error: {e}") from e
        except ValueError as e:
            raise PermanentFailure(f"malformed analysis response: {e}") from e

        if not isinstance(body, dict):
            raise PermanentFailure("malformed analysis response: expected an object")

        try:
            confidence = float(body.get("confidence_score", 0.0))
        except (TypeError, ValueError):
            raise PermanentFailure(f"invalid confidence_score {body.get('confidence_score')!r}")
        if not 0.0 <= confidence <= 1.0:
            raise PermanentFailure(f"confidence_score {confidence} outside 0..1")

        now = utc_now()
        return AnalysisResult(
            id=str(uuid.uuid4()),
            task_id=task.id,
            alert_id=task.alert_id,
            type=task.type,
            status=AnalysisStatus.COMPLETED,
            confidence_score=confidence,
            processing_time=(now - started).total_seconds(),
            result=dict(body.get("result") or {}),
            summary=str(body.get("summary", "")),
            recommendations=[str(r) for r in body.get("recommendations") or []],
            metadata={"engine": "http"},
        )
