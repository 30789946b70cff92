# alertflow/engine/echo.py
"""Deterministic local engine used when no analysis service is configured."""

import uuid
from typing import Dict, Any, List

from ..errors import InvalidTaskError
from ..models.entities import AnalysisTask, AnalysisResult, AnalysisStatus, AnalysisType
from .base import AnalysisEngine, CancellationToken


class EchoAnalysisEngine(AnalysisEngine):

    def __init__(self, delay: float = 0.0):
        self.delay = delay

    def validate_request(self, task: AnalysisTask, payload: Dict[str, Any]):
        if not isinstance(payload, dict):
            raise InvalidTaskError(f"task {task.id}: payload must be an object")

    def get_supported_types(self) -> List[AnalysisType]:
        return list(AnalysisType)

    def get_engine_info(self) -> Dict[str, Any]:
        return {"name": "echo", "delay": self.delay}

    def analyze(self, token: CancellationToken, task: AnalysisTask, payload: Dict[str, Any]) -> AnalysisResult:
        if self.delay and token.wait(self.delay):
            token.raise_if_done()
        token.raise_if_done()

        description = payload.get("description") or payload.get("title") or task.alert_id
        return AnalysisResult(
            id=str(uuid.uuid4()),
            task_id=task.id,
            alert_id=task.alert_id,
            type=task.type,
            status=AnalysisStatus.COMPLETED,
            confidence_score=0.5,
            processing_time=self.delay,
            result={"echo": payload},
            summary=f"{task.type.value} for alert {task.alert_id}: {description}",
            recommendations=[f"review alert {task.alert_id}"],
            metadata={"engine": "echo"},
        )
