"""
Health Status service.

Hosts the rule document and exposes status evaluation over HTTP. The rule
document is replaced as a whole; evaluations in flight keep the rule set they
started with.
"""

import json
import threading
import time
import sys
import os
from datetime import date
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

# Add shared directory to path
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from fastapi import Body
from fastapi.concurrency import run_in_threadpool
from shared.base_service import BaseService
from shared.config import ServiceConfig
from shared.errors import RuleDocumentError, ServiceError, ValidationError
from shared.logging import evaluation_context

from .history.codec import BlobCodec
from .history.dates import as_utc
from .history.models import HistoryEntry, StatusBlob, sort_newest_first
from .rules.engine import EvaluationContext, StatusEngine, UserIdentity
from .rules.models import RuleSet
from .schemas import (
    CanUpdateRequest, CanUpdateResponse, RuleStatsResponse, RuleStatusModel,
    StatusEvaluateRequest, StatusEvaluateResponse, StatusResolveRequest,
    StatusResolveResponse
)


class HealthStatusService(BaseService):
    """Health status service implementation."""

    def __init__(self, config: Optional[ServiceConfig] = None):
        super().__init__("health", 8020, config)

        self.engine = StatusEngine()
        self.codec = BlobCodec(max_workers=self.config.decrypt_workers, metrics=self.metrics)
        self.tz = self._load_timezone(self.config.local_timezone)

        self._rules: Optional[RuleSet] = None
        self._rules_lock = threading.Lock()

        if self.config.rules_document_path:
            self._load_rules_file(self.config.rules_document_path)

        self._setup_health_routes()

    def _load_timezone(self, name: Optional[str]):
        if not name:
            return None
        try:
            return ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError) as e:
            self.logger.warning("Unknown local timezone, using system zone", timezone=name, error=str(e))
            return None

    def _load_rules_file(self, path: str):
        try:
            with open(path, "r", encoding="utf-8") as f:
                document = json.load(f)
            self.load_rules(document)
        except (OSError, ValueError) as e:
            self.metrics.increment_counter("rule_document_loads_total", result="error")
            self.logger.error("Failed to read rule document", path=path, error=str(e))
        except RuleDocumentError as e:
            self.logger.error("Failed to load rule document", path=path, error=e.message)

    @property
    def rules(self) -> Optional[RuleSet]:
        with self._rules_lock:
            return self._rules

    def load_rules(self, document: Any) -> RuleSet:
        """Parse a rule document and make it the active one."""
        rules = RuleSet.from_json(document)
        if rules is None:
            self.metrics.increment_counter("rule_document_loads_total", result="error")
            raise RuleDocumentError("Rule document must be a JSON object")

        with self._rules_lock:
            self._rules = rules

        self.metrics.increment_counter("rule_document_loads_total", result="ok")
        self.logger.info("Rule document loaded", **rules.get_stats())
        return rules

    async def _check_dependencies(self) -> Dict[str, str]:
        return {"rules": "ok" if self.rules is not None else "missing"}

    def _require_rules(self) -> RuleSet:
        rules = self.rules
        if rules is None:
            raise ServiceError("No rule document loaded")
        return rules

    def _context(self, rules: RuleSet, identity: UserIdentity,
                 today: Optional[date] = None, now=None) -> EvaluationContext:
        return EvaluationContext(
            rules=rules,
            identity=identity,
            tz=self.tz,
            today=today,
            now=as_utc(now) if now is not None else None,
            max_depth=self.config.max_status_depth,
        )

    def evaluate_status(self, history: List[HistoryEntry], ctx: EvaluationContext,
                        current: Optional[StatusBlob] = None) -> Optional[StatusBlob]:
        """Replay a history into the status to announce."""
        with evaluation_context(), self.metrics.time_operation("status_evaluation_duration_seconds"):
            status = self.engine.build_status(sort_newest_first(history), ctx, current)

        outcome = "resolved" if status is not None and status.health_status is not None else "empty"
        self.metrics.increment_counter("status_evaluations_total", outcome=outcome)
        return status

    def _setup_health_routes(self):
        """Set up health-status routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "health",
                "message": "Health Status Layer - Health Status Service",
                "version": "1.0.0",
                "capabilities": ["status_evaluation", "rule_document", "record_codec"]
            }

        @self.app.put("/rules")
        async def put_rules(document: Dict[str, Any] = Body(...)):
            """Replace the active rule document."""
            rules = self.load_rules(document)
            return RuleStatsResponse(loaded=True, stats=rules.get_stats())

        @self.app.get("/rules/stats")
        async def get_rule_stats():
            """Counts of the active rule document."""
            rules = self.rules
            if rules is None:
                return RuleStatsResponse(loaded=False)
            return RuleStatsResponse(loaded=True, stats=rules.get_stats())

        @self.app.post("/status/evaluate")
        async def evaluate_status(request: StatusEvaluateRequest):
            """Replay a decrypted history into a status blob."""
            start_time = time.time()
            rules = self._require_rules()

            history = [entry.to_entry() for entry in request.history]
            current = StatusBlob.from_json(request.current_status) if request.current_status else None
            ctx = self._context(rules, request.identity.to_identity(), request.today, request.now)

            status = await run_in_threadpool(self.evaluate_status, history, ctx, current)

            self.logger.info(
                "Status evaluated",
                history_count=len(history),
                health_status=status.health_status if status is not None else None
            )

            return StatusEvaluateResponse(
                status=status.to_json() if status is not None else None,
                history_count=len(history),
                evaluation_time_ms=round((time.time() - start_time) * 1000, 2)
            )

        @self.app.post("/status/resolve")
        async def resolve_status(request: StatusResolveRequest):
            """Leaf status applicable at one entry of a newest-first history."""
            rules = self._require_rules()

            history = [entry.to_entry() for entry in request.history]
            if not (0 <= request.index < len(history)):
                raise ValidationError(
                    "History index out of range",
                    {"index": request.index, "history_count": len(history)}
                )

            ctx = self._context(rules, request.identity.to_identity(), request.today)
            status = await run_in_threadpool(self.engine.resolve, history, request.index, ctx)

            if status is None:
                return StatusResolveResponse()
            return StatusResolveResponse(status=RuleStatusModel.from_status(status, history[request.index], rules))

        @self.app.post("/status/can-update")
        async def can_update_status(request: CanUpdateRequest):
            """Whether a leaf status may replace the current one."""
            return CanUpdateResponse(can_update=request.to_status().can_update_status(request.to_current()))


def create_app():
    """Create health status service application."""
    service = HealthStatusService()
    return service.app


if __name__ == "__main__":
    service = HealthStatusService()
    service.run()
