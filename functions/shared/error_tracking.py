"""
Error tracking for webhook processing.

A scope collects diagnostic context (the Stripe event, the account involved)
for one delivery. It is created by the dispatcher and handed to handlers
explicitly; nothing is stored in module or thread globals.

Captured errors are written as structured ERROR logs (searchable in Logs
Insights by "tracking": true) and counted in the WebhookErrors metric.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional

from shared.metrics import emit_error_metric

logger = logging.getLogger(__name__)


@dataclass
class ErrorScope:
    """Diagnostic context attached to captured errors and messages."""

    contexts: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    tags: Dict[str, str] = field(default_factory=dict)

    def set_context(self, name: str, context: Dict[str, Any]) -> None:
        self.contexts[name] = dict(context)

    def set_tag(self, key: str, value: str) -> None:
        self.tags[key] = value


@dataclass
class CapturedReport:
    """What was reported, kept for inspection."""

    level: str
    message: str
    error_type: Optional[str]
    contexts: Dict[str, Dict[str, Any]]
    tags: Dict[str, str]


class ErrorTracker:
    """Reports errors with their scope context to logs and CloudWatch."""

    def __init__(self, emit_metrics: bool = True, keep_reports: int = 100):
        self.emit_metrics = emit_metrics
        self.keep_reports = keep_reports
        self.reports: List[CapturedReport] = []

    @contextmanager
    def scope(self) -> Iterator[ErrorScope]:
        """Open a fresh scope for the duration of a delivery."""
        yield ErrorScope()

    def capture_exception(self, error: BaseException, scope: Optional[ErrorScope] = None) -> None:
        scope = scope or ErrorScope()
        self._report("error", str(error), type(error).__name__, scope, exc_info=error)

    def capture_message(self, message: str, scope: Optional[ErrorScope] = None, error_type: Optional[str] = None) -> None:
        scope = scope or ErrorScope()
        self._report("warning", message, error_type, scope)

    def _report(self, level, message, error_type, scope, exc_info=None):
        report = CapturedReport(
            level=level,
            message=message,
            error_type=error_type,
            contexts=dict(scope.contexts),
            tags=dict(scope.tags),
        )
        self.reports.append(report)
        del self.reports[: -self.keep_reports]

        logger.log(
            logging.ERROR if level == "error" else logging.WARNING,
            f"Tracked {level}: {message}",
            extra={
                "tracking": True,
                "error_type": error_type,
                "contexts": report.contexts,
                "tags": report.tags,
            },
            exc_info=exc_info,
        )

        if self.emit_metrics:
            event_type = report.contexts.get("stripe_event", {}).get("type")
            emit_error_metric(error_type or "message", event_type=event_type)
