"""Structured logging for pipeline stages."""

import logging
import sys
from typing import Any
from uuid import UUID

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging once at application startup."""
    logging.basicConfig(
        stream=sys.stdout,
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


class StructuredPipelineLogger:
    """Structured logger for document processing stages."""

    def log_stage(
        self,
        document_id: UUID,
        stage: str,
        outcome: str,
        latency_ms: float | None = None,
        error_reason: str | None = None,
        **details: Any,
    ) -> None:
        """Log a pipeline stage with structured data."""
        log_data: dict[str, Any] = {
            "document_id": str(document_id),
            "stage": stage,
            "outcome": outcome,
            **details,
        }

        if latency_ms is not None:
            log_data["latency_ms"] = round(latency_ms, 2)

        if error_reason:
            log_data["error_reason"] = error_reason

        log_msg = f"[{document_id}] {stage} - {outcome}"

        if outcome == "success":
            logger.info(log_msg, extra={"structured": log_data})
        else:
            logger.warning(log_msg, extra={"structured": log_data})
