"""
Logging configuration for pulse_integrity.

Provides structured JSON logging for audit trails and debugging.
"""

import json
import logging
import sys
import time
import uuid
from contextvars import ContextVar
from typing import Optional

# Context variable tagging every line of one nightly run
run_id_var: ContextVar[str] = ContextVar("run_id", default="")


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    One JSON object per line, suitable for log aggregation and for the
    scheduler's alerting.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        run_id = run_id_var.get()
        if run_id:
            log_data["run_id"] = run_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra_fields"):
            log_data.update(record.extra_fields)

        return json.dumps(log_data, default=str)


class AuditLogger:
    """
    Logger for integrity events: signing, persistence, chain checks and
    run lifecycle.
    """

    def __init__(self, name: str = "pulse_integrity.audit"):
        self._logger = logging.getLogger(name)

    def _log(self, level: int, event_type: str, **kwargs) -> None:
        extra = {
            "event_type": event_type,
            "run_id": run_id_var.get(),
            **kwargs
        }

        record = self._logger.makeRecord(
            self._logger.name,
            level,
            "",
            0,
            f"{event_type}: {kwargs.get('message', '')}",
            (),
            None
        )
        record.extra_fields = extra
        self._logger.handle(record)

    def job_state(self, run_date: str, state: str, **details) -> None:
        level = logging.ERROR if state == "failed" else logging.INFO
        self._log(
            level,
            "JOB_STATE",
            run_date=run_date,
            state=state,
            **details,
            message=f"Nightly signing for {run_date}: {state}"
        )

    def run_skipped(self, run_date: str) -> None:
        self._log(
            logging.WARNING,
            "RUN_SKIPPED",
            run_date=run_date,
            message=f"Run for {run_date} already in progress, skipping"
        )

    def aggregate_signed(self, group_id: str, run_date: str, n: int, content_hash: str) -> None:
        self._log(
            logging.INFO,
            "AGGREGATE_SIGNED",
            group_id=group_id,
            run_date=run_date,
            n=n,
            content_hash=content_hash,
            message=f"Signed aggregate for {group_id}"
        )

    def signature_persisted(self, signature_id: str, content_hash: str) -> None:
        self._log(
            logging.INFO,
            "SIGNATURE_PERSISTED",
            signature_id=signature_id,
            content_hash=content_hash,
            message=f"Stored signature {signature_id}"
        )

    def group_skipped(self, group_id: str, run_date: str, stage: str, reason: str) -> None:
        self._log(
            logging.ERROR,
            "GROUP_SKIPPED",
            group_id=group_id,
            run_date=run_date,
            stage=stage,
            reason=reason,
            message=f"Skipped {group_id} during {stage}: {reason}"
        )

    def chain_verified(
        self,
        is_valid: bool,
        total_events: int,
        first_invalid_index: Optional[int] = None,
        error_count: int = 0
    ) -> None:
        level = logging.INFO if is_valid else logging.ERROR
        self._log(
            level,
            "CHAIN_VERIFIED",
            is_valid=is_valid,
            total_events=total_events,
            first_invalid_index=first_invalid_index,
            error_count=error_count,
            message=f"Chain verification {'passed' if is_valid else 'FAILED'}"
        )

    def chain_import_rejected(self, reason: str) -> None:
        self._log(
            logging.WARNING,
            "CHAIN_IMPORT_REJECTED",
            reason=reason,
            message=f"Chain import rejected: {reason}"
        )

    def verification_failed(self, subject: str, reason: str) -> None:
        self._log(
            logging.WARNING,
            "VERIFICATION_FAILED",
            subject=subject,
            reason=reason,
            message=f"Not verified: {subject}"
        )


def configure_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None
) -> None:
    """
    Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON formatting (recommended for production)
        log_file: Optional file path for log output
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


def set_run_id(run_id: Optional[str] = None) -> str:
    """
    Set the run ID for the current context.

    Args:
        run_id: Run ID to set, or None to generate one

    Returns:
        The run ID that was set
    """
    if run_id is None:
        run_id = str(uuid.uuid4())
    run_id_var.set(run_id)
    return run_id


audit_log = AuditLogger()
