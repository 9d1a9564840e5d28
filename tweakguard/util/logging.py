"""
Structured audit logging for mutation, backup and rollback operations.
"""

import logging
from typing import Any, Dict, List

SUCCESS = 25
logging.addLevelName(SUCCESS, "SUCCESS")


class StructuredLogger:
    """Structured logger for engine operations (mutations, backups, tiers, undo)."""

    def __init__(self, name: str = "tweakguard", level: int = logging.INFO):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(level)

        # Create handler if not already set
        if not self.logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            handler.setFormatter(formatter)
            self.logger.addHandler(handler)

    def log_operation(self, operation: str, status: str, details: Dict[str, Any] = None, level: int = logging.INFO):
        """Log a structured operation."""
        message = f"Operation: {operation}, Status: {status}"
        if details:
            message += f", Details: {details}"

        self.logger.log(level, message)

    def log_mutation(self, operation: str, key: str, name: str, value: Any = None, status: str = "success", error: str = None):
        """Log a single value write or removal."""
        details = {"key": key, "name": name}
        if value is not None:
            text = str(value)
            details["value"] = text[:50] + "..." if len(text) > 50 else text
        if error:
            details["error"] = error

        level = SUCCESS if status == "success" else logging.ERROR
        self.log_operation(f"mutation.{operation}", status, details, level)

    def log_backup(self, key: str, status: str = "success", details: Dict[str, Any] = None):
        """Log a subtree capture."""
        log_details = {"key": key}
        if details:
            log_details.update(details)

        if status == "success":
            level = SUCCESS
        elif status == "not_found":
            level = logging.WARNING
        else:
            level = logging.ERROR
        self.log_operation("backup.capture", status, log_details, level)

    def log_restore(self, key: str, status: str = "success", details: Dict[str, Any] = None):
        """Log a subtree restore."""
        log_details = {"key": key}
        if details:
            log_details.update(details)

        if status == "success":
            level = SUCCESS
        elif status == "no_backup":
            level = logging.INFO
        else:
            level = logging.ERROR
        self.log_operation("backup.restore", status, log_details, level)

    def log_step_skipped(self, tier: str, step: str, reason: str = "guard"):
        """Log a step skipped by its guard predicate."""
        self.log_operation("tier.step", "skipped", {"tier": tier, "step": step, "reason": reason})

    def log_step_failed(self, tier: str, step: str, error: str, fatal: bool = False):
        """Log a failed step."""
        details = {"tier": tier, "step": step, "error": error[:200]}
        if fatal:
            details["fatal"] = True
        self.log_operation("tier.step", "failed", details, logging.ERROR)

    def log_tier(self, tier: str, status: str, details: Dict[str, Any] = None):
        """Log tier start/finish."""
        log_details = {"tier": tier}
        if details:
            log_details.update(details)

        level = logging.ERROR if status == "aborted" else logging.INFO
        self.log_operation("tier", status, log_details, level)

    def log_undo(self, status: str, details: Dict[str, Any] = None):
        """Log an undo run summary."""
        level = logging.WARNING if status == "completed_with_errors" else logging.INFO
        self.log_operation("rollback.undo", status, details, level)

    def log_command(self, command: List[str], returncode: int, stderr: str = ""):
        """Log an external command; stderr is diagnostic only."""
        details = {"command": " ".join(command), "returncode": returncode}
        if stderr:
            details["stderr"] = stderr.strip()[:200]

        level = logging.DEBUG if returncode == 0 else logging.ERROR
        self.log_operation("command", "ok" if returncode == 0 else "failed", details, level)

    # Standard logging methods for compatibility
    def info(self, message: str) -> None:
        """Log an info message."""
        self.logger.info(message)

    def success(self, message: str) -> None:
        """Log a success message."""
        self.logger.log(SUCCESS, message)

    def warning(self, message: str) -> None:
        """Log a warning message."""
        self.logger.warning(message)

    def error(self, message: str) -> None:
        """Log an error message."""
        self.logger.error(message)

    def debug(self, message: str) -> None:
        """Log a debug message."""
        self.logger.debug(message)


def get_logger(name: str = "tweakguard", debug: bool = False) -> StructuredLogger:
    """Create a structured logger; loggers are per-context, not process-wide."""
    return StructuredLogger(name, logging.DEBUG if debug else logging.INFO)


def audit_event(logger: StructuredLogger, event_type: str, identifiers: Dict[str, Any], payload: Dict[str, Any] = None, sensitive_fields: List[str] = None):
    """General audit event logging with value sanitization."""
    if sensitive_fields is None:
        sensitive_fields = ['passphrase', 'secret', 'password']

    log_details = identifiers.copy() if identifiers else {}

    if payload:
        log_details["payload"] = sanitize_payload(payload, sensitive_fields=sensitive_fields)

    logger.log_operation(event_type.replace(".", "_"), "audit", log_details)


def sanitize_payload(payload: Any, reveal_sensitive: bool = False, sensitive_fields: List[str] = None) -> Any:
    """Sanitize payloads for audit logging."""
    if sensitive_fields is None:
        sensitive_fields = ['passphrase', 'secret', 'password']

    if isinstance(payload, dict):
        sanitized = {}
        for k, v in payload.items():
            if reveal_sensitive or k not in sensitive_fields:
                sanitized[k] = sanitize_payload(v, reveal_sensitive, sensitive_fields)
            else:
                sanitized[k] = "[REDACTED]"
        return sanitized
    elif isinstance(payload, str):
        # Truncate long strings
        return payload[:100] + "..." if len(payload) > 100 else payload
    elif isinstance(payload, list):
        return [sanitize_payload(item, reveal_sensitive, sensitive_fields) for item in payload]
    else:
        return payload
