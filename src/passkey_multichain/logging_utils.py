"""
Logging utilities for multi-chain account operations.

Features:
- Structured logging of each orchestration step per chain
- RPC call logging with URL masking (project ids are credentials)
- Operation submission and receipt lifecycle logging
- Audit trail support (JSON lines)
"""
from __future__ import annotations

import json
import logging
import re
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Dict, Optional

logger = logging.getLogger(__name__)

_PROJECT_ID_RE = re.compile(r"/([0-9a-fA-F-]{16,})(?=/|$)")


class OperationType(str, Enum):
    """Orchestration steps that are logged with timing."""
    CREDENTIAL_CEREMONY = "credential_ceremony"
    VALIDATOR_BINDING = "validator_binding"
    ACCOUNT_RESOLUTION = "account_resolution"
    APPROVAL_ISSUE = "approval_issue"
    APPROVAL_CONSUME = "approval_consume"
    OPERATION_BUILD = "operation_build"
    SPONSORSHIP = "sponsorship"
    SIGNING = "signing"
    SUBMISSION = "submission"
    RECEIPT_WAIT = "receipt_wait"


@dataclass
class LoggingConfig:
    """Configuration for operation logging."""
    rpc_call_level: str = "DEBUG"
    operation_level: str = "INFO"
    error_level: str = "ERROR"
    log_rpc_latency: bool = True
    audit_log_enabled: bool = True
    audit_log_path: Optional[str] = None  # None = use default logger


@dataclass
class OperationContext:
    """Context for one orchestration step."""
    operation_id: str
    operation_type: OperationType
    chain: str
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None
    duration_ms: Optional[float] = None
    success: bool = False
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def complete(self, success: bool = True, error: Optional[str] = None) -> None:
        """Mark operation as complete."""
        self.completed_at = datetime.now(timezone.utc)
        self.duration_ms = (
            (self.completed_at - self.started_at).total_seconds() * 1000
        )
        self.success = success
        self.error = error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "operation_type": self.operation_type.value,
            "chain": self.chain,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_ms": self.duration_ms,
            "success": self.success,
            "error": self.error,
            "metadata": self.metadata,
        }


def mask_url(url: str) -> str:
    """Mask credentials embedded in endpoint URLs (query strings, project ids)."""
    base = url.split("?")[0]
    masked = _PROJECT_ID_RE.sub("/<masked>", base)
    if "?" in url:
        return f"{masked}?<params_masked>"
    return masked


@dataclass
class RPCCallLog:
    """Log entry for an RPC call."""
    method: str
    endpoint_url: str
    chain: str
    duration_ms: float
    success: bool
    error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "method": self.method,
            "endpoint_url": mask_url(self.endpoint_url),
            "chain": self.chain,
            "duration_ms": self.duration_ms,
            "success": self.success,
            "error_message": self.error_message,
        }


class OperationLogger:
    """
    Structured logger for multi-chain orchestration.

    Provides:
    - Operation context tracking with durations
    - RPC call latency logging
    - Submission / receipt lifecycle logging
    - Audit trail support
    """

    def __init__(
        self,
        name: str = "passkey_multichain",
        config: Optional[LoggingConfig] = None,
    ):
        self._logger = logging.getLogger(name)
        self._config = config or LoggingConfig()
        self._operation_counter = 0

    def _generate_operation_id(self) -> str:
        self._operation_counter += 1
        timestamp = int(time.time() * 1000)
        return f"op_{timestamp}_{self._operation_counter}"

    def _get_level(self, level_str: str) -> int:
        return getattr(logging, level_str.upper(), logging.INFO)

    @asynccontextmanager
    async def operation_context(
        self,
        operation_type: OperationType,
        chain: str,
        **metadata: Any,
    ) -> AsyncIterator[OperationContext]:
        """
        Context manager for tracking an operation.

        Usage:
            async with op_logger.operation_context(OperationType.SPONSORSHIP, "sepolia") as ctx:
                ctx.metadata["paymaster"] = data.paymaster
        """
        ctx = OperationContext(
            operation_id=self._generate_operation_id(),
            operation_type=operation_type,
            chain=chain,
            metadata=metadata,
        )

        self._logger.debug(
            f"Starting {operation_type.value} on {chain}",
            extra={"operation": ctx.to_dict()},
        )

        try:
            yield ctx
            ctx.complete(success=True)
        except BaseException as e:
            ctx.complete(success=False, error=f"{type(e).__name__}: {e}")
            raise
        finally:
            level = (
                self._get_level(self._config.operation_level)
                if ctx.success
                else self._get_level(self._config.error_level)
            )
            self._logger.log(
                level,
                f"Completed {operation_type.value} on {chain} in {ctx.duration_ms:.0f}ms "
                f"(success={ctx.success})",
                extra={"operation": ctx.to_dict()},
            )

    def log_rpc_call(
        self,
        method: str,
        endpoint_url: str,
        chain: str,
        duration_ms: float,
        success: bool,
        error_message: Optional[str] = None,
    ) -> None:
        """Log an RPC call."""
        if not self._config.log_rpc_latency:
            return

        entry = RPCCallLog(
            method=method,
            endpoint_url=endpoint_url,
            chain=chain,
            duration_ms=duration_ms,
            success=success,
            error_message=error_message,
        )
        level = (
            self._get_level(self._config.rpc_call_level)
            if success
            else self._get_level(self._config.error_level)
        )
        self._logger.log(
            level,
            f"RPC {method} to {chain} in {duration_ms:.0f}ms (success={success})",
            extra={"rpc_call": entry.to_dict()},
        )

    def log_submission(self, chain: str, sender: str, user_op_hash: str, nonce: int) -> None:
        self._logger.info(
            f"UserOperation submitted on {chain}: {user_op_hash} (sender={sender}, nonce={nonce})"
        )
        if self._config.audit_log_enabled:
            self._write_audit_log("user_operation_submitted", {
                "chain": chain,
                "sender": sender,
                "user_op_hash": user_op_hash,
                "nonce": nonce,
            })

    def log_receipt(self, chain: str, user_op_hash: str, status: str, tx_hash: Optional[str] = None) -> None:
        level = logging.INFO if status == "succeeded" else logging.WARNING
        self._logger.log(
            level,
            f"UserOperation {user_op_hash} on {chain}: {status}"
            + (f" (tx={tx_hash})" if tx_hash else ""),
        )
        if self._config.audit_log_enabled:
            self._write_audit_log("user_operation_outcome", {
                "chain": chain,
                "user_op_hash": user_op_hash,
                "status": status,
                "tx_hash": tx_hash,
            })

    def _write_audit_log(self, event_type: str, data: Dict[str, Any]) -> None:
        audit_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
            "data": data,
        }

        if self._config.audit_log_path:
            try:
                with open(self._config.audit_log_path, "a") as f:
                    f.write(json.dumps(audit_entry, default=str) + "\n")
            except OSError as e:
                self._logger.error(f"Failed to write audit log: {e}")
        else:
            self._logger.debug(f"AUDIT: {event_type}", extra={"audit": audit_entry})


_operation_logger: Optional[OperationLogger] = None


def get_operation_logger(
    name: str = "passkey_multichain",
    config: Optional[LoggingConfig] = None,
) -> OperationLogger:
    """Get the process-wide operation logger."""
    global _operation_logger
    if _operation_logger is None:
        _operation_logger = OperationLogger(name, config)
    return _operation_logger


def setup_logging(
    level: str = "INFO",
    format_string: Optional[str] = None,
    json_format: bool = False,
    audit_log_path: Optional[str] = None,
) -> None:
    """
    Set up logging configuration.

    Args:
        level: Log level
        format_string: Custom format string
        json_format: Use JSON formatting
        audit_log_path: Write audit events as JSON lines to this file
    """
    global _operation_logger

    if format_string is None:
        if json_format:
            format_string = '{"timestamp": "%(asctime)s", "level": "%(levelname)s", "name": "%(name)s", "message": "%(message)s"}'
        else:
            format_string = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format=format_string,
    )

    logging.getLogger("passkey_multichain").setLevel(getattr(logging, level.upper()))
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    _operation_logger = OperationLogger(
        config=LoggingConfig(audit_log_path=audit_log_path or None),
    )
