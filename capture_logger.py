"""
CaptureShield — Structured Audit Logger
=======================================
Records every fused verdict and every analyzer failure in JSONL
format so a capture's trust score can be audited after the fact.

Key Features:
  - JSONL (Newline Delimited JSON) format
  - Thread-safe appends (one lock per logger instance)
  - Levels: AUDIT, WARN, ERROR, SYSTEM
  - NumPy / Enum aware encoder

Part 5 of 6 — Orchestration
"""

import json
import os
import sys
import threading
import time
from enum import Enum
from typing import Any, Dict, Optional

import numpy as np

from capture_utils import setup_logger

_log = setup_logger('CaptureAudit')


class CaptureJSONEncoder(json.JSONEncoder):
    """Handles NumPy and Enum types for JSON serialization."""
    def default(self, obj):
        if isinstance(obj, np.ndarray):
            return obj.tolist()
        if isinstance(obj, np.floating):
            return float(obj)
        if isinstance(obj, np.integer):
            return int(obj)
        if isinstance(obj, np.bool_):
            return bool(obj)
        if isinstance(obj, Enum):
            return obj.value
        return super().default(obj)


class CaptureAuditLogger:
    """
    Append-only audit trail for detection decisions.

    One instance is owned by each DetectionOrchestrator; there is no
    module-level shared logger.
    """

    def __init__(self, log_dir: str = "logs", filename: str = "capture_audit.jsonl"):
        self.log_dir = log_dir
        os.makedirs(self.log_dir, exist_ok=True)

        self.log_path = os.path.join(self.log_dir, filename)
        self._file = open(self.log_path, "a", encoding="utf-8")
        self._lock = threading.Lock()

        self.log({
            "event": "audit_startup",
            "python_version": sys.version,
            "platform": sys.platform
        }, level="SYSTEM")

    @property
    def closed(self) -> bool:
        return self._file.closed

    def log(self, data: Dict[str, Any], level: str = "AUDIT", event: Optional[str] = None):
        """Append log entry."""
        entry = {
            "timestamp": time.time(),
            "level": level,
            "event": event or data.get("event", "unknown"),
            "data": data
        }

        line = json.dumps(entry, cls=CaptureJSONEncoder) + "\n"

        with self._lock:
            if self._file.closed:
                return
            self._file.write(line)
            self._file.flush()

    def log_detection(self, payload: Dict[str, Any]):
        """Helper for per-capture verdict logs."""
        self.log(payload, level="AUDIT", event="detection_completed")

    def warn(self, message: str, context: Optional[Dict] = None):
        """Log structured warning."""
        _log.warning(message)
        self.log({"message": message, "context": context}, level="WARN", event="system_warning")

    def error(self, message: str, exception: Optional[Exception] = None):
        """Log structured error with exception details."""
        _log.error(message)
        err_details = str(exception) if exception else None
        self.log({"message": message, "exception": err_details}, level="ERROR", event="system_error")

    def close(self):
        """Clean shutdown."""
        if self._file.closed:
            return
        self.log({"message": "Audit logger shutting down"}, level="SYSTEM", event="audit_shutdown")
        with self._lock:
            self._file.close()
