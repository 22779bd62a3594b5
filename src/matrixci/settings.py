from __future__ import annotations
import os

_workers = os.environ.get("MATRIXCI_MAX_WORKERS")
_timeout = os.environ.get("MATRIXCI_COMMAND_TIMEOUT")

MAX_WORKERS = int(_workers) if _workers else None          # None -> cpu_count - 1
RETRIES = int(os.environ.get("MATRIXCI_RETRIES", "2"))
BACKOFF_SECONDS = float(os.environ.get("MATRIXCI_BACKOFF_SECONDS", "0.5"))
COMMAND_TIMEOUT = float(_timeout) if _timeout else None    # seconds per command
EVENT = os.environ.get("MATRIXCI_EVENT", "push")
WORK_DIR = os.environ.get("MATRIXCI_WORK_DIR", ".matrixci/work")
LOG_LEVEL = os.environ.get("MATRIXCI_LOG_LEVEL", "INFO")
