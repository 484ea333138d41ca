from __future__ import annotations
import os

CACHE_DIR = os.environ.get("DAGCI_CACHE_DIR", ".dagci/cache")
LOG_DIR = os.environ.get("DAGCI_LOG_DIR", ".dagci/logs")
REDIS_URL = os.environ.get("DAGCI_REDIS_URL") or None
MAX_PARALLEL = int(os.environ.get("DAGCI_MAX_PARALLEL", str(max(1, (os.cpu_count() or 2) - 1))))
RUNNER_LIMIT = int(os.environ.get("DAGCI_RUNNER_LIMIT", "2"))
ACQUIRE_TIMEOUT = float(os.environ.get("DAGCI_ACQUIRE_TIMEOUT", "600"))
