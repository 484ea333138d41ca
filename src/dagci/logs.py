# logs.py
from __future__ import annotations

import re
from pathlib import Path

DEFAULT_LOG_DIR = ".dagci/logs"


class LogStore:
    """
    Per-instance step output on disk:
      root/
        <run_id>/
          <instance>.log
    The returned path string is the instance's log reference.
    """

    def __init__(self, root: str | Path = DEFAULT_LOG_DIR):
        self.root = Path(root)

    def path_for(self, run_id: str, instance: str) -> Path:
        safe = re.sub(r"[^A-Za-z0-9_.-]", "_", instance)
        return self.root / run_id / f"{safe}.log"

    def write(self, run_id: str, instance: str, text: str) -> str:
        p = self.path_for(run_id, instance)
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(text, encoding="utf-8")
        return str(p)
