"""
Relay log: JSON record of terminal payout outcomes read by the dashboard.
"""

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Union

import structlog

from .models import RelayTransaction

logger = structlog.get_logger()


class RelayLog:
    """
    Append-only JSON document keyed by "<source_tx_hash>:<log_index>".

    Existing entries are never replaced. Each write goes to a temp file
    that is renamed over the log, so readers never see a partial document.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def read(self) -> dict[str, Any]:
        """Current log, or {} if it is missing or unreadable."""
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError):
            return {}
        return data if isinstance(data, dict) else {}

    def append(self, tx: RelayTransaction) -> bool:
        """Add a terminal outcome. Returns False if the entry already exists."""
        if not tx.is_terminal:
            raise ValueError(f"only terminal outcomes are logged, got {tx.status.value}")

        key = tx.identity.key()
        data = self.read()
        if key in data:
            return False

        data[key] = tx.to_log_record()
        self._write(data)
        return True

    def _write(self, data: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            prefix=f".{self.path.name}.", dir=str(self.path.parent)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, self.path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise
