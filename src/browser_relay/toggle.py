"""Persisted maintain-connection toggle.

Storage location: ~/.browser-relay/state.json
File format: {"maintain": true}
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from .config import default_state_file

logger = logging.getLogger(__name__)


class ToggleStore:
    """
    Reads and writes the single `maintain` flag.

    Contract:
    - Missing or unreadable file -> default (maintain on)
    - Side Effects: creates the parent directory on first save
    """

    def __init__(self, path: Path | None = None, default: bool = True):
        self.path = path or default_state_file()
        self.default = default

    def load(self) -> bool:
        """Load the flag, falling back to the default."""
        if not self.path.exists():
            return self.default
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Could not read {self.path}: {e}")
            return self.default
        maintain = data.get("maintain") if isinstance(data, dict) else None
        if not isinstance(maintain, bool):
            return self.default
        return maintain

    def save(self, maintain: bool) -> None:
        """Persist the flag."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        content = json.dumps({"maintain": maintain}, indent=2)
        self.path.write_text(content, encoding="utf-8")
        logger.debug(f"Saved maintain={maintain} to {self.path}")
