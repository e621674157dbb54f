"""Session-scoped state for one EventCall client.

Holds the mutable state a browser tab would keep in sessionStorage: the
credential rotation index and the current CSRF token. The context is
injected into the rotator and CSRF manager so that two sessions never share
state by accident, and tests get a clean slate via reset().

Optional persistence writes a small JSON file atomically (temp file +
os.replace) so a restarted process can continue rotation progress.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

logger = logging.getLogger("eventcall.session")

__all__ = ["SessionContext"]


class SessionContext:
    """Key/value state with an explicit init/reset lifecycle.

    Attributes:
        state_path: Optional JSON file backing the state
    """

    def __init__(self, state_path: Path | None = None) -> None:
        self.state_path = Path(state_path) if state_path else None
        self._state: dict[str, Any] = {}
        self._initialized = False

    def init(self) -> "SessionContext":
        """Load persisted state (if any). Safe to call more than once."""
        if self._initialized:
            return self
        if self.state_path and self.state_path.exists():
            try:
                loaded = json.loads(self.state_path.read_text(encoding="utf-8"))
                if isinstance(loaded, dict):
                    self._state = loaded
            except (OSError, ValueError) as e:
                # Corrupt state only costs rotation progress
                logger.warning(
                    "session_state_load_failed",
                    extra={"path": str(self.state_path), "error": str(e)},
                )
                self._state = {}
        self._initialized = True
        return self

    def reset(self) -> None:
        """Clear all state and remove the persisted file."""
        self._state = {}
        if self.state_path and self.state_path.exists():
            self.state_path.unlink()
        logger.debug("session_reset")

    def get(self, key: str, default: Any = None) -> Any:
        if not self._initialized:
            self.init()
        return self._state.get(key, default)

    def set(self, key: str, value: Any) -> None:
        if not self._initialized:
            self.init()
        self._state[key] = value
        self._persist()

    def _persist(self) -> None:
        if not self.state_path:
            return
        self.state_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self.state_path.parent), prefix=".session_", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self._state, f)
            os.replace(tmp_path, self.state_path)
        except OSError:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
