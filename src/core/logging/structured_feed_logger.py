import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


class StructuredFeedLogger:
    """
    JSON-lines logger for feed sync, transition and batch events.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self._logger = logger or logging.getLogger("feed")

    def emit(self, event_type: str, **fields: Any) -> None:
        payload: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
        }
        payload.update(fields)
        self._logger.info(json.dumps(payload, default=str, ensure_ascii=True))


class RecordingFeedLogger(StructuredFeedLogger):
    """
    Keeps emitted events in memory. Used by tests and the dev runner.
    """

    def __init__(self):
        super().__init__(logging.getLogger("feed.recording"))
        self.events: List[Dict[str, Any]] = []

    def emit(self, event_type: str, **fields: Any) -> None:
        self.events.append({"event_type": event_type, **fields})
        super().emit(event_type, **fields)

    def of_type(self, event_type: str) -> List[Dict[str, Any]]:
        return [e for e in self.events if e["event_type"] == event_type]
