from typing import Dict, Optional
from invoice_service.models.batch import ProcessingStatus
import logging

logger = logging.getLogger(__name__)

class StatusStore:
    """In-memory table of the latest status per item id.

    Writes come from the orchestrator's own coroutines, each of which owns a
    distinct key, so no locking is needed on a single event loop. Nothing is
    persisted.
    """

    def __init__(self):
        self._statuses: Dict[str, ProcessingStatus] = {}

    def set(self, item_id: str, status: ProcessingStatus):
        self._statuses[item_id] = status.model_copy(deep=True)

    def get(self, item_id: str) -> Optional[ProcessingStatus]:
        return self._statuses.get(item_id)

    def clear(self):
        if self._statuses:
            logger.debug(f"Clearing {len(self._statuses)} statuses")
        self._statuses.clear()

    def snapshot(self) -> Dict[str, ProcessingStatus]:
        return {
            item_id: status.model_copy(deep=True)
            for item_id, status in self._statuses.items()
        }

    def as_dict(self) -> Dict[str, dict]:
        """JSON-ready snapshot with camelCase keys"""
        return {
            item_id: status.model_dump(mode="json", by_alias=True)
            for item_id, status in self._statuses.items()
        }

    def __len__(self) -> int:
        return len(self._statuses)

    def __contains__(self, item_id: str) -> bool:
        return item_id in self._statuses
