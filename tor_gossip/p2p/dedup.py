import threading
from collections import OrderedDict

DEFAULT_CAPACITY = 2000


class DedupIndex:
    """
    Bounded memory of envelope ids already processed by this node:
      - O(1) membership checks
      - strict insertion-order eviction once ``capacity`` is exceeded
      - re-marking an id never refreshes its position

    Very old ids can eventually be accepted again; that is the price of a
    memory bound that does not depend on traffic volume.
    """
    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._seen: "OrderedDict[str, None]" = OrderedDict()
        self._lock = threading.Lock()

    def is_duplicate(self, envelope_id: str) -> bool:
        return envelope_id in self._seen

    def mark_seen(self, envelope_id: str) -> bool:
        """Record *envelope_id*; return False if it was already present."""
        with self._lock:
            if envelope_id in self._seen:
                return False
            self._seen[envelope_id] = None
            if len(self._seen) > self.capacity:
                self._seen.popitem(last=False)
            return True

    def clear(self):
        with self._lock:
            self._seen.clear()

    def __contains__(self, envelope_id: object) -> bool:
        return envelope_id in self._seen

    def __len__(self) -> int:
        return len(self._seen)
