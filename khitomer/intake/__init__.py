"""Task intake from the tracker."""

from khitomer.intake.poller import (
    DedupStore,
    JsonFileDedupStore,
    MemoryDedupStore,
    Poller,
    is_new_ticket,
)

__all__ = ["DedupStore", "JsonFileDedupStore", "MemoryDedupStore", "Poller", "is_new_ticket"]
