from .listwatch import ListItem, ListWatcher
from .reaper import PendingJobReaper
from .watchers import AsnWatcher, DocumentWatcher, PartnerWatchRegistry

__all__ = [
    "AsnWatcher",
    "DocumentWatcher",
    "ListItem",
    "ListWatcher",
    "PartnerWatchRegistry",
    "PendingJobReaper",
]
