from .base import Change, NotFoundError, ResourceStore, StoreError, Watch
from .http import HttpResourceStore
from .memory import InMemoryResourceStore

__all__ = [
    "Change",
    "HttpResourceStore",
    "InMemoryResourceStore",
    "NotFoundError",
    "ResourceStore",
    "StoreError",
    "Watch",
]
