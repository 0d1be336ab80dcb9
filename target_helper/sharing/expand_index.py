"""
Process wide trading-partner expand-index.

Loaded lazily on first use and then shared by every job. Entries can go
stale while the process runs; call ``invalidate()`` to force the next reader
to reload.
"""

import asyncio
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

from target_helper.shared.observability import get_logger
from target_helper.store.base import NotFoundError, ResourceStore
from target_helper.store.tree import (
    COI_HOLDERS_EXPAND_INDEX,
    TRADING_PARTNERS_EXPAND_INDEX,
)

logger = get_logger(__name__)


def _strip_reserved(index: Any) -> Dict[str, Any]:
    if not isinstance(index, dict):
        return {}
    return {k: v for k, v in index.items() if not k.startswith("_")}


class ExpandIndexCache:
    """Memoized load cell for the trading-partner and coi-holder expand-indexes."""

    def __init__(self, store: ResourceStore):
        self.store = store
        self._lock = asyncio.Lock()
        self._value: Optional[Mapping[str, Mapping[str, Any]]] = None
        self.loads = 0

    @property
    def loaded(self) -> bool:
        return self._value is not None

    async def get(self) -> Mapping[str, Mapping[str, Any]]:
        if self._value is not None:
            return self._value
        async with self._lock:
            if self._value is None:
                self._value = await self._load()
        return self._value

    async def _load(self) -> Mapping[str, Mapping[str, Any]]:
        logger.info("expand_index_loading")
        indexes: Dict[str, Mapping[str, Any]] = {}
        for name, path in (
            ("coi-holders", COI_HOLDERS_EXPAND_INDEX),
            ("trading-partners", TRADING_PARTNERS_EXPAND_INDEX),
        ):
            try:
                data = await self.store.get(path)
            except NotFoundError:
                logger.warning("expand_index_missing", index=name, path=path)
                data = {}
            indexes[name] = MappingProxyType(_strip_reserved(data))
        self.loads += 1
        logger.info(
            "expand_index_loaded",
            trading_partners=len(indexes["trading-partners"]),
            coi_holders=len(indexes["coi-holders"]),
        )
        return MappingProxyType(indexes)

    def invalidate(self) -> None:
        self._value = None
        logger.info("expand_index_invalidated")
