from .expand_index import ExpandIndexCache
from .planner import LOOKUP_RULES, Share, ShareFanoutPlanner

__all__ = ["ExpandIndexCache", "LOOKUP_RULES", "Share", "ShareFanoutPlanner"]
