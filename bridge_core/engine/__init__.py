"""转录调和引擎：send / edit / delete / regenerate 以及局部重建算法。"""

from bridge_core.engine.reconciler import ReconciliationEngine
from bridge_core.engine.rebuild import Rebuild, RebuildPlan, RebuildState, ReplayItem

__all__ = ["ReconciliationEngine", "Rebuild", "RebuildPlan", "RebuildState", "ReplayItem"]
