"""
ロケーターパッケージ — 候補生成・類似度計算・自己修復リゾルバー
"""

from .descriptor import DescriptorGenerator, ElementDescriptor
from .dom import DomSnapshot, LiveDom, SnapshotDom
from .history import HealingHistory
from .resolver import Resolution, SelfHealingResolver
from .similarity import SimilarityScorer

__all__ = [
    "DescriptorGenerator",
    "DomSnapshot",
    "ElementDescriptor",
    "HealingHistory",
    "LiveDom",
    "Resolution",
    "SelfHealingResolver",
    "SimilarityScorer",
    "SnapshotDom",
]
