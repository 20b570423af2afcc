"""
操作パッケージ — 自己修復ロケーターを使った要素操作とページオブジェクト
"""

from .handler import InteractionHandler
from .page import BasePage, LocatorBuilder, LocatorDescriptor

__all__ = [
    "BasePage",
    "InteractionHandler",
    "LocatorBuilder",
    "LocatorDescriptor",
]
