"""
類似度計算 — 記録済み要素と候補要素の重み付き類似度

記録時の ElementInfo に存在する特徴ごとに重み w と類似度 s を求め、
score = Σ w·s / Σ w を返す。記録要素に存在しない特徴は分母に含めない。

特徴ごとの既定値:
  - id, name, data-testid: 重み 2.0、完全一致のみ（1 または 0）
  - class: 重み 2.0、クラストークンの Jaccard 係数
  - text: 重み 2.0、文字列類似度
  - tag: 重み 1.0、完全一致のみ
  - その他の追跡属性: 重み 1.0、文字列類似度

文字列類似度: 完全一致 1.0、大文字小文字を無視して一致 0.9、
一方が他方を含む 0.7、それ以外は difflib.SequenceMatcher の一致率。
候補の絞り込みでは一致率の上限値で先に足切りする。
"""

from __future__ import annotations

from difflib import SequenceMatcher
from typing import Mapping, Optional, Sequence

from ..config import DEFAULT_TRACKED_ATTRIBUTES, DEFAULT_WEIGHTS
from ..models import ElementInfo

_EXACT_FEATURES = frozenset({"id", "name", "data-testid", "tag"})

# overlaps() で重なりとみなす文字列類似度
_OVERLAP_MINIMUM = 0.7


def string_similarity(a: Optional[str], b: Optional[str], minimum: float = 0.0) -> float:
    """2 つの文字列の類似度（0.0〜1.0）を返す。

    Args:
        a: 記録時の値
        b: 観測した値
        minimum: この値に届かないことが上限値から判明した場合は 0.0 を返す
    """
    if a is None or b is None:
        return 0.0
    if a == b:
        return 1.0
    if not a or not b:
        return 0.0
    la, lb = a.lower(), b.lower()
    if la == lb:
        return 0.9
    if la in lb or lb in la:
        return 0.7
    matcher = SequenceMatcher(None, a, b, autojunk=False)
    if minimum > 0.0 and (matcher.real_quick_ratio() < minimum or matcher.quick_ratio() < minimum):
        return 0.0
    return matcher.ratio()


def jaccard(a: frozenset[str], b: frozenset[str]) -> float:
    """2 つの集合の Jaccard 係数を返す。"""
    if not a and not b:
        return 1.0
    return len(a & b) / len(a | b)


class SimilarityScorer:
    """記録済み要素と観測要素の重み付き類似度を計算する。"""

    def __init__(
        self,
        weights: Optional[Mapping[str, float]] = None,
        tracked_attributes: Sequence[str] = DEFAULT_TRACKED_ATTRIBUTES,
    ) -> None:
        """SimilarityScorer を初期化する。

        Args:
            weights: 特徴名 → 重み（"default" はその他の属性に適用）
            tracked_attributes: 比較対象とする属性名
        """
        merged = dict(DEFAULT_WEIGHTS)
        if weights:
            merged.update(weights)
        self._weights = merged
        self._tracked = tuple(tracked_attributes)

    def weight(self, feature: str) -> float:
        return self._weights.get(feature, self._weights.get("default", 1.0))

    def features(self, recorded: ElementInfo) -> list[str]:
        """記録要素に存在する特徴名を返す。"""
        names = ["tag", "text"]
        names.extend(a for a in self._tracked if a not in names)
        return [name for name in names if recorded.feature(name) is not None]

    def feature_similarity(
        self, feature: str, recorded: ElementInfo, observed: ElementInfo, minimum: float = 0.0,
    ) -> float:
        """1 つの特徴について類似度を返す（minimum は文字列類似度の足切り値）。"""
        if feature == "class":
            return jaccard(recorded.class_tokens, observed.class_tokens)
        expected = recorded.feature(feature)
        actual = observed.feature(feature)
        if feature in _EXACT_FEATURES:
            return 1.0 if expected is not None and expected == actual else 0.0
        return string_similarity(expected, actual, minimum)

    def breakdown(self, recorded: ElementInfo, observed: ElementInfo) -> dict[str, tuple[float, float]]:
        """特徴ごとの (重み, 類似度) を返す。"""
        return {
            feature: (self.weight(feature), self.feature_similarity(feature, recorded, observed))
            for feature in self.features(recorded)
        }

    def score(self, recorded: ElementInfo, observed: ElementInfo) -> float:
        """重み付き類似度（0.0〜1.0）を返す。

        Args:
            recorded: 記録時の要素情報
            observed: 現在の DOM で観測した要素情報

        Returns:
            類似度。記録要素に比較可能な特徴がない場合は 0.0
        """
        parts = self.breakdown(recorded, observed)
        total = sum(w for w, _ in parts.values())
        if total <= 0:
            return 0.0
        return sum(w * s for w, s in parts.values()) / total

    def overlaps(self, recorded: ElementInfo, observed: ElementInfo) -> bool:
        """タグ以外の特徴が 1 つでも重なるかを判定する。

        class は共通トークンが 1 つ以上、その他は類似度 0.7 以上を重なりとみなす。
        完全一致の特徴と class を先に判定し、文字列類似度は最後に計算する。
        """
        features = sorted(
            self.features(recorded),
            key=lambda name: name not in _EXACT_FEATURES and name != "class",
        )
        for feature in features:
            if feature == "tag":
                continue
            similarity = self.feature_similarity(feature, recorded, observed, minimum=_OVERLAP_MINIMUM)
            if feature == "class":
                if similarity > 0.0:
                    return True
            elif similarity >= _OVERLAP_MINIMUM:
                return True
        return False
