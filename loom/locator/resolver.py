"""
Self-Healing Locator Resolver — スコア付きフォールバックによる要素の再解決

記録済みの ElementInfo と候補から、現在の DOM 上の要素を解決する。

主な機能:
  - 一次ロケーターが一意に一致すれば score 1.0 で即時に返す（修復記録なし）
  - 自己修復が無効な場合は一次ロケーターの失敗で即座にエラー
  - 修復: 過去の採用候補 → 保存済み代替候補 → 現在の DOM から再生成した候補
    の順に評価し、閾値以上かつ一意な候補を採用
  - 同点の候補が別ノードに一致した場合は戦略の優先順で決定し、曖昧さとして報告
  - 採用時に HealingRecord を履歴に追記
  - 全候補失敗時は試行した候補とスコアを含む LocatorNotFoundError
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, field
from typing import Optional, Sequence

from ..config import HealingConfig
from ..errors import AmbiguousMatchError, LocatorNotFoundError
from ..models import (
    STRATEGY_RANK,
    ElementInfo,
    HealingRecord,
    LocatorCandidate,
    RecordedEvent,
    ScoredCandidate,
)
from .descriptor import DescriptorGenerator
from .dom import DomSnapshot, LiveDom
from .history import HealingHistory
from .similarity import SimilarityScorer

logger = logging.getLogger(__name__)

# 再生成の対象とするノード数の上限
MAX_REGENERATED_NODES = 20

# 浮動小数点の丸め誤差を吸収する許容差（閾値判定と同点判定に使用）
SCORE_TOLERANCE = 1e-9


# ---------------------------------------------------------------------------
# 解決結果
# ---------------------------------------------------------------------------

@dataclass
class Resolution:
    """要素解決の結果。

    Attributes:
        candidate: 採用したロケーター
        score: 類似度（一次ロケーターで解決した場合は 1.0）
        healed: 自己修復によって解決したか
        element: 解決した要素の ElementInfo（取得できた場合）
        ambiguity: 同点候補が存在した場合の報告
        attempts: 評価した候補とスコア
    """

    candidate: LocatorCandidate
    score: float
    healed: bool = False
    element: Optional[ElementInfo] = None
    ambiguity: Optional[AmbiguousMatchError] = None
    attempts: list[ScoredCandidate] = field(default_factory=list)


@dataclass
class _Scored:
    candidate: LocatorCandidate
    element: ElementInfo
    score: float


# ---------------------------------------------------------------------------
# SelfHealingResolver 本体
# ---------------------------------------------------------------------------

class SelfHealingResolver:
    """記録済み要素を現在の DOM 上で解決する。

    使用例::

        resolver = SelfHealingResolver(HealingConfig(threshold=0.7))
        resolution = await resolver.resolve_event(PlaywrightDom(page), event)
        await page.locator(to_playwright_selector(resolution.candidate)).click()
    """

    def __init__(
        self,
        config: Optional[HealingConfig] = None,
        history: Optional[HealingHistory] = None,
        scorer: Optional[SimilarityScorer] = None,
        generator: Optional[DescriptorGenerator] = None,
    ) -> None:
        """SelfHealingResolver を初期化する。

        Args:
            config: 自己修復の設定
            history: 修復履歴（省略時は config.history_size で新規作成）
            scorer: 類似度計算（省略時は config の重みで新規作成）
            generator: 候補の再生成に使用する DescriptorGenerator
        """
        self._config = config or HealingConfig()
        self._history = history or HealingHistory(self._config.history_size)
        self._scorer = scorer or SimilarityScorer(
            self._config.weights, self._config.tracked_attributes,
        )
        self._generator = generator or DescriptorGenerator(
            self._config.tracked_attributes, self._config.max_alternates,
        )

    @property
    def history(self) -> HealingHistory:
        return self._history

    @property
    def config(self) -> HealingConfig:
        return self._config

    # -------------------------------------------------------------------
    # パブリック API
    # -------------------------------------------------------------------

    async def resolve_event(self, dom: LiveDom, event: RecordedEvent) -> Resolution:
        """記録イベントの操作対象を解決する。

        Raises:
            LocatorNotFoundError: イベントに操作対象がない、または解決に失敗した場合
        """
        if event.target is None:
            raise LocatorNotFoundError(f"event#{event.sequence_number}", reason="操作対象がありません")
        return await self.resolve(dom, event.target, event.locator, event.alternates)

    async def resolve(
        self,
        dom: LiveDom,
        recorded: ElementInfo,
        primary: Optional[LocatorCandidate],
        alternates: Sequence[LocatorCandidate] = (),
    ) -> Resolution:
        """記録済み要素を解決する。

        Args:
            dom: 評価対象の DOM
            recorded: 記録時の要素情報
            primary: 一次ロケーター
            alternates: 保存済みの代替ロケーター

        Returns:
            解決結果

        Raises:
            LocatorNotFoundError: 閾値以上で一意に一致する候補がない場合
        """
        key = recorded.key
        attempts: list[ScoredCandidate] = []

        if primary is not None:
            matches = await dom.count(primary)
            if matches == 1:
                logger.debug("一次ロケーターで解決しました: %s", primary.describe())
                return Resolution(candidate=primary, score=1.0, healed=False)
            attempts.append(ScoredCandidate(candidate=primary, matches=matches))
            logger.info(
                "一次ロケーターが一意に一致しません（%d 件）: %s", matches, primary.describe(),
            )

        if not self._config.enabled:
            raise LocatorNotFoundError(
                key, _describe_attempts(attempts), reason="自己修復は無効です",
            )

        scored = await self._evaluate(dom, recorded, self._history.healed_candidates(key), attempts)
        scored += await self._evaluate(dom, recorded, alternates, attempts)
        scored += await self._evaluate(dom, recorded, await self._regenerate(dom, recorded), attempts)

        accepted = [s for s in scored if s.score >= self._config.threshold - SCORE_TOLERANCE]
        if not accepted:
            raise LocatorNotFoundError(
                key, _describe_attempts(attempts),
                reason=f"閾値 {self._config.threshold} 以上の候補がありません",
            )

        best_score = max(s.score for s in accepted)
        top = [s for s in accepted if math.isclose(s.score, best_score, abs_tol=SCORE_TOLERANCE)]
        top.sort(key=lambda s: (STRATEGY_RANK[s.candidate.strategy], -s.candidate.confidence))
        winner = top[0]

        ambiguity = None
        nodes = {s.element.xpath for s in top}
        if len(nodes) > 1:
            ambiguity = AmbiguousMatchError(key, best_score, [s.candidate.describe() for s in top])
            logger.warning("%s（%s を採用）", ambiguity, winner.candidate.describe())

        self._history.append(HealingRecord(
            element_key=key,
            attempted_candidates=tuple(attempts),
            accepted_candidate=winner.candidate,
            score=winner.score,
        ))
        logger.info(
            "自己修復で解決しました: %s → %s (score=%.3f)",
            key, winner.candidate.describe(), winner.score,
        )
        return Resolution(
            candidate=winner.candidate,
            score=winner.score,
            healed=True,
            element=winner.element,
            ambiguity=ambiguity,
            attempts=attempts,
        )

    # -------------------------------------------------------------------
    # 内部処理
    # -------------------------------------------------------------------

    async def _evaluate(
        self,
        dom: LiveDom,
        recorded: ElementInfo,
        candidates: Sequence[LocatorCandidate],
        attempts: list[ScoredCandidate],
    ) -> list[_Scored]:
        """候補を評価し、一意に一致したものの類似度を返す。

        評価済みの候補（戦略と値、または等価 XPath が同じもの）はスキップする。
        """
        tried: set[str] = set()
        for attempt in attempts:
            tried |= attempt.candidate.identity_keys()
        scored: list[_Scored] = []
        for candidate in candidates:
            keys = candidate.identity_keys()
            if keys & tried:
                continue
            tried |= keys

            matches = await dom.count(candidate)
            if matches != 1:
                attempts.append(ScoredCandidate(candidate=candidate, matches=matches))
                continue
            observed = await dom.describe(candidate, self._config.tracked_attributes)
            if observed is None:
                attempts.append(ScoredCandidate(candidate=candidate, matches=0))
                continue

            score = self._scorer.score(recorded, observed)
            attempts.append(ScoredCandidate(candidate=candidate, matches=1, score=score))
            logger.debug("候補を評価しました: %s score=%.3f", candidate.describe(), score)
            scored.append(_Scored(candidate, observed, score))
        return scored

    async def _regenerate(self, dom: LiveDom, recorded: ElementInfo) -> list[LocatorCandidate]:
        """現在の DOM から記録要素と特徴が重なるノードの候補を生成する。

        全ノードの走査は別スレッドで行い、その間もイベントループは他のタスクを処理する。
        """
        snapshot = await dom.snapshot()
        candidates = await asyncio.to_thread(self._regenerate_from, snapshot, recorded)
        logger.debug("候補を再生成しました: %s (%d 件)", recorded.key, len(candidates))
        return candidates

    def _regenerate_from(self, snapshot: DomSnapshot, recorded: ElementInfo) -> list[LocatorCandidate]:
        """類似度の高い順に最大 MAX_REGENERATED_NODES ノードを対象とし、
        ノードごとに信頼度が最も高い一意な候補を 1 つ返す。
        """
        tracked = self._config.tracked_attributes
        ranked = []
        for element in snapshot.elements():
            info = snapshot.element_info(element, tracked, include_css=False)
            if not self._scorer.overlaps(recorded, info):
                continue
            ranked.append((self._scorer.score(recorded, info), element))
        ranked.sort(key=lambda pair: pair[0], reverse=True)

        candidates: list[LocatorCandidate] = []
        for _, element in ranked[:MAX_REGENERATED_NODES]:
            unique = [c for c in self._generator.candidates_for(snapshot, element) if c.unique]
            if unique:
                candidates.append(unique[0])
        return candidates


def _describe_attempts(attempts: Sequence[ScoredCandidate]) -> list[tuple[str, float | None]]:
    return [(a.candidate.describe(), a.score) for a in attempts]
