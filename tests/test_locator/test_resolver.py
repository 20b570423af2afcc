"""
SelfHealingResolver のテスト

一次ロケーターによる即時解決、閾値判定、自己修復と履歴の記録、
同点候補の曖昧さ報告、全候補失敗時のエラーを検証する。
"""

from __future__ import annotations

import asyncio

import pytest

from loom.config import HealingConfig
from loom.errors import LocatorNotFoundError
from loom.interaction.page import LocatorBuilder
from loom.locator.descriptor import DescriptorGenerator
from loom.locator.dom import DomSnapshot, SnapshotDom
from loom.locator.history import HealingHistory
from loom.locator.resolver import SelfHealingResolver
from loom.locator.similarity import SimilarityScorer
from loom.models import ElementInfo, EventType, LocatorCandidate, LocatorStrategy, RecordedEvent

from conftest import make_locator


class FixedScorer(SimilarityScorer):
    """常に同じ類似度を返すスコアラー。"""

    def __init__(self, value: float) -> None:
        super().__init__()
        self.value = value

    def score(self, recorded, observed) -> float:
        return self.value


class SelectorDom:
    """ロケーター値ごとに一致する要素を返すライブ DOM。"""

    def __init__(self, elements: dict[str, ElementInfo]) -> None:
        self.elements = elements
        self.asked: list[str] = []

    async def count(self, candidate: LocatorCandidate) -> int:
        self.asked.append(candidate.value)
        return 1 if candidate.value in self.elements else 0

    async def describe(self, candidate: LocatorCandidate, tracked_attributes) -> ElementInfo | None:
        return self.elements.get(candidate.value)

    async def snapshot(self) -> DomSnapshot:
        return DomSnapshot("<html><body></body></html>")


@pytest.fixture
def recorded_button(login_html):
    """記録時のログインページで生成した送信ボタンの記述子。"""
    snapshot = DomSnapshot(login_html)
    [button] = snapshot.select("//button")
    return DescriptorGenerator().generate(snapshot, button)


# ---------------------------------------------------------------------------
# 一次ロケーターのテスト
# ---------------------------------------------------------------------------

class TestPrimaryResolution:
    """一次ロケーターによる解決のテスト。"""

    @pytest.mark.asyncio
    async def test_unchanged_dom_scores_one(self, login_html, recorded_button):
        """DOM が変化していなければ score 1.0 で解決し、履歴を残さないこと。"""
        resolver = SelfHealingResolver()
        result = await resolver.resolve(
            SnapshotDom(login_html), recorded_button.element,
            recorded_button.primary, recorded_button.alternates,
        )
        assert result.candidate == recorded_button.primary
        assert result.score == 1.0
        assert result.healed is False
        assert len(resolver.history) == 0

    @pytest.mark.asyncio
    async def test_healing_disabled(self, drifted_login_html, recorded_button):
        """自己修復が無効な場合は一次ロケーターの失敗で即座にエラーになること。"""
        resolver = SelfHealingResolver(HealingConfig(enabled=False))
        with pytest.raises(LocatorNotFoundError, match="自己修復は無効") as exc_info:
            await resolver.resolve(
                SnapshotDom(drifted_login_html), recorded_button.element,
                recorded_button.primary, recorded_button.alternates,
            )
        assert [desc for desc, _ in exc_info.value.attempts] == ["id=submit-btn"]
        assert len(resolver.history) == 0


# ---------------------------------------------------------------------------
# 自己修復のテスト
# ---------------------------------------------------------------------------

class TestHealing:
    """自己修復による解決のテスト。"""

    @pytest.mark.asyncio
    async def test_heals_removed_id(self, drifted_login_html, recorded_button):
        """id が削除されたボタンを代替候補で解決し、修復記録を 1 件残すこと。"""
        resolver = SelfHealingResolver()
        result = await resolver.resolve(
            SnapshotDom(drifted_login_html), recorded_button.element,
            recorded_button.primary, recorded_button.alternates,
        )
        assert result.healed is True
        # id（重み 2）のみ不一致: 9 / 11
        assert result.score == pytest.approx(9 / 11)
        assert result.candidate.describe() == 'css=button[aria-label="Submit"]'
        assert result.ambiguity is None

        records = resolver.history.records(recorded_button.element.key)
        assert len(records) == 1
        assert records[0].accepted_candidate == result.candidate
        assert records[0].score == pytest.approx(9 / 11)
        assert records[0].attempted_candidates[0].candidate == recorded_button.primary

    @pytest.mark.asyncio
    async def test_history_is_tried_first(self, drifted_login_html, recorded_button):
        """過去に採用した候補が次回の解決で最初に評価されること。"""
        resolver = SelfHealingResolver()
        dom = SnapshotDom(drifted_login_html)
        first = await resolver.resolve(dom, recorded_button.element, recorded_button.primary, ())
        second = await resolver.resolve(dom, recorded_button.element, recorded_button.primary, ())
        assert second.attempts[1].candidate == first.candidate
        assert len(resolver.history.records(recorded_button.element.key)) == 2

    @pytest.mark.asyncio
    async def test_regenerates_without_alternates(self, drifted_login_html, recorded_button):
        """代替候補がなくても現在の DOM から候補を再生成して解決すること。"""
        resolver = SelfHealingResolver()
        result = await resolver.resolve(
            SnapshotDom(drifted_login_html), recorded_button.element, recorded_button.primary, (),
        )
        assert result.healed is True
        assert result.element.xpath == "/html/body/form/button"

    @pytest.mark.asyncio
    async def test_resolve_event(self, drifted_login_html, recorded_button):
        """記録イベントから操作対象を解決できること。"""
        event = RecordedEvent(
            sequence_number=1,
            type=EventType.CLICK,
            target=recorded_button.element,
            locator=recorded_button.primary,
            alternates=tuple(recorded_button.alternates),
        )
        result = await SelfHealingResolver().resolve_event(SnapshotDom(drifted_login_html), event)
        assert result.healed is True

    @pytest.mark.asyncio
    async def test_css_alternates_without_xpath(self):
        """等価 XPath を持たない CSS の代替ロケーターもそれぞれ評価されること。"""
        descriptor = (
            LocatorBuilder("submit", tag="button")
            .css("#old")
            .css("button.new")
            .expect(text="Submit", class_name="new")
            .build()
        )
        dom = SelectorDom({
            "button.new": ElementInfo(
                tag_name="button", class_name="new", text="Submit", xpath="/html/body/button",
            ),
        })
        result = await SelfHealingResolver().resolve(
            dom, descriptor.expected, descriptor.primary, descriptor.alternates,
        )
        assert dom.asked == ["#old", "button.new"]
        assert result.candidate.value == "button.new"
        assert result.score == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_duplicate_candidates_are_evaluated_once(self):
        """戦略と値が同じ候補は 1 回だけ評価されること。"""
        observed = ElementInfo(tag_name="button", class_name="new", text="Submit")
        dom = SelectorDom({"button.new": observed})
        candidate = LocatorCandidate(strategy=LocatorStrategy.CSS, value="button.new", confidence=0.8)
        await SelfHealingResolver().resolve(
            dom, observed, make_locator("gone"), [candidate, candidate.model_copy()],
        )
        assert dom.asked == ["gone", "button.new"]

    @pytest.mark.asyncio
    async def test_regeneration_yields_to_event_loop(self):
        """大きな DOM の再生成中も他のタスクが実行されること。"""
        rows = "".join(
            f"<p class='row'>Row {i} lorem ipsum dolor sit amet, consectetur adipiscing</p>"
            for i in range(1500)
        )
        html = f"<html><body>{rows}<button class='btn primary'>Submit</button></body></html>"
        recorded = ElementInfo(
            tag_name="button", id="submit-btn", class_name="btn primary", text="Submit",
            xpath="/html/body/button",
        )
        ticks = 0

        async def ticker():
            nonlocal ticks
            while True:
                await asyncio.sleep(0.001)
                ticks += 1

        task = asyncio.create_task(ticker())
        await asyncio.sleep(0)
        ticks = 0
        try:
            result = await SelfHealingResolver().resolve(SnapshotDom(html), recorded, make_locator(), ())
            observed_ticks = ticks
        finally:
            task.cancel()
        assert result.element.xpath == "/html/body/button"
        assert result.score == pytest.approx(5 / 7)
        assert observed_ticks > 0


# ---------------------------------------------------------------------------
# 閾値のテスト
# ---------------------------------------------------------------------------

class TestThreshold:
    """閾値判定のテスト。"""

    @pytest.mark.asyncio
    async def test_score_below_threshold(self, drifted_login_html, recorded_button):
        """閾値未満の候補は採用されないこと。"""
        resolver = SelfHealingResolver(HealingConfig(threshold=0.7), scorer=FixedScorer(0.69))
        with pytest.raises(LocatorNotFoundError, match="閾値"):
            await resolver.resolve(
                SnapshotDom(drifted_login_html), recorded_button.element,
                recorded_button.primary, recorded_button.alternates,
            )
        assert len(resolver.history) == 0

    @pytest.mark.asyncio
    async def test_score_equal_to_threshold(self, drifted_login_html, recorded_button):
        """閾値と等しい候補は採用されること。"""
        resolver = SelfHealingResolver(HealingConfig(threshold=0.7), scorer=FixedScorer(0.70))
        result = await resolver.resolve(
            SnapshotDom(drifted_login_html), recorded_button.element,
            recorded_button.primary, recorded_button.alternates,
        )
        assert result.score == pytest.approx(0.70)
        assert result.healed is True

    @pytest.mark.asyncio
    async def test_real_score_at_threshold(self):
        """類似度がちょうど閾値になる候補は丸め誤差があっても採用されること。"""
        # 0.1 を 8 回足すと 0.7999999999999999 になる
        attributes = tuple(f"data-a{i}" for i in range(6)) + ("data-z",)
        weights = {"tag": 0.1, "text": 0.1, "default": 0.1, "data-z": 0.2}
        recorded = ElementInfo(
            tag_name="button",
            text="Buy",
            attributes={name: "v" for name in attributes},
            xpath="/html/body/button",
        )
        observed = recorded.model_copy(update={
            "attributes": {**recorded.attributes, "data-z": "changed"},
        })
        scorer = SimilarityScorer(weights, attributes)
        assert scorer.score(recorded, observed) == pytest.approx(0.8)

        dom = SelectorDom({"button.buy": observed})
        resolver = SelfHealingResolver(
            HealingConfig(threshold=0.8, tracked_attributes=attributes), scorer=scorer,
        )
        alternate = LocatorCandidate(strategy=LocatorStrategy.CSS, value="button.buy", confidence=0.8)
        result = await resolver.resolve(dom, recorded, make_locator("gone"), [alternate])
        assert result.candidate == alternate
        assert result.score == pytest.approx(0.8)


# ---------------------------------------------------------------------------
# 曖昧さ・失敗のテスト
# ---------------------------------------------------------------------------

class TestAmbiguityAndFailure:
    """同点候補と全候補失敗のテスト。"""

    @pytest.mark.asyncio
    async def test_tied_nodes_are_reported(self):
        """同点の候補が別ノードに一致した場合は曖昧さが報告されること。"""
        html = "<div><button class='buy'>Buy</button><button class='buy'>Buy</button></div>"
        recorded = ElementInfo(
            tag_name="button", class_name="buy", text="Buy", xpath="/html/body/button",
        )
        primary = make_locator("buy-1")
        resolver = SelfHealingResolver()
        result = await resolver.resolve(SnapshotDom(html), recorded, primary, ())

        assert result.score == pytest.approx(1.0)
        assert result.ambiguity is not None
        assert len(result.ambiguity.candidates) == 2
        # 同じ戦略・信頼度の場合は評価順（文書順）が優先される
        assert result.element.xpath == "/html/body/div/button[1]"
        assert len(resolver.history) == 1

    @pytest.mark.asyncio
    async def test_tie_broken_by_strategy_rank(self):
        """同点の場合は戦略の優先順で候補が選ばれること。"""
        html = "<div><input name='q' class='search' title='Search'></div>"
        recorded = ElementInfo(
            tag_name="input", name="q", class_name="search", attributes={"title": "Search"},
        )
        alternates = [
            LocatorCandidate(strategy=LocatorStrategy.CLASS_NAME, value="search",
                             confidence=0.6, unique=True,
                             xpath="//*[contains(concat(' ', normalize-space(@class), ' '), ' search ')]"),
            LocatorCandidate(strategy=LocatorStrategy.CSS, value='input[title="Search"]',
                             confidence=0.75, unique=True, xpath="//input[@title='Search']"),
            LocatorCandidate(strategy=LocatorStrategy.NAME, value="q",
                             confidence=0.9, unique=True, xpath="//*[@name='q']"),
        ]
        result = await SelfHealingResolver().resolve(
            SnapshotDom(html), recorded, make_locator("gone"), alternates,
        )
        assert result.candidate.strategy == LocatorStrategy.NAME
        assert result.ambiguity is None

    @pytest.mark.asyncio
    async def test_not_found_lists_attempts(self, recorded_button):
        """全候補が失敗した場合は試行した候補とスコアを含むエラーになること。"""
        html = "<html><body><p>メンテナンス中</p></body></html>"
        resolver = SelfHealingResolver()
        with pytest.raises(LocatorNotFoundError) as exc_info:
            await resolver.resolve(
                SnapshotDom(html), recorded_button.element,
                recorded_button.primary, recorded_button.alternates,
            )
        error = exc_info.value
        assert error.element_key == "/html/body/form/button"
        described = [desc for desc, _ in error.attempts]
        assert described[0] == "id=submit-btn"
        assert len(described) >= 1 + len(recorded_button.alternates)
        assert "id=submit-btn: 一致なし" in str(error)
        assert len(resolver.history) == 0

    @pytest.mark.asyncio
    async def test_event_without_target(self):
        """操作対象のないイベントは解決できないこと。"""
        event = RecordedEvent(sequence_number=4, type=EventType.NAVIGATE, value="http://x/")
        with pytest.raises(LocatorNotFoundError, match="event#4"):
            await SelfHealingResolver().resolve_event(SnapshotDom("<p/>"), event)

    @pytest.mark.asyncio
    async def test_shared_history(self, drifted_login_html, recorded_button):
        """注入した履歴オブジェクトに修復記録が追記されること。"""
        history = HealingHistory(max_size=1)
        resolver = SelfHealingResolver(history=history)
        dom = SnapshotDom(drifted_login_html)
        for _ in range(3):
            await resolver.resolve(dom, recorded_button.element, recorded_button.primary, ())
        assert len(history) == 1
