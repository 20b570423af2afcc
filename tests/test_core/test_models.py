"""
データモデルのテスト

ElementInfo・LocatorCandidate・RecordedEvent・BrowserConfig の
検証ルールとワイヤー形式への変換を確認する。
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from loom.models import (
    STRATEGY_RANK,
    BrowserConfig,
    ElementInfo,
    EventType,
    LocatorCandidate,
    LocatorStrategy,
    RecordedEvent,
    SessionStatus,
)

from conftest import make_event, make_locator, make_target


class TestElementInfo:
    """ElementInfo のテスト。"""

    def test_tag_is_lowercased(self):
        assert ElementInfo(tag_name="BUTTON").tag_name == "button"

    def test_empty_tag_is_rejected(self):
        """空のタグ名は拒否されること。"""
        with pytest.raises(ValidationError):
            ElementInfo(tag_name="  ")

    def test_key_prefers_xpath(self):
        """キーは XPath → CSS → タグ名の順に決まること。"""
        assert ElementInfo(tag_name="a", xpath="/html/body/a", css="a.x").key == "/html/body/a"
        assert ElementInfo(tag_name="a", css="a.x").key == "a.x"
        assert ElementInfo(tag_name="a").key == "a"

    def test_feature_lookup(self):
        """特徴値の取得で空値と未指定タグが None になること。"""
        info = ElementInfo(
            tag_name="*", id="", class_name="btn", attributes={"title": "t", "href": " "},
        )
        assert info.feature("tag") is None
        assert info.feature("id") is None
        assert info.feature("class") == "btn"
        assert info.feature("title") == "t"
        assert info.feature("href") is None

    def test_wire_format_is_camel_case(self):
        """ワイヤー形式が camelCase で None を含まないこと。"""
        wire = ElementInfo(tag_name="button", class_name="btn").to_wire()
        assert wire["tagName"] == "button"
        assert wire["className"] == "btn"
        assert "id" not in wire

    def test_accepts_alias_and_field_name(self):
        assert ElementInfo(tagName="a").tag_name == "a"
        assert ElementInfo(tag_name="a").tag_name == "a"


class TestLocatorCandidate:
    """LocatorCandidate のテスト。"""

    @pytest.mark.parametrize("confidence", [-0.1, 1.1])
    def test_confidence_range(self, confidence):
        """信頼度は 0.0〜1.0 の範囲であること。"""
        with pytest.raises(ValidationError):
            LocatorCandidate(strategy=LocatorStrategy.ID, value="x", confidence=confidence)

    def test_describe(self):
        assert make_locator("ok").describe() == "id=ok"

    def test_strategy_rank_covers_all_strategies(self):
        """全戦略に優先順位が定義され、id が最優先であること。"""
        assert set(STRATEGY_RANK) == set(LocatorStrategy)
        assert min(STRATEGY_RANK, key=STRATEGY_RANK.get) == LocatorStrategy.ID


class TestRecordedEvent:
    """RecordedEvent の検証ルールのテスト。"""

    def test_click_requires_target(self):
        """click イベントは target が必須であること。"""
        with pytest.raises(ValidationError, match="target"):
            RecordedEvent(sequence_number=1, type=EventType.CLICK)

    def test_navigate_without_target(self):
        event = RecordedEvent(sequence_number=1, type=EventType.NAVIGATE, value="http://x/")
        assert event.target is None
        assert event.candidates == ()

    def test_target_requires_unique_candidate(self):
        """一意な候補がない場合は ambiguous の指定が必要であること。"""
        shared = LocatorCandidate(
            strategy=LocatorStrategy.CLASS_NAME, value="btn", confidence=0.3, unique=False,
        )
        with pytest.raises(ValidationError, match="ambiguous"):
            RecordedEvent(sequence_number=1, type=EventType.CLICK, target=make_target(), locator=shared)
        event = RecordedEvent(
            sequence_number=1, type=EventType.CLICK, target=make_target(),
            locator=shared, ambiguous=True,
        )
        assert event.ambiguous is True

    def test_sequence_number_starts_at_one(self):
        with pytest.raises(ValidationError):
            make_event(0)

    def test_events_are_immutable(self):
        """記録イベントは不変であること。"""
        event = make_event(1)
        with pytest.raises(ValidationError):
            event.value = "changed"

    def test_candidates_order(self):
        """candidates が一次 → 代替の順で返されること。"""
        alt = LocatorCandidate(
            strategy=LocatorStrategy.TEXT, value="Submit", confidence=0.65, unique=True,
        )
        event = make_event(1).model_copy(update={"alternates": (alt,)})
        assert [c.strategy for c in event.candidates] == [LocatorStrategy.ID, LocatorStrategy.TEXT]

    def test_round_trip_through_wire(self):
        """ワイヤー形式から同じイベントが復元できること。"""
        event = make_event(3, timestamp=1000.0)
        restored = RecordedEvent.model_validate(event.to_wire())
        assert restored == event


class TestBrowserConfig:
    """BrowserConfig の検証テスト。"""

    def test_defaults(self):
        config = BrowserConfig()
        assert config.browser_type == "chromium"
        assert (config.viewport_width, config.viewport_height) == (1280, 720)

    @pytest.mark.parametrize("fields", [
        {"browser_type": "ie"},
        {"viewport_width": 0},
        {"base_url": "ftp://example.com"},
        {"base_url": "not a url"},
    ])
    def test_invalid(self, fields):
        """不正なブラウザ設定は拒否されること。"""
        with pytest.raises(ValidationError):
            BrowserConfig(**fields)


class TestSessionStatus:
    """SessionStatus のテスト。"""

    def test_terminal_states(self):
        terminal = {s for s in SessionStatus if s.is_terminal}
        assert terminal == {SessionStatus.COMPLETED, SessionStatus.ERROR}
