"""
データモデル — 記録セッション・イベント・要素情報・ロケーター候補

記録パイプラインと自己修復リゾルバーで共有する Pydantic v2 モデルを定義する。
ワイヤー形式（チャネルの JSON・エクスポート YAML）では camelCase の
エイリアスで直列化し、入力はエイリアス・フィールド名のどちらも受け付ける。

主な機能:
  - ElementInfo: 操作対象要素のスナップショット（追跡属性のみ保持）
  - LocatorCandidate: 戦略・値・信頼度・一意性を持つロケーター候補
  - RecordedEvent: シーケンス番号付きの記録イベント（不変）
  - RecordingSession: 記録セッション（Session Manager が排他的に所有）
  - HealingRecord: 自己修復の試行記録
  - BrowserConfig: セッション開始時のブラウザ設定（検証付き）
"""

from __future__ import annotations

import time
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Literal, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


# ---------------------------------------------------------------------------
# 列挙型
# ---------------------------------------------------------------------------

class EventType(str, Enum):
    """記録イベントの種別。"""

    CLICK = "click"
    TYPE = "type"
    NAVIGATE = "navigate"
    SELECT = "select"
    ASSERTION = "assertion"
    WAIT = "wait"
    CUSTOM = "custom"


# 操作対象要素を必須とするイベント種別
TARGETED_EVENT_TYPES = frozenset({
    EventType.CLICK,
    EventType.TYPE,
    EventType.SELECT,
    EventType.ASSERTION,
})


class SessionStatus(str, Enum):
    """記録セッションの状態。"""

    IDLE = "Idle"
    STARTING = "Starting"
    RECORDING = "Recording"
    STOPPING = "Stopping"
    COMPLETED = "Completed"
    ERROR = "Error"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.ERROR)


class LocatorStrategy(str, Enum):
    """ロケーター戦略。"""

    ID = "id"
    CSS = "css"
    XPATH = "xpath"
    NAME = "name"
    CLASS_NAME = "className"
    TAG_NAME = "tagName"
    LINK_TEXT = "linkText"
    TEXT = "text"


# 同点時の優先順位（小さいほど優先）
STRATEGY_RANK: dict[LocatorStrategy, int] = {
    LocatorStrategy.ID: 0,
    LocatorStrategy.NAME: 1,
    LocatorStrategy.CSS: 2,
    LocatorStrategy.CLASS_NAME: 3,
    LocatorStrategy.LINK_TEXT: 4,
    LocatorStrategy.TEXT: 5,
    LocatorStrategy.XPATH: 6,
    LocatorStrategy.TAG_NAME: 7,
}


# ---------------------------------------------------------------------------
# 基底モデル
# ---------------------------------------------------------------------------

class _WireModel(BaseModel):
    """camelCase エイリアスで直列化する不変モデルの基底クラス。"""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    def to_wire(self) -> dict:
        """ワイヤー形式（camelCase, JSON 互換）の辞書に変換する。"""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# 要素・ロケーター
# ---------------------------------------------------------------------------

class ElementInfo(_WireModel):
    """操作対象要素のスナップショット。

    Attributes:
        tag_name: タグ名（小文字）
        id: id 属性
        name: name 属性
        class_name: class 属性（空白区切り）
        text: 表示テキスト（空白を正規化済み）
        xpath: 絶対 XPath
        css: 構造的 CSS セレクタ
        attributes: 追跡対象の属性（名前 → 値）
    """

    tag_name: str
    id: Optional[str] = None
    name: Optional[str] = None
    class_name: Optional[str] = None
    text: Optional[str] = None
    xpath: str = ""
    css: str = ""
    attributes: dict[str, str] = Field(default_factory=dict)

    @field_validator("tag_name")
    @classmethod
    def _lower_tag(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("tag_name は空にできません")
        return v.strip().lower()

    @property
    def key(self) -> str:
        """修復履歴で要素を識別するキー。"""
        return self.xpath or self.css or self.tag_name

    @property
    def class_tokens(self) -> frozenset[str]:
        return frozenset((self.class_name or "").split())

    def feature(self, name: str) -> Optional[str]:
        """類似度計算で使用する特徴値を返す。

        Args:
            name: 特徴名（"tag", "text", "class" または属性名）

        Returns:
            特徴値（存在しない、または空の場合は None）
        """
        if name == "tag":
            # "*" はタグ未指定（ページオブジェクトの記述子など）
            value = None if self.tag_name == "*" else self.tag_name
        elif name == "text":
            value = self.text
        elif name == "class":
            value = self.class_name
        elif name == "id":
            value = self.id
        elif name == "name":
            value = self.name
        else:
            value = self.attributes.get(name)
        if value is None or not str(value).strip():
            return None
        return value


class LocatorCandidate(_WireModel):
    """ロケーター候補。

    Attributes:
        strategy: ロケーター戦略
        value: 戦略に応じたロケーター値
        confidence: 生成時の信頼度（0.0〜1.0）
        unique: 生成時のスナップショットで一意に解決できたか
        xpath: オフラインのスナップショットで評価するための等価 XPath
    """

    strategy: LocatorStrategy
    value: str
    confidence: float = Field(ge=0.0, le=1.0)
    unique: bool = False
    xpath: str = ""

    def describe(self) -> str:
        return f"{self.strategy.value}={self.value}"

    def identity_keys(self) -> frozenset[str]:
        """同じ候補かを判定するキー。

        戦略と値の組に加え、等価 XPath を持つ場合はその XPath も含む。
        XPath を持たない候補（ライブ DOM 専用の CSS など）は戦略と値だけで比較する。
        """
        keys = {self.describe()}
        if self.xpath:
            keys.add(f"{LocatorStrategy.XPATH.value}={self.xpath}")
        return frozenset(keys)


class ScoredCandidate(_WireModel):
    """修復時に評価した候補とその結果。

    Attributes:
        candidate: 評価した候補
        matches: 一致したノード数
        score: 類似度（一意に一致しなかった場合は None）
    """

    candidate: LocatorCandidate
    matches: int = 0
    score: Optional[float] = None


class HealingRecord(_WireModel):
    """自己修復の試行記録。

    Attributes:
        element_key: 対象要素のキー（ElementInfo.key）
        attempted_candidates: 試行した候補とスコア
        accepted_candidate: 採用した候補（なければ None）
        score: 採用した候補の類似度
        timestamp: 記録時刻（UTC）
    """

    element_key: str
    attempted_candidates: tuple[ScoredCandidate, ...] = ()
    accepted_candidate: Optional[LocatorCandidate] = None
    score: float = 0.0
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ---------------------------------------------------------------------------
# 記録イベント
# ---------------------------------------------------------------------------

def _now_ms() -> float:
    return time.time() * 1000.0


class RecordedEvent(_WireModel):
    """記録された単一のブラウザ操作。

    操作対象を持つイベントは、一意な候補を 1 つ以上持つか
    ambiguous フラグが立っていなければならない。

    Attributes:
        id: イベント ID
        sequence_number: セッション内のシーケンス番号（1 始まり）
        timestamp: 発生時刻（エポックミリ秒）
        type: イベント種別
        target: 操作対象要素（navigate / wait では省略可）
        value: 入力値・選択値など
        screenshot: スクリーンショット（base64 またはパス）
        url: 発生時のページ URL
        locator: 一次ロケーター
        alternates: 代替ロケーター（信頼度の降順）
        ambiguous: 一意な候補を生成できなかったか
    """

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    sequence_number: int = Field(ge=1)
    timestamp: float = Field(default_factory=_now_ms)
    type: EventType
    target: Optional[ElementInfo] = None
    value: Optional[str] = None
    screenshot: Optional[str] = None
    url: Optional[str] = None
    locator: Optional[LocatorCandidate] = None
    alternates: tuple[LocatorCandidate, ...] = ()
    ambiguous: bool = False

    @model_validator(mode="after")
    def _check_target(self) -> "RecordedEvent":
        if self.type in TARGETED_EVENT_TYPES and self.target is None:
            raise ValueError(f"{self.type.value} イベントには target が必要です")
        if self.target is not None and not self.ambiguous:
            candidates = [self.locator, *self.alternates] if self.locator else list(self.alternates)
            if not any(c.unique for c in candidates):
                raise ValueError("一意な候補がない場合は ambiguous を指定してください")
        return self

    @property
    def candidates(self) -> tuple[LocatorCandidate, ...]:
        """一次ロケーターと代替ロケーターを順に返す。"""
        if self.locator is None:
            return self.alternates
        return (self.locator, *self.alternates)


# ---------------------------------------------------------------------------
# セッション
# ---------------------------------------------------------------------------

BrowserType = Literal["chromium", "chrome", "msedge", "firefox", "webkit"]


class BrowserConfig(_WireModel):
    """セッション開始時のブラウザ設定。

    Attributes:
        browser_type: ブラウザ種別
        headless: ヘッドレスで起動するか
        viewport_width: ビューポート幅
        viewport_height: ビューポート高さ
        base_url: 記録開始 URL（http / https のみ）
    """

    browser_type: BrowserType = "chromium"
    headless: bool = False
    viewport_width: int = Field(default=1280, gt=0)
    viewport_height: int = Field(default=720, gt=0)
    base_url: Optional[str] = None

    @field_validator("base_url")
    @classmethod
    def _check_base_url(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        parsed = urlparse(v)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"base_url は http(s) の URL で指定してください: {v}")
        return v


class BrowserContextInfo(_WireModel):
    """記録中ブラウザのコンテキスト情報。"""

    browser_type: str = "chromium"
    user_agent: str = ""


class RecordingSession(BaseModel):
    """記録セッション。

    Session Manager が排他的に所有し、外部には複製を返す。
    Completed / Error に到達した後は変更されない。
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    project_id: str
    status: SessionStatus = SessionStatus.IDLE
    start_time: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    end_time: Optional[datetime] = None
    browser_context: BrowserContextInfo = Field(default_factory=BrowserContextInfo)
    browser_config: BrowserConfig = Field(default_factory=BrowserConfig)
    events: list[RecordedEvent] = Field(default_factory=list)
    error: Optional[str] = None
