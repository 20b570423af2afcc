"""
テスト共通フィクスチャ・Hypothesis ストラテジー定義

全テストモジュールで共有するフィクスチャ、イベント生成ヘルパー、
データ生成器を提供する。
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import pytest
from hypothesis import strategies as st

from loom.models import ElementInfo, EventType, LocatorCandidate, LocatorStrategy, RecordedEvent


# ---------------------------------------------------------------------------
# サンプル HTML
# ---------------------------------------------------------------------------

LOGIN_PAGE_HTML = """\
<html>
  <head><title>ログイン</title></head>
  <body>
    <form id="login-form" class="form">
      <input id="email" name="email" type="email" placeholder="メールアドレス">
      <input id="password" name="password" type="password" placeholder="パスワード">
      <select name="lang"><option value="ja">日本語</option><option value="en">English</option></select>
      <button id="submit-btn" class="btn primary" type="submit" title="Submit form"
              aria-label="Submit" value="go">Submit</button>
    </form>
    <nav>
      <a href="/help" class="link">ヘルプ</a>
      <a href="/terms" class="link">利用規約</a>
    </nav>
  </body>
</html>
"""

# 送信ボタンの id だけが削除されたページ
LOGIN_PAGE_DRIFTED_HTML = LOGIN_PAGE_HTML.replace('id="submit-btn" ', "")


@pytest.fixture
def login_html() -> str:
    """ログインページの HTML。"""
    return LOGIN_PAGE_HTML


@pytest.fixture
def drifted_login_html() -> str:
    """送信ボタンの id が削除されたログインページの HTML。"""
    return LOGIN_PAGE_DRIFTED_HTML


@pytest.fixture
def tmp_dir(tmp_path: Path) -> Path:
    """一時ディレクトリを提供する pytest フィクスチャ。"""
    return tmp_path


# ---------------------------------------------------------------------------
# イベント生成ヘルパー
# ---------------------------------------------------------------------------

def make_target(element_id: str = "submit-btn", tag: str = "button") -> ElementInfo:
    """テスト用の ElementInfo を生成する。"""
    return ElementInfo(
        tag_name=tag,
        id=element_id,
        class_name="btn primary",
        text="Submit",
        xpath=f"/html/body/{tag}",
    )


def make_locator(element_id: str = "submit-btn") -> LocatorCandidate:
    """テスト用の一意な id ロケーターを生成する。"""
    return LocatorCandidate(
        strategy=LocatorStrategy.ID,
        value=element_id,
        confidence=1.0,
        unique=True,
        xpath=f"//*[@id='{element_id}']",
    )


def make_event(
    sequence: int,
    event_type: EventType = EventType.CLICK,
    timestamp: Optional[float] = None,
) -> RecordedEvent:
    """テスト用の RecordedEvent を生成する。"""
    fields: dict = {"sequence_number": sequence, "type": event_type}
    if timestamp is not None:
        fields["timestamp"] = timestamp
    if event_type not in (EventType.NAVIGATE, EventType.WAIT):
        fields["target"] = make_target()
        fields["locator"] = make_locator()
    else:
        fields["value"] = "http://localhost/"
    return RecordedEvent(**fields)


# ---------------------------------------------------------------------------
# Hypothesis ストラテジー
# ---------------------------------------------------------------------------

# シーケンス番号の到着順（重複・欠番・逆順を含む）
sequence_arrivals = st.lists(st.integers(min_value=1, max_value=30), min_size=0, max_size=60)

# 修復履歴のキー
element_keys = st.sampled_from(["/html/body/button", "/html/body/a[1]", "/html/body/input"])
