"""
loom 設定 — YAML ファイル・環境変数・CLI 引数からの設定読み込み

設定キーはドット区切りのプロパティ名で表現する（例: self.healing.threshold）。
CLI 引数 > 環境変数 > 設定ファイル > デフォルト値 の優先順位で適用される。

主な機能:
  - LoomConfig: 自己修復・要素操作・チャネル・注入の各設定をまとめたデータクラス
  - load_config_file: ruamel.yaml で YAML 設定を読み込む（ネスト・フラット両対応）
  - load_config_from_env: LOOM_* 環境変数の読み込み
  - apply_properties: ドット区切りキーの辞書を設定に適用
  - build_cli_parser / apply_cli_args: MCP サーバー起動時の CLI 引数

環境変数はプロパティ名を大文字化し、ドットをアンダースコアに置換したもの:
  LOOM_SELF_HEALING_ENABLED        : 自己修復の有効化（true/false, デフォルト: true）
  LOOM_SELF_HEALING_THRESHOLD      : 類似度の閾値（0.0〜1.0, デフォルト: 0.7）
  LOOM_ELEMENT_INTERACTION_RETRY_COUNT : 操作の再試行回数（デフォルト: 3）
  LOOM_CHANNEL_PORT                : チャネルのポート番号（デフォルト: 8765）
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping, Optional

from .errors import InvalidConfigError

logger = logging.getLogger(__name__)

_ENV_PREFIX = "LOOM_"
_ENV_CONFIG_FILE = "LOOM_CONFIG"

# 類似度計算で既定とする追跡属性
DEFAULT_TRACKED_ATTRIBUTES: tuple[str, ...] = (
    "id",
    "name",
    "class",
    "href",
    "type",
    "value",
    "placeholder",
    "aria-label",
    "data-testid",
    "title",
)

# 類似度計算の既定の重み（記録要素に存在する特徴のみ分母に加算される）
DEFAULT_WEIGHTS: dict[str, float] = {
    "id": 2.0,
    "name": 2.0,
    "data-testid": 2.0,
    "class": 2.0,
    "text": 2.0,
    "tag": 1.0,
    "default": 1.0,
}


# ---------------------------------------------------------------------------
# 設定データクラス
# ---------------------------------------------------------------------------

@dataclass
class HealingConfig:
    """自己修復ロケーターの設定。

    Attributes:
        enabled: 自己修復を行うか（False の場合は一次ロケーター失敗で即エラー）
        threshold: 候補を採用する類似度の下限（この値を含む）
        max_alternates: イベントごとに保存する代替ロケーターの上限
        history_size: 要素ごとの修復履歴の上限（FIFO で破棄）
        tracked_attributes: 記録・類似度計算の対象とする属性名
        weights: 類似度計算の特徴ごとの重み
    """

    enabled: bool = True
    threshold: float = 0.7
    max_alternates: int = 5
    history_size: int = 100
    tracked_attributes: tuple[str, ...] = DEFAULT_TRACKED_ATTRIBUTES
    weights: dict[str, float] = field(default_factory=lambda: dict(DEFAULT_WEIGHTS))


@dataclass
class InteractionConfig:
    """要素操作の設定。

    Attributes:
        retry_count: 一時的なエラーに対する試行回数
        retry_delay_ms: 試行間の待機時間（ミリ秒）
        js_fallback: ネイティブ操作失敗時に JavaScript で代替実行するか
        action_timeout_ms: 1 回の操作のタイムアウト（ミリ秒）
    """

    retry_count: int = 3
    retry_delay_ms: int = 500
    js_fallback: bool = True
    action_timeout_ms: int = 5000


@dataclass
class ChannelConfig:
    """双方向チャネルの設定。

    Attributes:
        host: エンドポイントのホスト名
        port: エンドポイントのポート番号
        path_prefix: セッション ID の前に付くパス
        heartbeat_interval_ms: ハートビート送信間隔（ミリ秒）
        reconnect_attempts: 再接続の最大試行回数
        reconnect_base_delay_ms: 再接続バックオフの初期待機時間（ミリ秒）
        reconnect_max_delay_ms: 再接続バックオフの最大待機時間（ミリ秒）
        ack_timeout_ms: INIT に対する ACK 待ちのタイムアウト（ミリ秒）
        ssl_certfile: エンドポイントの証明書（PEM）。指定すると wss で待ち受ける
        ssl_keyfile: 証明書の秘密鍵（証明書ファイルに含まれる場合は空）
        ssl_cafile: クライアントが証明書の検証に使う CA（空ならシステムの証明書ストア）
    """

    host: str = "127.0.0.1"
    port: int = 8765
    path_prefix: str = "/recorder"
    heartbeat_interval_ms: int = 15000
    reconnect_attempts: int = 5
    reconnect_base_delay_ms: int = 500
    reconnect_max_delay_ms: int = 8000
    ack_timeout_ms: int = 5000
    ssl_certfile: str = ""
    ssl_keyfile: str = ""
    ssl_cafile: str = ""

    @property
    def secure(self) -> bool:
        return bool(self.ssl_certfile)


@dataclass
class InjectionConfig:
    """エージェント注入の設定。

    Attributes:
        max_attempts: 注入の最大試行回数
        base_delay_ms: 再試行バックオフの初期待機時間（ミリ秒）
        max_delay_ms: 再試行バックオフの最大待機時間（ミリ秒）
    """

    max_attempts: int = 3
    base_delay_ms: int = 200
    max_delay_ms: int = 2000


@dataclass
class LoomConfig:
    """loom 全体の実行時設定。"""

    healing: HealingConfig = field(default_factory=HealingConfig)
    interaction: InteractionConfig = field(default_factory=InteractionConfig)
    channel: ChannelConfig = field(default_factory=ChannelConfig)
    injection: InjectionConfig = field(default_factory=InjectionConfig)
    diagnostics_dir: str = "artifacts/diagnostics"
    # 空の場合はイベントごとのスクリーンショットを保存しない
    screenshot_dir: str = ""


# ---------------------------------------------------------------------------
# 値の変換
# ---------------------------------------------------------------------------

def _parse_bool(value: Any) -> bool:
    """値を bool に変換する。

    Args:
        value: bool または "true", "1", "yes"（大文字小文字を区別しない）

    Returns:
        変換結果
    """
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("true", "1", "yes", "on")


def _parse_int(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError(f"整数ではありません: {value}")
    return int(value)


def _parse_float(value: Any) -> float:
    if isinstance(value, bool):
        raise ValueError(f"数値ではありません: {value}")
    return float(value)


def _parse_attributes(value: Any) -> tuple[str, ...]:
    """カンマ区切り文字列またはリストを属性名のタプルに変換する。"""
    if isinstance(value, str):
        items = value.split(",")
    else:
        items = list(value)
    attrs = tuple(str(item).strip() for item in items if str(item).strip())
    if not attrs:
        raise ValueError("追跡属性が空です")
    return attrs


# プロパティ名 → (セクション名, 属性名, 変換関数)
_PROPERTIES: dict[str, tuple[Optional[str], str, Callable[[Any], Any]]] = {
    "self.healing.enabled": ("healing", "enabled", _parse_bool),
    "self.healing.threshold": ("healing", "threshold", _parse_float),
    "self.healing.max.alternates": ("healing", "max_alternates", _parse_int),
    "self.healing.history.size": ("healing", "history_size", _parse_int),
    "self.healing.attributes.track": ("healing", "tracked_attributes", _parse_attributes),
    "element.interaction.retry.count": ("interaction", "retry_count", _parse_int),
    "element.interaction.retry.delay": ("interaction", "retry_delay_ms", _parse_int),
    "element.interaction.js.fallback": ("interaction", "js_fallback", _parse_bool),
    "element.interaction.action.timeout": ("interaction", "action_timeout_ms", _parse_int),
    "channel.host": ("channel", "host", str),
    "channel.port": ("channel", "port", _parse_int),
    "channel.heartbeat.interval": ("channel", "heartbeat_interval_ms", _parse_int),
    "channel.reconnect.attempts": ("channel", "reconnect_attempts", _parse_int),
    "channel.reconnect.delay": ("channel", "reconnect_base_delay_ms", _parse_int),
    "channel.reconnect.max.delay": ("channel", "reconnect_max_delay_ms", _parse_int),
    "channel.ssl.certfile": ("channel", "ssl_certfile", str),
    "channel.ssl.keyfile": ("channel", "ssl_keyfile", str),
    "channel.ssl.cafile": ("channel", "ssl_cafile", str),
    "injection.max.attempts": ("injection", "max_attempts", _parse_int),
    "injection.delay": ("injection", "base_delay_ms", _parse_int),
    "diagnostics.dir": (None, "diagnostics_dir", str),
    "recorder.screenshot.dir": (None, "screenshot_dir", str),
}

_WEIGHT_PREFIX = "self.healing.weights."


def _env_name(key: str) -> str:
    return _ENV_PREFIX + key.upper().replace(".", "_").replace("-", "_")


# ---------------------------------------------------------------------------
# プロパティの適用
# ---------------------------------------------------------------------------

def apply_properties(config: LoomConfig, properties: Mapping[str, Any]) -> LoomConfig:
    """ドット区切りキーの辞書を設定に適用する。

    未知のキーは警告を出して無視する。値の変換に失敗した場合は
    InvalidConfigError を送出する。

    Args:
        config: 適用先の設定
        properties: プロパティ名 → 値 の辞書

    Returns:
        プロパティが適用された設定

    Raises:
        InvalidConfigError: 値が不正な場合
    """
    for key, raw in properties.items():
        if key.startswith(_WEIGHT_PREFIX):
            feature = key[len(_WEIGHT_PREFIX):]
            try:
                config.healing.weights[feature] = _parse_float(raw)
            except (TypeError, ValueError) as exc:
                raise InvalidConfigError(f"{key} の値が不正です: {raw!r}") from exc
            continue

        entry = _PROPERTIES.get(key)
        if entry is None:
            logger.warning("未知の設定キーを無視します: %s", key)
            continue

        section, attr, parse = entry
        try:
            value = parse(raw)
        except (TypeError, ValueError) as exc:
            raise InvalidConfigError(f"{key} の値が不正です: {raw!r}") from exc

        target = config if section is None else getattr(config, section)
        setattr(target, attr, value)

    validate_config(config)
    return config


def validate_config(config: LoomConfig) -> None:
    """設定値の範囲を検証する。

    Raises:
        InvalidConfigError: 範囲外の値が含まれる場合
    """
    errors: list[str] = []
    healing = config.healing
    if not 0.0 <= healing.threshold <= 1.0:
        errors.append(f"self.healing.threshold は 0.0〜1.0 で指定してください: {healing.threshold}")
    if healing.max_alternates < 0:
        errors.append(f"self.healing.max.alternates は 0 以上で指定してください: {healing.max_alternates}")
    if healing.history_size < 1:
        errors.append(f"self.healing.history.size は 1 以上で指定してください: {healing.history_size}")
    for feature, weight in healing.weights.items():
        if weight < 0:
            errors.append(f"self.healing.weights.{feature} は 0 以上で指定してください: {weight}")

    interaction = config.interaction
    if interaction.retry_count < 1:
        errors.append(f"element.interaction.retry.count は 1 以上で指定してください: {interaction.retry_count}")
    if interaction.retry_delay_ms < 0:
        errors.append(f"element.interaction.retry.delay は 0 以上で指定してください: {interaction.retry_delay_ms}")
    if interaction.action_timeout_ms <= 0:
        errors.append(f"element.interaction.action.timeout は正の値で指定してください: {interaction.action_timeout_ms}")

    channel = config.channel
    if not 0 <= channel.port <= 65535:
        errors.append(f"channel.port が範囲外です: {channel.port}")
    if channel.reconnect_attempts < 0:
        errors.append(f"channel.reconnect.attempts は 0 以上で指定してください: {channel.reconnect_attempts}")
    if channel.heartbeat_interval_ms <= 0:
        errors.append(f"channel.heartbeat.interval は正の値で指定してください: {channel.heartbeat_interval_ms}")
    if channel.ssl_keyfile and not channel.ssl_certfile:
        errors.append("channel.ssl.keyfile を指定する場合は channel.ssl.certfile も指定してください")

    if config.injection.max_attempts < 1:
        errors.append(f"injection.max.attempts は 1 以上で指定してください: {config.injection.max_attempts}")

    if errors:
        raise InvalidConfigError("; ".join(errors))


# ---------------------------------------------------------------------------
# YAML ファイルからの読み込み
# ---------------------------------------------------------------------------

def _flatten(data: Mapping[str, Any], prefix: str = "") -> dict[str, Any]:
    """ネストした辞書をドット区切りキーの辞書に平坦化する。"""
    flat: dict[str, Any] = {}
    for key, value in data.items():
        name = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, Mapping):
            flat.update(_flatten(value, name))
        else:
            flat[name] = value
    return flat


def load_config_file(path: str | Path, config: Optional[LoomConfig] = None) -> LoomConfig:
    """YAML 設定ファイルを読み込んで設定に適用する。

    ネスト形式（self: {healing: {threshold: 0.8}}）と
    フラット形式（self.healing.threshold: 0.8）のどちらも受け付ける。

    Args:
        path: 設定ファイルのパス
        config: 適用先の設定（省略時はデフォルト値）

    Returns:
        ファイルの内容が適用された設定

    Raises:
        InvalidConfigError: ファイルが読めない、または値が不正な場合
    """
    from ruamel.yaml import YAML
    from ruamel.yaml.error import YAMLError

    config = config or LoomConfig()
    yaml = YAML(typ="safe")
    try:
        data = yaml.load(Path(path).read_text(encoding="utf-8"))
    except (OSError, YAMLError) as exc:
        raise InvalidConfigError(f"設定ファイルを読み込めません: {path}: {exc}") from exc

    if data is None:
        return config
    if not isinstance(data, Mapping):
        raise InvalidConfigError(f"設定ファイルの形式が不正です（マッピングが必要）: {path}")

    logger.info("設定ファイルを読み込みました: %s", path)
    return apply_properties(config, _flatten(data))


# ---------------------------------------------------------------------------
# 環境変数からの読み込み
# ---------------------------------------------------------------------------

def load_config_from_env(
    config: Optional[LoomConfig] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> LoomConfig:
    """LOOM_* 環境変数を読み込んで設定に適用する。

    LOOM_CONFIG が設定されている場合は、先にそのファイルを読み込む。

    Args:
        config: 適用先の設定（省略時はデフォルト値）
        environ: 環境変数の辞書（省略時は os.environ）

    Returns:
        環境変数が適用された設定
    """
    environ = os.environ if environ is None else environ
    config = config or LoomConfig()

    config_file = environ.get(_ENV_CONFIG_FILE)
    if config_file:
        config = load_config_file(config_file, config)

    properties: dict[str, Any] = {}
    for key in _PROPERTIES:
        env_name = _env_name(key)
        if env_name in environ:
            properties[key] = environ[env_name]

    weight_env_prefix = _env_name(_WEIGHT_PREFIX)
    for env_name, value in environ.items():
        if env_name.startswith(weight_env_prefix):
            feature = env_name[len(weight_env_prefix):].lower().replace("_", "-")
            properties[_WEIGHT_PREFIX + feature] = value

    if properties:
        apply_properties(config, properties)
    logger.debug("設定を読み込みました: %s", config)
    return config


# ---------------------------------------------------------------------------
# CLI 引数
# ---------------------------------------------------------------------------

def build_cli_parser():
    """CLI 引数パーサーを構築する。

    Returns:
        argparse.ArgumentParser インスタンス
    """
    import argparse

    parser = argparse.ArgumentParser(
        description="loom MCP Server - browser action recording with self-healing locators",
    )
    parser.add_argument(
        "--config", type=str, default=None,
        help="YAML configuration file",
    )
    parser.add_argument(
        "--host", type=str, default=None,
        help="Channel endpoint host (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--port", type=int, default=None,
        help="Channel endpoint port (default: 8765)",
    )
    parser.add_argument(
        "--threshold", type=float, default=None,
        help="Self-healing similarity threshold (default: 0.7)",
    )
    parser.add_argument(
        "--no-healing", action="store_true", default=None,
        help="Disable self-healing",
    )
    parser.add_argument(
        "--set", dest="properties", action="append", default=None,
        metavar="KEY=VALUE",
        help="Override a configuration property (repeatable)",
    )
    return parser


def parse_property_overrides(items: Optional[list[str]]) -> dict[str, str]:
    """KEY=VALUE 形式の文字列リストを辞書に変換する。

    Raises:
        InvalidConfigError: = を含まない要素がある場合
    """
    properties: dict[str, str] = {}
    for item in items or []:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise InvalidConfigError(f"KEY=VALUE 形式で指定してください: {item}")
        properties[key.strip()] = value.strip()
    return properties


def apply_cli_args(config: LoomConfig, args: Any) -> LoomConfig:
    """CLI 引数を設定に適用する。

    CLI 引数が指定されている場合のみ上書きする。

    Args:
        config: ベースとなる設定（環境変数から読み込み済み）
        args: argparse の解析結果

    Returns:
        CLI 引数が適用された設定
    """
    config_path = getattr(args, "config", None)
    if config_path is not None:
        config = load_config_file(config_path, config)

    properties: dict[str, Any] = {}
    host = getattr(args, "host", None)
    if host is not None:
        properties["channel.host"] = host
    port = getattr(args, "port", None)
    if port is not None:
        properties["channel.port"] = port
    threshold = getattr(args, "threshold", None)
    if threshold is not None:
        properties["self.healing.threshold"] = threshold
    if getattr(args, "no_healing", None):
        properties["self.healing.enabled"] = False
    properties.update(parse_property_overrides(getattr(args, "properties", None)))

    if properties:
        apply_properties(config, properties)
    return config
