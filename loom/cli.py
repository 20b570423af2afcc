"""
CLI エントリポイント — Typer ベースのコマンドラインインターフェース

loom コマンドとして以下のサブコマンドを提供する:
  - serve: チャネルエンドポイントを起動し、エージェントからの接続を待ち受ける
  - record: ブラウザを起動して操作を記録し、セッションを YAML に保存する
  - describe: 保存済み HTML の要素に対するロケーター候補を表示する
  - resolve: 記録済みセッションのイベントを HTML スナップショット上で解決する
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import typer

from .config import (
    LoomConfig,
    apply_properties,
    load_config_file,
    load_config_from_env,
    parse_property_overrides,
)
from .errors import LoomError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Typer アプリ定義
# ---------------------------------------------------------------------------

app = typer.Typer(
    help=(
        "loom — ブラウザ操作レコーダーと自己修復ロケーター\n\n"
        "基本の流れ:\n"
        "  1. loom record URL         操作を記録（ブラウザが開きます）\n"
        "  2. loom describe page.html XPATH  ロケーター候補を確認\n\n"
        "詳しくは各コマンドに --help を付けてください。"
    ),
    no_args_is_help=True,
)


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load_config(config_path: Optional[Path], properties: Optional[list[str]]) -> LoomConfig:
    """設定ファイル・環境変数・--set の順に設定を構築する。"""
    config = LoomConfig()
    if config_path is not None:
        config = load_config_file(config_path, config)
    config = load_config_from_env(config)
    overrides = parse_property_overrides(properties)
    if overrides:
        apply_properties(config, overrides)
    return config


_CONFIG_OPTION = typer.Option(None, "--config", help="YAML 設定ファイル")
_SET_OPTION = typer.Option(None, "--set", help="設定の上書き（KEY=VALUE、複数指定可）")
_VERBOSE_OPTION = typer.Option(False, "--verbose", "-v", help="デバッグログを出力する")


# ---------------------------------------------------------------------------
# serve コマンド
# ---------------------------------------------------------------------------

@app.command()
def serve(
    config_path: Optional[Path] = _CONFIG_OPTION,
    properties: Optional[list[str]] = _SET_OPTION,
    verbose: bool = _VERBOSE_OPTION,
) -> None:
    """チャネルエンドポイントを起動する（Ctrl+C で終了）。"""
    _setup_logging(verbose)
    try:
        config = _load_config(config_path, properties)
    except LoomError as exc:
        typer.echo(f"エラー: {exc}", err=True)
        raise typer.Exit(code=1)

    from .channel.endpoint import ChannelEndpoint
    from .recorder.session_manager import SessionManager

    endpoint = ChannelEndpoint(SessionManager(), config.channel)
    typer.echo(f"チャネルエンドポイント: ws://{config.channel.host}:{config.channel.port}"
               f"{config.channel.path_prefix}/<sessionId>")
    try:
        asyncio.run(endpoint.serve_forever())
    except KeyboardInterrupt:
        typer.echo("終了しました")


# ---------------------------------------------------------------------------
# record コマンド
# ---------------------------------------------------------------------------

@app.command()
def record(
    url: str = typer.Argument(..., help="記録対象の URL"),
    project: str = typer.Option("default", "--project", "-p", help="プロジェクト ID"),
    output_dir: Path = typer.Option(
        Path("recordings"), "--output-dir", "-o", help="セッション YAML の出力先",
    ),
    browser: str = typer.Option(
        "chromium", "--browser", "-b",
        help="ブラウザ (chromium / chrome / msedge / firefox / webkit)",
    ),
    headless: bool = typer.Option(False, "--headless", help="ヘッドレスで起動する"),
    viewport: str = typer.Option("1280,720", "--viewport", help="ビューポートサイズ (幅,高さ)"),
    config_path: Optional[Path] = _CONFIG_OPTION,
    properties: Optional[list[str]] = _SET_OPTION,
    verbose: bool = _VERBOSE_OPTION,
) -> None:
    """ブラウザ操作を記録する。ブラウザを閉じると記録が終了する。"""
    _setup_logging(verbose)
    try:
        config = _load_config(config_path, properties)
        width, height = (int(v.strip()) for v in viewport.split(","))
    except (LoomError, ValueError) as exc:
        typer.echo(f"エラー: {exc}", err=True)
        raise typer.Exit(code=1)

    browser_config = {
        "browser_type": browser,
        "headless": headless,
        "viewport_width": width,
        "viewport_height": height,
        "base_url": url,
    }

    async def _run() -> Path | None:
        from .recorder.service import RecorderService

        async with RecorderService(config, output_dir=output_dir) as service:
            session_id = await service.start_recording(project, url, browser_config)
            typer.echo(f"記録中: {url}（ブラウザを閉じると終了します）")
            await service.wait_for_close(session_id)
            session, path = await service.stop_recording(session_id)
            typer.echo(f"記録したイベント: {len(session.events)} 件")
            return path

    try:
        path = asyncio.run(_run())
    except LoomError as exc:
        typer.echo(f"エラー: {exc}", err=True)
        raise typer.Exit(code=1)

    if path is not None:
        typer.echo(f"セッションを保存しました: {path}")


# ---------------------------------------------------------------------------
# describe コマンド
# ---------------------------------------------------------------------------

@app.command()
def describe(
    html_file: Path = typer.Argument(..., help="DOM スナップショット（HTML ファイル）"),
    xpath: str = typer.Argument(..., help="対象要素の XPath"),
    config_path: Optional[Path] = _CONFIG_OPTION,
    as_json: bool = typer.Option(False, "--json", help="JSON で出力する"),
) -> None:
    """保存済み HTML の要素に対するロケーター候補を表示する。"""
    from .locator.descriptor import DescriptorGenerator
    from .locator.dom import DomSnapshot

    try:
        config = _load_config(config_path, None)
        html = html_file.read_text(encoding="utf-8")
    except (LoomError, OSError) as exc:
        typer.echo(f"エラー: {exc}", err=True)
        raise typer.Exit(code=1)

    snapshot = DomSnapshot(html)
    matches = snapshot.select(xpath)
    if not matches:
        typer.echo(f"エラー: 要素が見つかりません: {xpath}", err=True)
        raise typer.Exit(code=1)
    if len(matches) > 1:
        typer.echo(f"警告: {len(matches)} 件一致しました。最初の要素を使用します。", err=True)

    generator = DescriptorGenerator(
        config.healing.tracked_attributes, config.healing.max_alternates,
    )
    descriptor = generator.generate(snapshot, matches[0])

    if as_json:
        typer.echo(json.dumps({
            "element": descriptor.element.to_wire(),
            "primary": descriptor.primary.to_wire() if descriptor.primary else None,
            "alternates": [c.to_wire() for c in descriptor.alternates],
            "ambiguous": descriptor.ambiguous,
        }, ensure_ascii=False, indent=2))
        return

    typer.echo(f"要素: <{descriptor.element.tag_name}> {descriptor.element.xpath}")
    if descriptor.primary is not None:
        typer.echo(f"一次: {descriptor.primary.describe()} (confidence={descriptor.primary.confidence})")
    for candidate in descriptor.alternates:
        flag = "" if candidate.unique else " [非一意]"
        typer.echo(f"代替: {candidate.describe()} (confidence={candidate.confidence}){flag}")
    if descriptor.ambiguous:
        typer.echo("警告: 一意なロケーターがありません（ambiguous）")


# ---------------------------------------------------------------------------
# resolve コマンド
# ---------------------------------------------------------------------------

@app.command()
def resolve(
    session_file: Path = typer.Argument(..., help="記録済みセッションの YAML"),
    html_file: Path = typer.Argument(..., help="現在の DOM スナップショット（HTML ファイル）"),
    config_path: Optional[Path] = _CONFIG_OPTION,
    properties: Optional[list[str]] = _SET_OPTION,
) -> None:
    """記録済みイベントの操作対象を HTML スナップショット上で解決する。"""
    from .errors import LocatorNotFoundError
    from .locator.dom import SnapshotDom
    from .locator.resolver import SelfHealingResolver
    from ruamel.yaml.error import YAMLError

    from .recorder.export import load_session_yaml

    try:
        config = _load_config(config_path, properties)
        session = load_session_yaml(session_file)
        dom = SnapshotDom(html_file.read_text(encoding="utf-8"))
    except (LoomError, OSError, ValueError, YAMLError) as exc:
        typer.echo(f"エラー: {exc}", err=True)
        raise typer.Exit(code=1)

    resolver = SelfHealingResolver(config.healing)
    failures = 0

    async def _run() -> None:
        nonlocal failures
        for event in session.events:
            if event.target is None:
                continue
            try:
                result = await resolver.resolve_event(dom, event)
            except LocatorNotFoundError as exc:
                failures += 1
                typer.echo(f"#{event.sequence_number} 失敗: {exc}")
                continue
            mark = "修復" if result.healed else "一致"
            typer.echo(
                f"#{event.sequence_number} {mark}: {result.candidate.describe()} "
                f"(score={result.score:.3f})"
            )

    asyncio.run(_run())
    if failures:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
