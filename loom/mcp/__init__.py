"""
loom MCP Server パッケージ

AI エージェントから記録セッションの開始・停止とロケーター生成を行う
MCP (Model Context Protocol) サーバーを提供する。
"""

from __future__ import annotations


def create_server(config=None, **kwargs):  # type: ignore[no-untyped-def]
    """loom MCP サーバーを生成する（遅延インポート）。

    `python -m loom.mcp` 実行時の RuntimeWarning を回避するため、
    server モジュールの import をここで遅延させる。
    """
    from .server import create_server as _create
    return _create(config=config, **kwargs)


__all__ = [
    "create_server",
]
