"""
loom MCP Server CLI エントリポイント

python -m loom.mcp で MCP サーバーを起動する。
CLI 引数と環境変数でサーバー設定を制御できる。

使用例:
  python -m loom.mcp                              # デフォルト設定で起動
  python -m loom.mcp --config loom.yaml           # 設定ファイルを指定
  python -m loom.mcp --port 9000 --threshold 0.8  # ポートと閾値を指定
  python -m loom.mcp --set element.interaction.retry.count=5

環境変数:
  LOOM_CONFIG=loom.yaml                           # 設定ファイル
  LOOM_SELF_HEALING_ENABLED=false                 # 自己修復を無効化
"""

from __future__ import annotations

from ..config import apply_cli_args, build_cli_parser, load_config_from_env
from .server import create_server

# 環境変数 → CLI 引数の順で設定を構築
_config = load_config_from_env()
_parser = build_cli_parser()
_args = _parser.parse_args()
_config = apply_cli_args(_config, _args)

# サーバー生成・起動
server = create_server(config=_config)
server.run()
