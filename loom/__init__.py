"""
loom — ブラウザ操作レコーダーと自己修復ロケーターエンジン

ページに注入したエージェントで操作を記録し、双方向チャネル経由で
バックエンドのセッションへ順序通りに送信する。再生時は記録済みの
要素情報からスコア付きフォールバックで要素を再解決する。
"""

__version__ = "0.1.0"
