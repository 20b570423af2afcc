"""
チャネルパッケージ — ページとバックエンド間の双方向チャネル

主な構成:
  - protocol: メッセージ定義と URL の導出
  - endpoint: websockets サーバー（バックエンド側）
  - client: 再接続・再送付きクライアント（エージェント側）
"""
