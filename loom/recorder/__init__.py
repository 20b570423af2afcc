"""
記録パッケージ — セッション管理・エージェント注入・エクスポート

主な構成:
  - session_manager: 記録セッションのライフサイクル管理
  - session_store: セッションの保持領域
  - agent: ページへの記録スクリプト注入とイベント送信
  - export: 完了済みセッションの YAML 出力とワーカープール
  - service: ブラウザ起動から停止までの統合
"""
