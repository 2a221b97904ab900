"""セッションとメッセージのデータモデル."""
