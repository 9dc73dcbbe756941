"""
Reservation Service — 設定

すべて環境変数から読み込む。
"""

import os

DATABASE_URL = os.environ["DATABASE_URL"]
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")

# レート制限: デフォルトは 15 分あたり 100 リクエスト / IP
RATE_LIMIT_WINDOW_MS = int(os.environ.get("RATE_LIMIT_WINDOW_MS", "900000"))
RATE_LIMIT_MAX = int(os.environ.get("RATE_LIMIT_MAX", "100"))

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
