from __future__ import annotations

from pathlib import Path

TELEGRAM_HARD_LIMIT = 4096
TELEGRAM_DOWNLOAD_LIMIT_BYTES = 20 * 1024 * 1024
STREAM_FLUSH_INTERVAL_S = 2.0
TYPING_REFRESH_S = 5.0
HOME_CONFIG_PATH = Path.home() / ".parley" / "parley.toml"
