import sys
from pathlib import Path


_root = Path(__file__).resolve().parents[1]
_src = _root / "src"
if _src.exists() and str(_src) not in sys.path:
    sys.path.insert(0, str(_src))

from typing import List, Tuple

import pytest

from vibecap import settings as settings_module
from vibecap.settings import Settings

# Pin settings before any module caches them: no LLM, no Redis, no Telegram.
settings_module._SETTINGS = Settings(
    _env_file=None,
    openai_api_key=None,
    redis_url=None,
    telegram_bot_token=None,
    telegram_polling=False,
)


class RecordingTransport:
    """Transport double that records deliveries and can be told to fail."""

    def __init__(self) -> None:
        self.sent: List[Tuple[str, str]] = []
        self.fail_with: Exception | None = None

    async def send(self, session_id: str, text: str) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append((session_id, text))


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()
