import os
import sys
import tempfile
from pathlib import Path

import pytest


_root = Path(__file__).resolve().parents[1]
_src = _root / "src"
if _src.exists() and str(_src) not in sys.path:
    sys.path.insert(0, str(_src))

# keep server logs out of the working tree when chatrelay.main is imported
os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="chatrelay-logs-"))

from chatrelay.settings import Settings  # noqa: E402


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from any local .env file."""
    return Settings(
        _env_file=None,
        openai_api_key="test-key",
        fallback_response="FALLBACK",
        max_history_length=20,
        max_context_messages=15,
        max_tool_iterations=5,
    )
