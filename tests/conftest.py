import os
import sys

import pytest
import pytest_asyncio

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
os.environ.setdefault("DISABLE_TELEMETRY", "true")

from config import ENV_KEY_MAP  # noqa: E402
from models import DatabaseQueue  # noqa: E402


@pytest.fixture(autouse=True)
def clean_settings_env(monkeypatch):
    """Keep developer credentials out of the tests."""
    for env_var in ENV_KEY_MAP.values():
        monkeypatch.delenv(env_var, raising=False)


@pytest_asyncio.fixture
async def db(tmp_path):
    queue = DatabaseQueue(str(tmp_path / "test.db"))
    await queue.start()
    try:
        yield queue
    finally:
        await queue.stop()


@pytest_asyncio.fixture
async def feed(db):
    return await db.execute('add_feed', name="Example", url="https://x.test/rss", category="tech")


class FakeLLM:
    """Stands in for LLMClient: replies are queued per purpose."""

    def __init__(self, replies=None):
        self.replies = {purpose: list(values) for purpose, values in (replies or {}).items()}
        self.calls = []

    async def complete(self, messages, *, purpose="generic", token_usage=None):
        self.calls.append((purpose, messages))
        if token_usage is not None:
            token_usage.add({"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15})
        queue = self.replies.get(purpose) or []
        if not queue:
            raise AssertionError(f"Unexpected LLM call for {purpose}")
        reply = queue.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        return reply

    def purposes(self):
        return [purpose for purpose, _ in self.calls]


@pytest.fixture
def fake_llm_factory():
    return FakeLLM
