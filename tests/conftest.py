"""Shared fixtures and fakes for the pipeline tests."""

import os
import sys
from typing import Optional

import pytest

# Ensure project root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from stores.schemas import init_db  # noqa: E402


@pytest.fixture
def db_path(tmp_path):
    """Create a temporary database with schema."""
    path = tmp_path / "taskpilot.db"
    conn = init_db(str(path))
    conn.close()
    return str(path)


class FakeLLM:
    """Answers by prompt shape; every call is logged in ``calls``."""

    def __init__(self, clarify=None, generations=None, review=None, classify="general",
                 manual="1. Open the site\n2. Do the thing by hand\n3. Done"):
        self.clarify = clarify
        self.generations = list(generations or [])
        self.review = review
        self.classify = classify
        self.manual = manual
        self.calls: list[dict] = []

    async def generate(self, *, prompt=None, system="", model=None, temperature=0.7, max_tokens=4096, **kw):
        self.calls.append({"kind": "generate", "prompt": prompt, "model": model})
        if prompt and "Classify this user task" in prompt:
            return {"content": self.classify, "model": model or "fake", "cost": 0.0, "latency_ms": 1}
        return {"content": self.manual, "model": model or "fake", "cost": 0.001, "latency_ms": 1}

    async def generate_json(self, *, prompt, system="", temperature=0.3, model=None, max_tokens=4096):
        self.calls.append({"kind": "json", "prompt": prompt, "model": model})
        if "Parse this into a structured task" in prompt:
            payload = self.clarify
        elif "You are carrying out a task" in prompt:
            if not self.generations:
                payload = {"response": "Nothing to do.", "actions": []}
            elif len(self.generations) == 1:
                payload = self.generations[0]
            else:
                payload = self.generations.pop(0)
        elif "Determine whether this task was completed" in prompt:
            payload = self.review
        else:
            payload = None
        if payload is None:
            return {"error": True, "message": "no canned answer", "content": "", "cost": 0.0, "latency_ms": 1}
        return {"content": payload, "model": model or "fake", "cost": 0.001, "latency_ms": 1}

    def prompts(self, marker: str) -> list[str]:
        return [c["prompt"] for c in self.calls if c["prompt"] and marker in c["prompt"]]


class FakeSession:
    """In-memory browser session.

    ``broken`` maps (operation, selector) to how many more calls should fail;
    -1 fails forever.
    """

    def __init__(self, state_key: Optional[str] = None, page_text: str = "", broken=None,
                 unavailable: tuple[str, ...] = ()):
        self.state_key = state_key
        self.page_text = page_text
        self.broken = dict(broken or {})
        self.unavailable = set(unavailable)
        self.url = "about:blank"
        self.log: list[tuple] = []
        self.values: list[str] = []
        self.started = False
        self.closed = False
        self.saved = 0

    def _maybe_fail(self, op: str, target: str, method: str = "") -> None:
        from pilot.executor.browser import MethodUnavailable

        if method in self.unavailable:
            raise MethodUnavailable(method)
        self.log.append((op, target, method))
        left = self.broken.get((op, target), 0)
        if left:
            if left > 0:
                self.broken[(op, target)] = left - 1
            raise RuntimeError(f"{op} {target} failed")

    async def start(self):
        self.started = True

    async def close(self):
        self.closed = True

    async def goto(self, url, method="url"):
        self._maybe_fail("goto", url, method)
        self.url = url if "://" in url else f"https://{url}"

    async def click(self, selector, method="css"):
        self._maybe_fail("click", selector, method)

    async def fill(self, selector, value, method="standard"):
        self._maybe_fail("fill", selector, method)
        self.values.append(value)

    async def select(self, selector, value, method="standard"):
        self._maybe_fail("select", selector, method)

    async def submit(self, selector="", method="standard"):
        self._maybe_fail("submit", selector, method)

    async def upload(self, selector, path):
        self._maybe_fail("upload", selector)

    async def extract(self, selector=""):
        self._maybe_fail("extract", selector)
        return self.page_text

    async def screenshot(self):
        return "/tmp/shot.png"

    async def scroll(self, pixels=800):
        return None

    async def wait(self, seconds=1.0, selector=""):
        return None

    async def current_url(self):
        return self.url

    async def save_state(self):
        if not self.state_key:
            return None
        self.saved += 1
        return f"data/sessions/{self.state_key}.json"


def session_factory(**kwargs):
    """Factory that builds FakeSessions and remembers them."""
    made: list[FakeSession] = []

    def factory(state_key):
        session = FakeSession(state_key, **kwargs)
        made.append(session)
        return session

    factory.made = made
    return factory


class FakeOutbox:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.emails: list[tuple] = []
        self.scheduled: list[tuple] = []
        self.facts: list[tuple] = []

    async def send_email(self, owner_id, to, subject, body):
        if self.fail:
            raise RuntimeError("smtp down")
        self.emails.append((owner_id, to, subject, body))

    async def schedule(self, owner_id, when, text):
        self.scheduled.append((owner_id, when, text))

    async def remember(self, owner_id, fact):
        self.facts.append((owner_id, fact))


class FakeTransport:
    def __init__(self, fail_channels=()):
        self.sent: list[tuple] = []
        self.fail_channels = set(fail_channels)

    async def send(self, channel, destination, text):
        if channel in self.fail_channels:
            raise RuntimeError(f"{channel.value} gateway down")
        self.sent.append((channel, destination, text))


async def no_sleep(_seconds):
    return None
