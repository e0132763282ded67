import os
import socket
import tempfile

os.environ.setdefault("FOUNDRY_DESK_ROOT", tempfile.mkdtemp(prefix="foundry_desk_tests_"))
os.environ.setdefault("QT_QPA_PLATFORM", "offscreen")

import httpx
import pytest

from core.config import FoundryConfig
from engine.chat import ChatRelay
from engine.runner import CommandResult


class FakeRunner:
    """Scripted stand-in for CommandRunner keyed by the joined argument list."""

    def __init__(self, responses=None):
        self.responses = dict(responses or {})
        self.calls: list[tuple[str, ...]] = []
        self.cancelled = 0

    def _lookup(self, args):
        key = " ".join(args)
        self.calls.append(tuple(args))
        response = self.responses.get(key, CommandResult(1, "", f"unscripted: {key}"))
        if callable(response):
            response = response(args)
        if isinstance(response, str):
            response = CommandResult(0, response, "")
        return response

    def run(self, args, token=None, timeout=None):
        if token is not None and token.cancelled:
            return CommandResult(-1, "", "cancelled before start", cancelled=True)
        return self._lookup(args)

    def run_streaming(self, args, on_line, token=None):
        result = self._lookup(args)
        for line in result.stdout.splitlines():
            if line.strip():
                on_line(line)
        return result

    def cancel_current(self):
        self.cancelled += 1

    def commands(self):
        return [" ".join(call) for call in self.calls]


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def fast_config():
    return FoundryConfig(settle_delay_seconds=0.0, default_models=("qwen2.5",))


@pytest.fixture
def models_endpoint():
    """Mock service answering /v1/models with the given status; records hits."""
    hits: list[str] = []
    state = {"status": 200}

    def handler(request: httpx.Request) -> httpx.Response:
        hits.append(request.url.path)
        if request.url.path == "/v1/models":
            return httpx.Response(state["status"], json={"data": [{"id": "Phi-4-mini-instruct-generic-cpu"}]})
        return httpx.Response(404)

    transport = httpx.MockTransport(handler)
    relay = ChatRelay(transport=transport)
    return relay, hits, state



@pytest.fixture
def stalled_server():
    """Listening socket that takes connections and never answers."""
    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.bind(("127.0.0.1", 0))
    server.listen(8)
    yield f"http://127.0.0.1:{server.getsockname()[1]}"
    server.close()
