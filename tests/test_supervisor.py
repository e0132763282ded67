import sys
import textwrap
import time

import psutil
import pytest

from core.cancel import CancellationToken
from core.config import FoundryConfig
from core.state import LifecycleState
from engine.base import DownloadProgress
from engine.chat import ChatRelay
from engine.runner import CommandResult, CommandRunner
from engine.supervisor import ModelSupervisor
from samples import (
    CACHE_LIST,
    LOAD_OK,
    MODEL_LIST,
    SERVICE_DOWN,
    SERVICE_LIST,
    SERVICE_LIST_EMPTY,
    SERVICE_RUNNING,
    SERVICE_STARTED,
)

PHI_LOADED = """\
Models running in service:
    Alias                          Model ID
\U0001F7E2  phi-4-mini                     Phi-4-mini-instruct-generic-cpu
"""


class FoundryScript:
    """Scripted CLI whose service/load state changes as commands run."""

    def __init__(self, running=False, cached=False, loaded=False):
        self.running = running
        self.cached = cached
        self.loaded = loaded

    def responses(self):
        return {
            "service status": lambda args: SERVICE_RUNNING if self.running else SERVICE_DOWN,
            "service start": self._start,
            "service list": lambda args: PHI_LOADED if self.loaded else SERVICE_LIST_EMPTY,
            "cache list": lambda args: CACHE_LIST if self.cached else "Models cached on device:\n",
            "model download phi-4-mini": self._download,
            "model load phi-4-mini": self._load,
        }

    def _start(self, args):
        self.running = True
        return SERVICE_STARTED

    def _download(self, args):
        self.cached = True
        return "Downloading 10%\nDownloading 55.6%\nDownloading 100%\n"

    def _load(self, args):
        self.loaded = True
        return LOAD_OK


@pytest.fixture
def script():
    return FoundryScript()


@pytest.fixture
def harness(script, fake_runner, fast_config, models_endpoint):
    relay, hits, status = models_endpoint
    runner = fake_runner
    runner.responses.update(script.responses())
    states, progress = [], []
    supervisor = ModelSupervisor(runner, relay, fast_config, on_state=states.append, on_progress=progress.append)
    return supervisor, runner, hits, status, states, progress


class TestEnsureModelReady:
    def test_cold_start_runs_every_step(self, harness):
        supervisor, runner, hits, _, states, progress = harness

        result = supervisor.ensure_model_ready("phi-4-mini")

        assert result.ok
        assert result.state == LifecycleState.READY
        assert result.runtime_id == "Phi-4-mini-instruct-generic-cpu"
        assert supervisor.active_model == "phi-4-mini"
        assert supervisor.endpoint.url == "http://127.0.0.1:52356"
        assert states == [
            LifecycleState.CHECKING_SERVICE,
            LifecycleState.STARTING_SERVICE,
            LifecycleState.CHECKING_CACHE,
            LifecycleState.DOWNLOADING,
            LifecycleState.LOADING,
            LifecycleState.VERIFYING_HEALTH,
            LifecycleState.READY,
        ]
        assert runner.commands() == [
            "service status",
            "service start",
            "service list",
            "cache list",
            "model download phi-4-mini",
            "model load phi-4-mini",
            "service list",
        ]
        assert hits == ["/v1/models"]
        assert DownloadProgress("Downloading model...", 56) in progress
        assert progress[-1] == DownloadProgress("Model ready", 100)

    def test_second_activation_is_a_no_op(self, harness):
        supervisor, runner, hits, _, _, _ = harness
        assert supervisor.ensure_model_ready("phi-4-mini").ok
        before = len(runner.calls)

        again = supervisor.ensure_model_ready("phi-4-mini")

        assert again.ok
        assert again.runtime_id == "Phi-4-mini-instruct-generic-cpu"
        issued = runner.commands()[before:]
        assert issued == ["service status", "service list"]
        assert hits == ["/v1/models"]

    def test_cached_model_skips_download(self, script, harness):
        supervisor, runner, _, _, states, _ = harness
        script.running = True
        script.cached = True

        assert supervisor.ensure_model_ready("phi-4-mini").ok
        assert "model download phi-4-mini" not in runner.commands()
        assert LifecycleState.STARTING_SERVICE not in states
        assert LifecycleState.DOWNLOADING not in states

    def test_service_without_url_fails(self, harness):
        supervisor, runner, _, _, _, _ = harness
        runner.responses["service start"] = CommandResult(1, "", "access denied")

        result = supervisor.ensure_model_ready("phi-4-mini")

        assert not result.ok
        assert result.state == LifecycleState.FAILED
        assert "no service URL" in result.message
        assert not any(cmd.startswith("model ") for cmd in runner.commands())

    def test_download_failure_stops_before_load(self, script, harness):
        supervisor, runner, _, _, _, _ = harness
        script.running = True
        runner.responses["model download phi-4-mini"] = CommandResult(1, "", "network unreachable")

        result = supervisor.ensure_model_ready("phi-4-mini")

        assert result.state == LifecycleState.FAILED
        assert "model load phi-4-mini" not in runner.commands()
        assert supervisor.active_model is None

    def test_load_needs_the_success_marker(self, script, harness):
        supervisor, runner, hits, _, _, _ = harness
        script.running = script.cached = True
        runner.responses["model load phi-4-mini"] = "Loading model...\nsomething went sideways\n"

        result = supervisor.ensure_model_ready("phi-4-mini")

        assert result.state == LifecycleState.FAILED
        assert hits == []

    def test_unhealthy_service_fails(self, script, harness):
        supervisor, _, hits, status, _, _ = harness
        script.running = script.cached = True
        status["status"] = 503

        result = supervisor.ensure_model_ready("phi-4-mini")

        assert result.state == LifecycleState.FAILED
        assert "health" in result.message
        assert hits == ["/v1/models"]
        assert supervisor.active_model is None

    def test_model_missing_from_report_fails(self, script, harness):
        supervisor, runner, _, _, _, _ = harness
        script.running = script.cached = True
        runner.responses["model load phi-4-mini"] = LOAD_OK

        result = supervisor.ensure_model_ready("phi-4-mini")

        assert result.state == LifecycleState.FAILED
        assert "not reported as loaded" in result.message
        assert supervisor.active_model is None

    def test_failure_clears_previous_active_model(self, script, harness):
        supervisor, runner, _, status, _, _ = harness
        assert supervisor.ensure_model_ready("phi-4-mini").ok
        script.loaded = False
        status["status"] = 500

        assert not supervisor.ensure_model_ready("phi-4-mini").ok
        assert supervisor.active_model is None

    def test_cancel_during_download(self, script, harness):
        supervisor, runner, _, _, states, _ = harness
        script.running = True

        def download(args):
            supervisor.cancel()
            return CommandResult(1, "Downloading 3%", "", cancelled=True)

        runner.responses["model download phi-4-mini"] = download

        result = supervisor.ensure_model_ready("phi-4-mini")

        assert result.state == LifecycleState.CANCELLED
        assert states[-1] == LifecycleState.CANCELLED
        assert runner.cancelled == 1
        assert "model load phi-4-mini" not in runner.commands()

    def test_cancelled_token_short_circuits(self, harness):
        supervisor, runner, _, _, _, _ = harness
        token = CancellationToken()
        token.cancel()

        result = supervisor.ensure_model_ready("phi-4-mini", token)

        assert result.state == LifecycleState.CANCELLED
        assert runner.calls == []

    def test_blank_alias(self, harness):
        supervisor, runner, _, _, _, _ = harness
        result = supervisor.ensure_model_ready("  ")
        assert result.state == LifecycleState.FAILED
        assert runner.calls == []


class TestRuntimeIds:
    def test_resolver_is_bound_to_relay(self, harness):
        supervisor, runner, _, _, _, _ = harness
        runner.responses["service list"] = SERVICE_LIST
        assert supervisor.relay.resolve_model("phi-4-mini") == "Phi-4-mini-instruct-generic-cpu"
        assert supervisor.relay.resolve_model("gtp-oss-20b") == "gpt-oss-20b-cuda-gpu"

    def test_lookup_is_cached(self, harness):
        supervisor, runner, _, _, _, _ = harness
        runner.responses["service list"] = SERVICE_LIST
        supervisor.resolve_runtime_id("phi-4-mini")
        supervisor.resolve_runtime_id("PHI-4-MINI")
        assert runner.commands().count("service list") == 1

    def test_new_service_url_forgets_ids(self, harness):
        supervisor, runner, _, _, _, _ = harness
        runner.responses["service list"] = SERVICE_LIST
        runner.responses["service status"] = SERVICE_RUNNING
        supervisor.probe_service()
        supervisor.resolve_runtime_id("phi-4-mini")
        runner.responses["service status"] = "Service is already running on http://127.0.0.1:60000/."
        supervisor.probe_service()
        supervisor.resolve_runtime_id("phi-4-mini")
        assert runner.commands().count("service list") == 2

    def test_unknown_alias(self, harness):
        supervisor, runner, _, _, _, _ = harness
        runner.responses["service list"] = SERVICE_LIST
        assert supervisor.resolve_runtime_id("mistral-7b-v0.2") is None


class TestDiscover:
    def test_loaded_model_is_selected(self, fake_runner, fast_config, models_endpoint):
        relay, _, _ = models_endpoint
        fake_runner.responses.update(
            {"service status": SERVICE_RUNNING, "model list": MODEL_LIST, "service list": SERVICE_LIST}
        )
        catalog = ModelSupervisor(fake_runner, relay, fast_config).discover_models()

        assert catalog.selected == "gpt-oss-20b"
        assert catalog.loaded == ["gpt-oss-20b", "phi-4-mini"]
        assert catalog.available[-1] == "qwen2.5"
        assert catalog.service_url == "http://127.0.0.1:54962"

    def test_lone_unlisted_model_is_added(self, fake_runner, fast_config, models_endpoint):
        relay, _, _ = models_endpoint
        fake_runner.responses.update(
            {
                "service status": SERVICE_RUNNING,
                "model list": MODEL_LIST,
                "service list": "Models running in service:\n\U0001F7E2  deepseek-r1-7b    deepseek-r1-distill-qwen-7b-cuda-gpu\n",
            }
        )
        catalog = ModelSupervisor(fake_runner, relay, fast_config).discover_models()
        assert catalog.selected == "deepseek-r1-7b"
        assert "deepseek-r1-7b" in catalog.available

    def test_service_down_falls_back_to_defaults(self, fake_runner, fast_config, models_endpoint):
        relay, _, _ = models_endpoint
        fake_runner.responses.update({"service status": SERVICE_DOWN, "service start": CommandResult(1, "", "")})
        catalog = ModelSupervisor(fake_runner, relay, fast_config).discover_models()

        assert catalog.available == ["qwen2.5"]
        assert catalog.selected == "qwen2.5"
        assert catalog.service_url is None
        assert "model list" not in fake_runner.commands()

    def test_configured_default_model(self, fake_runner, models_endpoint):
        relay, _, _ = models_endpoint
        config = FoundryConfig(default_model="phi-3-mini-4k")
        fake_runner.responses.update(
            {"service status": SERVICE_RUNNING, "model list": MODEL_LIST, "service list": SERVICE_LIST_EMPTY}
        )
        catalog = ModelSupervisor(fake_runner, relay, config).discover_models()
        assert catalog.selected == "phi-3-mini-4k"


class TestServiceControl:
    def test_restart(self, fake_runner, fast_config, models_endpoint, monkeypatch):
        relay, _, _ = models_endpoint
        monkeypatch.setattr("engine.supervisor.RESTART_PAUSE", 0.0)
        fake_runner.responses.update({"service stop": "Service stopped", "service start": SERVICE_STARTED})
        supervisor = ModelSupervisor(fake_runner, relay, fast_config)
        supervisor.active_model = "phi-4-mini"

        assert supervisor.restart_service() == "http://127.0.0.1:52356"
        assert supervisor.active_model is None
        assert fake_runner.commands() == ["service stop", "service start"]

    def test_unload_forgets_model(self, fake_runner, fast_config, models_endpoint):
        relay, _, _ = models_endpoint
        fake_runner.responses["model unload phi-4-mini"] = "Model unloaded"
        supervisor = ModelSupervisor(fake_runner, relay, fast_config)
        supervisor.active_model = "phi-4-mini"

        assert supervisor.unload_model()
        assert supervisor.active_model is None

    def test_cached_lookup_matches_containment(self, fake_runner, fast_config, models_endpoint):
        relay, _, _ = models_endpoint
        fake_runner.responses["cache list"] = CACHE_LIST
        supervisor = ModelSupervisor(fake_runner, relay, fast_config)
        assert supervisor.is_cached("PHI-4-MINI")
        assert supervisor.is_cached("qwen2.5")
        assert not supervisor.is_cached("mistral-7b-v0.2")


FAKE_FOUNDRY = textwrap.dedent(
    """
    import subprocess, sys, time
    marker = {marker!r}
    command = " ".join(sys.argv[1:3])
    if command == "service status":
        print("Model management service is running on http://127.0.0.1:9/openai/status")
    elif command == "service list":
        print("No models are currently loaded in the service.")
    elif command == "cache list":
        print("Models cached on device:")
    elif command == "model download":
        subprocess.Popen([sys.executable, "-c", "import time; time.sleep(60)", marker])
        print("Downloading 1%", flush=True)
        time.sleep(60)
    """
)


def _survivors(marker: str) -> list[psutil.Process]:
    found = []
    for proc in psutil.process_iter(["cmdline"]):
        if marker not in (proc.info.get("cmdline") or []):
            continue
        try:
            if proc.status() != psutil.STATUS_ZOMBIE:
                found.append(proc)
        except psutil.NoSuchProcess:
            continue
    return found


def test_cancel_tears_down_real_download(tmp_path):
    marker = f"foundry-desk-{tmp_path.name}"
    cli = tmp_path / "foundry.py"
    cli.write_text(FAKE_FOUNDRY.format(marker=marker), encoding="utf-8")
    runner = CommandRunner(executable=str(cli), prefix=[sys.executable])
    supervisor = ModelSupervisor(runner, ChatRelay(), FoundryConfig(settle_delay_seconds=0.0))

    def on_progress(progress):
        if progress.percent == 1:
            supervisor.cancel()

    supervisor.on_progress = on_progress
    started = time.monotonic()
    result = supervisor.ensure_model_ready("phi-4-mini")

    assert result.state == LifecycleState.CANCELLED
    assert time.monotonic() - started < 20

    deadline = time.monotonic() + 5
    while _survivors(marker) and time.monotonic() < deadline:
        time.sleep(0.1)
    assert _survivors(marker) == []
