from __future__ import annotations

import logging
import threading
from typing import Callable

from core.cancel import CancellationToken
from core.config import FoundryConfig
from core.state import LifecycleState
from engine.aliases import find_exact, match_alias, merge_aliases, reconcile
from engine.base import ActivationResult, DownloadProgress, LoadedModel, ModelCatalog, ServiceEndpoint
from engine.chat import ChatRelay
from engine.parser import (
    extract_service_url,
    load_succeeded,
    parse_available_aliases,
    parse_cached_aliases,
    parse_loaded_models,
    progress_from_line,
)
from engine.runner import CommandResult, CommandRunner

logger = logging.getLogger(__name__)

START_TIMEOUT = 60.0
RESTART_PAUSE = 1.0

StateCallback = Callable[[LifecycleState], None]
StatusCallback = Callable[[str], None]
ProgressCallback = Callable[[DownloadProgress], None]


class ModelSupervisor:
    """
    Drives the Foundry CLI through service start, download, load and health
    verification for one model at a time.

    Owns the ServiceEndpoint and the alias -> runtime id map. The active model is
    only recorded after a successful health probe and runtime id resolution, or
    when the service already reports the alias as loaded.
    """

    def __init__(
        self,
        runner: CommandRunner,
        relay: ChatRelay,
        config: FoundryConfig | None = None,
        on_state: StateCallback | None = None,
        on_status: StatusCallback | None = None,
        on_progress: ProgressCallback | None = None,
    ):
        self.runner = runner
        self.relay = relay
        self.config = config or FoundryConfig()
        self.on_state = on_state
        self.on_status = on_status
        self.on_progress = on_progress

        self.endpoint = ServiceEndpoint()
        self.active_model: str | None = None
        self.state = LifecycleState.IDLE
        self._runtime_ids: dict[str, str] = {}
        self._token: CancellationToken | None = None
        self._lock = threading.Lock()

        relay.bind_resolver(self.resolve_runtime_id)

    # ---------------- reporting ----------------

    def _transition(self, state: LifecycleState) -> None:
        self.state = state
        logger.info("lifecycle -> %s", state.name)
        if self.on_state is not None:
            try:
                self.on_state(state)
            except Exception:
                logger.exception("state callback failed")

    def _status(self, message: str) -> None:
        logger.info(message)
        if self.on_status is not None:
            try:
                self.on_status(message)
            except Exception:
                logger.exception("status callback failed")

    def _progress(self, progress: DownloadProgress) -> None:
        if self.on_progress is not None:
            try:
                self.on_progress(progress)
            except Exception:
                logger.exception("progress callback failed")

    def _finish(self, state: LifecycleState, message: str, alias: str, runtime_id: str | None = None) -> ActivationResult:
        ok = state == LifecycleState.READY
        if not ok and self.active_model and self.active_model.lower() == alias.lower():
            self.active_model = None
        self._transition(state)
        self._status(message)
        return ActivationResult(ok=ok, state=state, message=message, alias=alias, runtime_id=runtime_id)

    def _cancelled(self, alias: str) -> ActivationResult:
        return self._finish(LifecycleState.CANCELLED, f"Activation of {alias} cancelled.", alias)

    def _failed(self, alias: str, message: str) -> ActivationResult:
        return self._finish(LifecycleState.FAILED, message, alias)

    # ---------------- service ----------------

    def _run(self, args: list[str], token: CancellationToken | None, timeout: float | None = None) -> CommandResult:
        return self.runner.run(args, token=token, timeout=timeout)

    def _set_endpoint(self, url: str | None) -> ServiceEndpoint:
        previous = self.endpoint.url
        self.endpoint = ServiceEndpoint(url=url, is_running=url is not None)
        if url is not None:
            if previous and previous != url:
                # a new service instance knows none of the old runtime ids
                self._runtime_ids.clear()
            self.relay.set_base_url(url)
        return self.endpoint

    def probe_service(self, token: CancellationToken | None = None) -> ServiceEndpoint:
        result = self._run(["service", "status"], token, self.config.status_timeout_seconds)
        url = extract_service_url(result.stdout) if result.exit_code == 0 else None
        if url is None:
            url = extract_service_url(result.stderr) if result.exit_code == 0 else None
        logger.info("service status: %s", url or "not running")
        return self._set_endpoint(url)

    def start_service(self, token: CancellationToken | None = None) -> str | None:
        self._status("Starting Foundry service...")
        result = self._run(["service", "start"], token, START_TIMEOUT)
        url = extract_service_url(result.stdout) or extract_service_url(result.stderr)
        if url is None and not (token is not None and token.cancelled):
            # start can return before printing; ask once more
            url = self.probe_service(token).url
        if url is None:
            logger.warning("service start gave no url (exit %s): %s", result.exit_code, result.stderr.strip())
            self._set_endpoint(None)
            return None
        self._set_endpoint(url)
        self._status(f"Foundry service running at {url}")
        return url

    def stop_service(self, token: CancellationToken | None = None) -> bool:
        result = self._run(["service", "stop"], token, self.config.status_timeout_seconds)
        self._forget_models()
        self.endpoint = ServiceEndpoint()
        if result.ok:
            self._status("Foundry service stopped.")
        else:
            logger.warning("service stop failed (exit %s): %s", result.exit_code, result.stderr.strip())
        return result.ok

    def restart_service(self, token: CancellationToken | None = None) -> str | None:
        token = token or CancellationToken()
        self.stop_service(token)
        if token.wait(RESTART_PAUSE):
            return None
        return self.start_service(token)

    def _forget_models(self) -> None:
        self.active_model = None
        self._runtime_ids.clear()

    # ---------------- catalog ----------------

    def list_available(self, token: CancellationToken | None = None) -> list[str]:
        result = self._run(["model", "list"], token)
        if result.exit_code != 0:
            logger.warning("model list failed (exit %s)", result.exit_code)
            return []
        return parse_available_aliases(result.stdout)

    def list_cached(self, token: CancellationToken | None = None) -> list[str]:
        result = self._run(["cache", "list"], token, self.config.status_timeout_seconds)
        if result.exit_code != 0:
            logger.warning("cache list failed (exit %s)", result.exit_code)
            return []
        return parse_cached_aliases(result.stdout)

    def is_cached(self, alias: str, token: CancellationToken | None = None) -> bool:
        wanted = alias.lower()
        cached = self.list_cached(token)
        hit = any(name.lower() == wanted or wanted in name.lower() for name in cached)
        logger.debug("cached=%s -> %s is %s", cached, alias, "cached" if hit else "not cached")
        return hit

    def list_loaded_models(self, token: CancellationToken | None = None) -> list[LoadedModel]:
        result = self._run(["service", "list"], token, self.config.status_timeout_seconds)
        if result.exit_code != 0:
            logger.warning("service list failed (exit %s)", result.exit_code)
            return []
        return parse_loaded_models(result.stdout)

    def list_loaded(self, token: CancellationToken | None = None) -> list[str]:
        return [model.alias for model in self.list_loaded_models(token)]

    def resolve_runtime_id(self, alias: str, token: CancellationToken | None = None) -> str | None:
        """Runtime id the service uses for `alias`, or None when not loaded."""
        if not alias:
            return None
        key = alias.lower()
        cached = self._runtime_ids.get(key)
        if cached:
            return cached
        loaded = self.list_loaded_models(token)
        return self._remember_runtime_id(alias, loaded)

    def _remember_runtime_id(self, alias: str, loaded: list[LoadedModel]) -> str | None:
        by_alias = {model.alias.lower(): model for model in loaded}
        name = match_alias(
            alias,
            [model.alias for model in loaded],
            max_edit_distance=self.config.max_edit_distance,
            min_substring_length=self.config.min_substring_length,
        )
        if name is None:
            logger.info("no loaded model matches %s", alias)
            return None
        model = by_alias[name.lower()]
        runtime_id = model.model_id or model.alias
        self._runtime_ids[alias.lower()] = runtime_id
        logger.info("runtime id for %s: %s", alias, runtime_id)
        return runtime_id

    # ---------------- model operations ----------------

    def download_model(self, alias: str, token: CancellationToken | None = None) -> bool:
        def on_line(line: str) -> None:
            logger.debug("download: %s", line)
            self._progress(progress_from_line(line, "Downloading model..."))

        self._status(f"Downloading {alias}...")
        result = self.runner.run_streaming(["model", "download", alias], on_line, token=token)
        if result.ok:
            self._progress(DownloadProgress("Download complete", 100))
        else:
            logger.warning("download of %s failed (exit %s): %s", alias, result.exit_code, result.stderr.strip())
        return result.ok

    def load_model(self, alias: str, token: CancellationToken | None = None) -> bool:
        self._status(f"Loading {alias}...")
        self._progress(DownloadProgress("Loading model...", None))
        result = self._run(["model", "load", alias], token)
        ok = result.exit_code == 0 and not result.cancelled and load_succeeded(result.stdout)
        if not ok:
            logger.warning("load of %s failed (exit %s): %s", alias, result.exit_code, (result.stderr or result.stdout).strip())
        return ok

    def unload_model(self, alias: str | None = None, token: CancellationToken | None = None) -> bool:
        alias = alias or self.active_model
        if not alias:
            return True
        result = self._run(["model", "unload", alias], token)
        self._runtime_ids.pop(alias.lower(), None)
        if self.active_model and self.active_model.lower() == alias.lower():
            self.active_model = None
        if result.ok:
            self._status(f"Unloaded {alias}.")
        else:
            logger.warning("unload of %s failed (exit %s)", alias, result.exit_code)
        return result.ok

    # ---------------- orchestration ----------------

    def ensure_model_ready(self, alias: str, token: CancellationToken | None = None) -> ActivationResult:
        alias = (alias or "").strip()
        token = token or CancellationToken()
        with self._lock:
            self._token = token
        try:
            return self._activate(alias, token)
        finally:
            with self._lock:
                if self._token is token:
                    self._token = None

    def _activate(self, alias: str, token: CancellationToken) -> ActivationResult:
        if not alias:
            return self._failed(alias, "No model selected.")
        if token.cancelled:
            return self._cancelled(alias)

        self._transition(LifecycleState.CHECKING_SERVICE)
        self._status("Checking Foundry service...")
        endpoint = self.probe_service(token)
        if token.cancelled:
            return self._cancelled(alias)
        if not endpoint.is_running:
            self._transition(LifecycleState.STARTING_SERVICE)
            url = self.start_service(token)
            if token.cancelled:
                return self._cancelled(alias)
            if url is None:
                return self._failed(alias, "The Foundry service did not start (no service URL reported).")

        loaded = self.list_loaded_models(token)
        if token.cancelled:
            return self._cancelled(alias)
        already = find_exact(alias, [model.alias for model in loaded])
        if already is not None:
            runtime_id = self._remember_runtime_id(alias, loaded)
            self.active_model = alias
            return self._finish(LifecycleState.READY, f"{alias} is already loaded.", alias, runtime_id)

        self._transition(LifecycleState.CHECKING_CACHE)
        cached = self.is_cached(alias, token)
        if token.cancelled:
            return self._cancelled(alias)
        if not cached:
            self._transition(LifecycleState.DOWNLOADING)
            downloaded = self.download_model(alias, token)
            if token.cancelled:
                return self._cancelled(alias)
            if not downloaded:
                return self._failed(alias, f"Download of {alias} failed.")

        self._transition(LifecycleState.LOADING)
        self._runtime_ids.pop(alias.lower(), None)
        loaded_ok = self.load_model(alias, token)
        if token.cancelled:
            return self._cancelled(alias)
        if not loaded_ok:
            return self._failed(alias, f"Loading {alias} failed.")

        self._transition(LifecycleState.VERIFYING_HEALTH)
        self._status(f"Waiting for {alias} to settle...")
        if token.wait(self.config.settle_delay_seconds):
            return self._cancelled(alias)
        healthy = self.relay.health_ok(timeout=self.config.health_timeout_seconds, token=token)
        if token.cancelled:
            return self._cancelled(alias)
        if not healthy:
            return self._failed(alias, f"{alias} loaded but the service did not answer the health check.")

        runtime_id = self.resolve_runtime_id(alias, token)
        if token.cancelled:
            return self._cancelled(alias)
        if runtime_id is None:
            return self._failed(alias, f"{alias}: model not reported as loaded.")

        self.active_model = alias
        self._progress(DownloadProgress("Model ready", 100))
        return self._finish(LifecycleState.READY, f"{alias} is ready.", alias, runtime_id)

    def discover_models(self, token: CancellationToken | None = None) -> ModelCatalog:
        """Startup pass: make sure the service runs, then pick the model to select."""
        endpoint = self.probe_service(token)
        if not endpoint.is_running and not (token is not None and token.cancelled):
            self.start_service(token)

        available: list[str] = []
        loaded: list[str] = []
        if self.endpoint.is_running:
            available = self.list_available(token)
            loaded = self.list_loaded(token)

        pool = merge_aliases(available, self.config.default_models)
        found = reconcile(
            pool,
            loaded,
            max_edit_distance=self.config.max_edit_distance,
            min_substring_length=self.config.min_substring_length,
        )
        aliases = found.available
        selected = found.match
        if selected is None and self.config.default_model:
            selected = find_exact(self.config.default_model, aliases) or self.config.default_model
            aliases = merge_aliases(aliases, [selected])
        if selected is None and aliases:
            selected = aliases[0]

        if found.match:
            logger.info("selected %s (rule: %s)", found.match, found.rule)
        self._status(f"Found {len(aliases)} models" + (f", {len(loaded)} loaded" if loaded else ""))
        return ModelCatalog(available=aliases, loaded=loaded, selected=selected, service_url=self.endpoint.url)

    def cancel(self) -> None:
        with self._lock:
            token = self._token
        if token is not None:
            logger.info("cancelling activation")
            token.cancel()
        self.runner.cancel_current()
