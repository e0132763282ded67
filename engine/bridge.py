from __future__ import annotations

import logging
from typing import Callable

from PySide6.QtCore import QObject, QThread, Signal

from core.cancel import CancellationToken
from core.config import FoundryConfig
from core.state import AppState, LifecycleState, SystemStatus
from core.task import Task, TaskStatus
from core.threads_db import ThreadsRepository
from engine.base import ActivationResult, DownloadProgress, ModelCatalog
from engine.chat import ChatRelay, ChatResult
from engine.supervisor import ModelSupervisor
from engine.telemetry import SystemMetrics, SystemMonitor

logger = logging.getLogger(__name__)

WORKER_JOIN_MS = 5000


class TaskWorker(QThread):
    trace = Signal(str)
    done = Signal(object, object)

    def __init__(self, task: Task, fn: Callable[[CancellationToken], object]):
        super().__init__()
        self.task = task
        self.fn = fn

    def run(self):
        self.trace.emit(f"→ {self.task.command} started")
        try:
            result = self.fn(self.task.token)
        except Exception as e:
            logger.exception("%s worker failed", self.task.command)
            self.trace.emit(f"ERROR: {self.task.command}: {e}")
            result = e
        self.done.emit(self.task, result)


class EngineBridge(QObject):
    """
    Qt facade over the supervisor, chat relay and telemetry.

    Lifecycle and chat work runs on TaskWorker threads, one at a time: a second
    request while one is in flight is rejected, not queued.
    """

    sig_trace = Signal(str)
    sig_status = Signal(SystemStatus)
    sig_lifecycle = Signal(object)
    sig_progress = Signal(str, int)
    sig_activated = Signal(object)
    sig_catalog = Signal(object)
    sig_reply = Signal(str)
    sig_chat_error = Signal(str, str)
    sig_metrics = Signal(object)
    sig_finished = Signal(str, str)

    def __init__(
        self,
        state: AppState,
        supervisor: ModelSupervisor,
        relay: ChatRelay,
        config: FoundryConfig | None = None,
        monitor: SystemMonitor | None = None,
        threads: ThreadsRepository | None = None,
    ):
        super().__init__()
        self.state = state
        self.supervisor = supervisor
        self.relay = relay
        self.config = config or supervisor.config
        self.monitor = monitor
        self.threads = threads
        self.active_task: Task | None = None
        self._workers: list[TaskWorker] = []
        self._handlers: dict = {}
        self._unsubscribe_metrics: Callable[[], None] | None = None

        supervisor.on_state = self.sig_lifecycle.emit
        supervisor.on_status = self.sig_trace.emit
        supervisor.on_progress = self._emit_progress
        self.sig_lifecycle.connect(self._on_lifecycle)
        self.sig_metrics.connect(self._on_metrics)

        if monitor is not None:
            self._unsubscribe_metrics = monitor.subscribe(self.sig_metrics.emit)

    @property
    def busy(self) -> bool:
        return self.active_task is not None

    def _emit_progress(self, progress: DownloadProgress) -> None:
        self.sig_progress.emit(progress.label, -1 if progress.percent is None else progress.percent)

    def _set_status(self, status: SystemStatus) -> None:
        self.state.status = status
        self.sig_status.emit(status)

    # ---------------- dispatch ----------------

    def _submit(self, task: Task, fn: Callable[[CancellationToken], object], on_done: Callable[[Task, object], None]) -> bool:
        if self.active_task is not None:
            self.sig_trace.emit(f"GUARD: rejected task={task.id} command={task.command} (busy)")
            return False

        self.sig_trace.emit(f"GUARD: accepted task={task.id} command={task.command}")
        self.active_task = task
        task.status = TaskStatus.RUNNING

        worker = TaskWorker(task, fn)
        worker.trace.connect(self.sig_trace)
        worker.done.connect(self._on_done)
        worker.finished.connect(self._reap_workers)
        self._handlers[task.id] = on_done
        self._workers.append(worker)
        worker.start()
        return True

    def _on_done(self, task: Task, result) -> None:
        on_done = self._handlers.pop(task.id, None)
        if self.active_task is task:
            self.active_task = None
        if isinstance(result, Exception) or on_done is None:
            task.status = TaskStatus.FAILED
            self._set_status(SystemStatus.ERROR)
            self._set_status(SystemStatus.READY)
        else:
            on_done(task, result)
        self.sig_finished.emit(task.command, str(task.id))
        self.sig_trace.emit(f"GUARD: finished task={task.id} status={task.status.name}")

    def _reap_workers(self) -> None:
        self._workers = [worker for worker in self._workers if not worker.isFinished()]

    # ---------------- commands ----------------

    def discover(self) -> bool:
        task = Task.new("discover")
        return self._submit(task, self.supervisor.discover_models, self._on_catalog)

    def activate(self, alias: str | None = None) -> bool:
        alias = alias or self.state.selected_model
        if not alias:
            self.sig_trace.emit("ERROR: No model selected.")
            return False
        task = Task.new("activate", {"alias": alias})
        accepted = self._submit(task, lambda token: self.supervisor.ensure_model_ready(alias, token), self._on_activated)
        if accepted:
            self.state.selected_model = alias
            self._set_status(SystemStatus.LOADING)
        return accepted

    def unload(self, alias: str | None = None) -> bool:
        alias = alias or self.state.active_model
        task = Task.new("unload", {"alias": alias})
        accepted = self._submit(task, lambda token: self.supervisor.unload_model(alias, token), self._on_unloaded)
        if accepted:
            self._set_status(SystemStatus.UNLOADING)
        return accepted

    def restart_service(self) -> bool:
        task = Task.new("restart")
        accepted = self._submit(task, self.supervisor.restart_service, self._on_restarted)
        if accepted:
            self._set_status(SystemStatus.LOADING)
        return accepted

    def stop_service(self) -> bool:
        task = Task.new("stop_service")
        accepted = self._submit(task, self.supervisor.stop_service, self._on_stopped)
        if accepted:
            self._set_status(SystemStatus.UNLOADING)
        return accepted

    def send_chat(self, history: list[dict], thread_id: str | None = None, temperature: float | None = None) -> bool:
        alias = self.state.active_model or self.state.selected_model
        if not alias:
            self.sig_chat_error.emit("connection", "No model is loaded.")
            return False
        messages = list(history)
        if self.config.system_prompt and not any(m.get("role") == "system" for m in messages):
            messages.insert(0, {"role": "system", "content": self.config.system_prompt})
        temp = self.config.temperature if temperature is None else temperature

        task = Task.new("chat", {"alias": alias, "thread_id": thread_id})
        accepted = self._submit(task, lambda token: self.relay.send_chat(alias, messages, temp, token), self._on_reply)
        if accepted:
            self._set_status(SystemStatus.RUNNING)
            if self.threads is not None and thread_id and history and history[-1].get("role") == "user":
                self.threads.add_message(thread_id, "user", history[-1]["content"])
        return accepted

    def cancel(self) -> None:
        task = self.active_task
        self.sig_trace.emit(f"GUARD: STOP task={task.id if task else None}")
        if task is None:
            return
        task.cancel()
        if task.command in ("activate", "discover", "unload", "restart", "stop_service"):
            self.supervisor.cancel()

    def shutdown(self) -> None:
        self.cancel()
        if self._unsubscribe_metrics is not None:
            self._unsubscribe_metrics()
            self._unsubscribe_metrics = None
        if self.monitor is not None:
            self.monitor.stop()
        for worker in list(self._workers):
            if worker.isRunning():
                worker.requestInterruption()
                worker.wait(WORKER_JOIN_MS)

    # ---------------- results ----------------

    def _on_catalog(self, task: Task, catalog: ModelCatalog) -> None:
        task.status = TaskStatus.DONE
        self.state.set_service(catalog.service_url)
        self.state.set_models(catalog.available, catalog.selected)
        self.sig_catalog.emit(catalog)
        self._set_status(SystemStatus.READY)

    def _on_activated(self, task: Task, result: ActivationResult) -> None:
        if result.ok:
            task.status = TaskStatus.DONE
            self.state.active_model = result.alias
            self._set_status(SystemStatus.READY)
        else:
            task.status = TaskStatus.CANCELLED if result.state == LifecycleState.CANCELLED else TaskStatus.FAILED
            if self.state.active_model and self.state.active_model.lower() == result.alias.lower():
                self.state.active_model = None
            if task.status == TaskStatus.FAILED:
                self._set_status(SystemStatus.ERROR)
            self._set_status(SystemStatus.READY)
        self.state.set_service(self.supervisor.endpoint.url)
        self.sig_activated.emit(result)

    def _on_unloaded(self, task: Task, ok: bool) -> None:
        task.status = TaskStatus.DONE if ok else TaskStatus.FAILED
        self.state.active_model = self.supervisor.active_model
        self._set_status(SystemStatus.READY)

    def _on_restarted(self, task: Task, url: str | None) -> None:
        task.status = TaskStatus.DONE if url else TaskStatus.FAILED
        self.state.active_model = None
        self.state.set_service(url)
        self._set_status(SystemStatus.READY if url else SystemStatus.ERROR)
        if not url:
            self._set_status(SystemStatus.READY)

    def _on_stopped(self, task: Task, ok: bool) -> None:
        task.status = TaskStatus.DONE if ok else TaskStatus.FAILED
        self.state.active_model = None
        self.state.set_service(None)
        if not ok:
            self._set_status(SystemStatus.ERROR)
        self._set_status(SystemStatus.READY)

    def _on_reply(self, task: Task, result: ChatResult) -> None:
        if result.ok:
            task.status = TaskStatus.DONE
            thread_id = task.payload.get("thread_id")
            if self.threads is not None and thread_id:
                self.threads.add_message(thread_id, "assistant", result.text)
            self.sig_reply.emit(result.text)
        else:
            task.status = TaskStatus.CANCELLED if result.error_kind == "cancelled" else TaskStatus.FAILED
            self.sig_chat_error.emit(result.error_kind or "", result.text)
        self._set_status(SystemStatus.READY)

    def _on_lifecycle(self, lifecycle: LifecycleState) -> None:
        self.state.lifecycle = lifecycle

    def _on_metrics(self, metrics: SystemMetrics) -> None:
        self.state.metrics = metrics
