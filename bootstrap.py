import logging
import sys

from PySide6.QtCore import QCoreApplication

from core.config import load_or_create_config
from core.logs import setup_logging
from core.state import AppState
from core.threads_db import ThreadsRepository
from engine.bridge import EngineBridge
from engine.chat import ChatRelay
from engine.counters import NvidiaSmi
from engine.runner import CommandRunner
from engine.supervisor import ModelSupervisor
from engine.telemetry import SystemMonitor

logger = logging.getLogger("foundry_desk")


def main():
    app = QCoreApplication(sys.argv)
    log_path = setup_logging()
    config = load_or_create_config()
    logger.info("starting, log file %s", log_path)

    state = AppState()
    threads = ThreadsRepository()
    threads.initialize()

    runner = CommandRunner(config.foundry_executable, config.command_prefix)
    relay = ChatRelay(
        api_key=config.api_key,
        max_tokens=config.max_tokens,
        chat_timeout=config.chat_timeout_seconds,
        health_timeout=config.health_timeout_seconds,
    )
    supervisor = ModelSupervisor(runner, relay, config)
    vendor = NvidiaSmi(poll_seconds=config.vendor_poll_seconds)
    monitor = SystemMonitor(
        vendor=vendor if vendor.available else None,
        interval=config.telemetry_interval_seconds,
    )
    bridge = EngineBridge(state, supervisor, relay, config, monitor=monitor, threads=threads)

    bridge.sig_trace.connect(lambda line: logger.debug("trace: %s", line))
    bridge.sig_chat_error.connect(lambda kind, text: logger.warning("chat error (%s): %s", kind, text))

    # sync state with a model the service already has loaded
    def on_catalog(catalog):
        if catalog.selected and any(a.lower() == catalog.selected.lower() for a in catalog.loaded):
            bridge.activate(catalog.selected)

    bridge.sig_catalog.connect(on_catalog)

    app.aboutToQuit.connect(bridge.shutdown)
    app.aboutToQuit.connect(threads.close)

    monitor.start()
    bridge.discover()
    return app.exec()


if __name__ == "__main__":
    raise SystemExit(main())
