from enum import Enum

from PySide6.QtCore import QObject, Signal

# Coarse engine status shown in the chrome
class SystemStatus(Enum):
    READY = "READY"
    LOADING = "LOADING"
    RUNNING = "RUNNING"
    ERROR = "ERROR"
    UNLOADING = "UNLOADING"

# Model activation state machine
class LifecycleState(Enum):
    IDLE = "IDLE"
    CHECKING_SERVICE = "CHECKING_SERVICE"
    STARTING_SERVICE = "STARTING_SERVICE"
    CHECKING_CACHE = "CHECKING_CACHE"
    DOWNLOADING = "DOWNLOADING"
    LOADING = "LOADING"
    VERIFYING_HEALTH = "VERIFYING_HEALTH"
    READY = "READY"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def terminal(self) -> bool:
        return self in (LifecycleState.READY, LifecycleState.FAILED, LifecycleState.CANCELLED)

# Shared Application State
class AppState(QObject):
    sig_service_url = Signal(str)
    sig_models = Signal(list)

    def __init__(self):
        super().__init__()
        # Service
        self.service_url: str | None = None
        self.service_running: bool = False

        # Models
        self.available_models: list[str] = []
        self.selected_model: str | None = None
        self.active_model: str | None = None
        self.lifecycle: LifecycleState = LifecycleState.IDLE
        self.status: SystemStatus = SystemStatus.READY

        # Resources
        self.metrics = None

    def set_service(self, url: str | None) -> None:
        self.service_url = url
        self.service_running = bool(url)
        self.sig_service_url.emit(url or "")

    def set_models(self, aliases: list[str], selected: str | None) -> None:
        self.available_models = list(aliases)
        self.selected_model = selected
        self.sig_models.emit(list(aliases))
