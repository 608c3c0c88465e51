from .switches import router as switches_router
from .monitor import router as monitor_router
from .triggers import router as triggers_router
from .emergency import router as emergency_router
from .health import router as health_router

__all__ = [
    "switches_router",
    "monitor_router",
    "triggers_router",
    "emergency_router",
    "health_router"
]
