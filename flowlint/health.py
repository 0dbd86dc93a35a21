import time
from typing import Any, Dict

from . import __version__
from .jobqueue import JobQueue

BOOT_TS = time.time()

OK, DEGRADED, ERROR = "ok", "degraded", "error"
_ORDER = {OK: 0, DEGRADED: 1, ERROR: 2}


def worst(*statuses: str) -> str:
    return max(statuses, key=lambda s: _ORDER[s])


def uptime_s() -> int:
    return int(time.time() - BOOT_TS)


def check_health(queue: JobQueue, threshold: int = 50) -> Dict[str, Any]:
    """Broker and backlog status, rolled up to the worst component status."""
    started = time.monotonic()
    try:
        queue.ping()
        broker: Dict[str, Any] = {"status": OK, "latency_ms": round((time.monotonic() - started) * 1000, 2)}
    except Exception as e:
        broker = {"status": ERROR, "error": str(e)}

    try:
        waiting = queue.waiting_count()
        backlog: Dict[str, Any] = {"status": DEGRADED if waiting > threshold else OK, "waiting": waiting}
    except Exception as e:
        backlog = {"status": ERROR, "error": str(e)}

    return {
        "status": worst(broker["status"], backlog["status"]),
        "version": __version__,
        "uptime": uptime_s(),
        "checks": {"broker": broker, "queue": backlog},
    }
