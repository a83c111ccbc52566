"""
Simple in-memory metrics for Prometheus exposition.
Thread-safe counters.
"""
import threading
from typing import Dict

# (counter name, help text) in exposition order
COUNTERS = (
    ("builds_queued_total", "Builds inserted as pending"),
    ("builds_requeued_total", "Existing builds reset to pending"),
    ("builds_started_total", "Builds claimed or re-run and started"),
    ("builds_succeeded_total", "Builds finished with status success"),
    ("builds_failed_total", "Builds finished with status failed"),
    ("builds_failed_boot_total", "Builds finished with status failed-boot"),
    ("reports_failed_total", "Status reports that could not be delivered"),
)


class Metrics:
    """Thread-safe metrics collection."""

    def __init__(self):
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = {
            "requests_total": 0,
            "requests_2xx": 0,
            "requests_4xx": 0,
            "requests_5xx": 0,
        }
        for name, _ in COUNTERS:
            self._counters[name] = 0

    def inc(self, name: str, value: int = 1) -> None:
        """Increment a counter."""
        with self._lock:
            if name not in self._counters:
                self._counters[name] = 0
            self._counters[name] += value

    def get(self, name: str) -> int:
        """Get a counter value."""
        with self._lock:
            return self._counters.get(name, 0)

    def get_all(self) -> Dict[str, int]:
        """Get all counter values."""
        with self._lock:
            return self._counters.copy()

    def to_prometheus(self) -> str:
        """Export metrics in Prometheus text format."""
        lines = []
        counters = self.get_all()

        lines.append("# HELP deadci_requests_total Total HTTP requests")
        lines.append("# TYPE deadci_requests_total counter")
        lines.append(f"deadci_requests_total {counters['requests_total']}")

        lines.append("# HELP deadci_requests_by_status HTTP requests by status class")
        lines.append("# TYPE deadci_requests_by_status counter")
        lines.append(f'deadci_requests_by_status{{status="2xx"}} {counters["requests_2xx"]}')
        lines.append(f'deadci_requests_by_status{{status="4xx"}} {counters["requests_4xx"]}')
        lines.append(f'deadci_requests_by_status{{status="5xx"}} {counters["requests_5xx"]}')

        for name, help_text in COUNTERS:
            lines.append(f"# HELP deadci_{name} {help_text}")
            lines.append(f"# TYPE deadci_{name} counter")
            lines.append(f"deadci_{name} {counters[name]}")

        return "\n".join(lines) + "\n"


# Global metrics instance
metrics = Metrics()
