import threading
from pathlib import Path

from sitepilot.event_bus import QueueEvent


class EventLog:
    """Buffered JSONL sink for bus events. Subscribe `log` to an EventBus."""

    def __init__(self, log_file="events.jsonl", batch_size=10):
        self.log_file = Path(log_file)
        self.batch_size = batch_size
        self._buffer = []
        self._lock = threading.Lock()

    def log(self, event: QueueEvent):
        with self._lock:
            self._buffer.append(event.model_dump_json() + "\n")
            if len(self._buffer) >= self.batch_size:
                self._flush_locked()

    def flush(self):
        with self._lock:
            self._flush_locked()

    def _flush_locked(self):
        if not self._buffer:
            return
        self.log_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self.log_file, "a") as f:
            f.writelines(self._buffer)
        self._buffer.clear()
