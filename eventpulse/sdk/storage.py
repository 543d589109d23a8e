import json
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Protocol

QUEUE_STORAGE_KEY = "eventpulse_queue"


class QueueStorage(Protocol):
    """Local persistence for the client's queue snapshot, overwritten wholesale"""

    def load(self) -> List[Dict[str, Any]]:
        ...

    def save(self, snapshot: List[Dict[str, Any]]) -> None:
        ...

    def clear(self) -> None:
        ...


class MemoryQueueStorage:
    def __init__(self):
        self.snapshot: List[Dict[str, Any]] = []

    def load(self) -> List[Dict[str, Any]]:
        return list(self.snapshot)

    def save(self, snapshot: List[Dict[str, Any]]) -> None:
        self.snapshot = list(snapshot)

    def clear(self) -> None:
        self.snapshot = []


class FileQueueStorage:
    """JSON file under a well-known name; each save replaces the file atomically"""

    def __init__(self, directory: str | os.PathLike, key: str = QUEUE_STORAGE_KEY):
        self.directory = Path(directory)
        self.path = self.directory / f"{key}.json"

    def load(self) -> List[Dict[str, Any]]:
        if not self.path.exists():
            return []
        with self.path.open("r", encoding="utf-8") as f:
            data = json.load(f)
        return data if isinstance(data, list) else []

    def save(self, snapshot: List[Dict[str, Any]]) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.directory, prefix=f".{self.path.name}.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(snapshot, f)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)
