"""Whole-document JSON persistence."""
import json
import logging
import os
import threading
from typing import Any, Callable, Optional


class JsonDocument:
    """
    One JSON file owned by exactly one in-memory structure.

    ``save`` always rewrites the whole document through a temp file and
    ``os.replace`` so readers never observe a partial write.
    """

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()

    def exists(self) -> bool:
        return os.path.exists(self.path)

    def load(self, default: Optional[Callable[[], Any]] = None) -> Any:
        """Return the parsed document, or ``default()`` if missing or unreadable."""
        fallback = default() if default else None
        with self._lock:
            if not os.path.exists(self.path):
                return fallback
            try:
                with open(self.path, "r", encoding="utf-8") as f:
                    return json.load(f)
            except (OSError, ValueError) as e:
                logging.error(f"Failed to read {self.path}: {e}")
                return fallback

    def save(self, data: Any) -> None:
        payload = json.dumps(data, ensure_ascii=False, indent=2)
        with self._lock:
            directory = os.path.dirname(self.path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            temp_path = f"{self.path}.tmp"
            with open(temp_path, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(temp_path, self.path)

    def delete(self) -> bool:
        with self._lock:
            if not os.path.exists(self.path):
                return False
            os.remove(self.path)
            return True


def reset_documents(*documents: JsonDocument) -> None:
    """Delete every persisted document; the service starts from a clean slate each boot."""
    for document in documents:
        try:
            if document.delete():
                logging.info(f"Reset persisted data: {document.path}")
        except OSError as e:
            logging.error(f"Failed to reset {document.path}: {e}")
