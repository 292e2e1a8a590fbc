from __future__ import annotations

import json
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from shipwright.errors import RunStateError


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class EnvelopeFile:
    """A JSON document stored as ``{schema_version, revision, updated_at, data}``.

    Writes go through a sibling lock file and an atomic rename, so a crash
    leaves either the previous or the next revision on disk.
    """

    def __init__(self, path: Path, *, schema_version: int) -> None:
        self.path = path
        self.schema_version = schema_version
        self.lock_file = path.with_name(f".{path.name}.lock")

    def exists(self) -> bool:
        return self.path.exists()

    @contextmanager
    def _lock(self, timeout_seconds: float = 3.0) -> Iterator[None]:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > timeout_seconds:
                    raise RunStateError(
                        f"Timed out waiting for state lock {self.lock_file}. "
                        "Another process may be writing this run."
                    ) from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read_raw(self) -> Any:
        if not self.path.exists():
            return None
        try:
            return json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise RunStateError(f"Corrupt state file {self.path}: {exc}") from exc

    def normalize(self, raw_payload: Any) -> dict[str, Any]:
        if (
            isinstance(raw_payload, dict)
            and "schema_version" in raw_payload
            and "data" in raw_payload
            and "revision" in raw_payload
        ):
            return {
                "schema_version": int(raw_payload.get("schema_version") or self.schema_version),
                "revision": int(raw_payload.get("revision") or 1),
                "updated_at": raw_payload.get("updated_at") or utcnow_iso(),
                "data": raw_payload.get("data"),
            }
        # Pre-envelope files hold the bare payload.
        return {
            "schema_version": 0,
            "revision": 0,
            "updated_at": utcnow_iso(),
            "data": raw_payload,
        }

    def read(self) -> dict[str, Any] | None:
        raw = self._read_raw()
        if raw is None:
            return None
        return self.normalize(raw)

    def write(self, data: Any) -> int:
        with self._lock():
            current = self.read()
            revision = (current["revision"] if current else 0) + 1
            envelope = {
                "schema_version": self.schema_version,
                "revision": revision,
                "updated_at": utcnow_iso(),
                "data": data,
            }
            temp_path = self.path.with_name(f".{self.path.name}.{os.getpid()}.tmp")
            temp_path.write_text(
                json.dumps(envelope, ensure_ascii=False, indent=2) + "\n", encoding="utf-8"
            )
            os.replace(temp_path, self.path)
            return revision
