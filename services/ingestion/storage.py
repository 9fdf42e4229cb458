from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol


@dataclass(frozen=True)
class StoredObject:
    uri: str


class Storage(Protocol):
    def put_bytes(self, *, key: str, blob: bytes, name: str) -> StoredObject: ...
    def get_bytes_if_exists(self, *, key: str, name: str) -> bytes | None: ...
    def put_json_atomic(self, *, key: str, obj: dict, name: str) -> StoredObject: ...
    def get_json_if_exists(self, *, key: str, name: str) -> dict | None: ...


class LocalStorage:
    """One directory per key (batch_<id>, report_<id>), one file per artifact."""

    def __init__(self, root_dir: str) -> None:
        self.root = Path(root_dir)
        self.root.mkdir(parents=True, exist_ok=True)

    def _key_dir(self, key: str) -> Path:
        safe = str(key).replace("\\", "_").replace("/", "_")
        return self.root / safe

    def put_bytes(self, *, key: str, blob: bytes, name: str) -> StoredObject:
        p = self._key_dir(key) / name
        p.parent.mkdir(parents=True, exist_ok=True)
        tmp = p.with_suffix(p.suffix + ".tmp")
        tmp.write_bytes(blob)
        tmp.replace(p)
        return StoredObject(uri=p.resolve().as_uri())

    def get_bytes_if_exists(self, *, key: str, name: str) -> bytes | None:
        p = self._key_dir(key) / name
        if not p.exists():
            return None
        return p.read_bytes()

    def put_json_atomic(self, *, key: str, obj: dict, name: str) -> StoredObject:
        out = self._key_dir(key) / name
        out.parent.mkdir(parents=True, exist_ok=True)

        tmp = out.with_suffix(out.suffix + ".tmp")
        tmp.write_text(json.dumps(obj, indent=2), encoding="utf-8")
        tmp.replace(out)  # atomic on same filesystem

        return StoredObject(uri=out.resolve().as_uri())

    def get_json_if_exists(self, *, key: str, name: str) -> dict | None:
        p = self._key_dir(key) / name
        if not p.exists():
            return None
        return json.loads(p.read_text(encoding="utf-8"))
