# builder/local.py
# Developer machine backend: artifacts and metadata live under .sandci/
from __future__ import annotations

import glob
import json
import shutil
import threading
from pathlib import Path
from typing import Dict, List, Optional

from ..errors import SecretNotFound, TransferError
from ..secrets import SecretsSession
from .base import Builder, Redactor


class LocalBuilder(Builder):
    name = "local"

    def __init__(
        self,
        artifacts_dir: str | Path,
        state_dir: str | Path,
        secrets: Optional[SecretsSession] = None,
        workspace: str | Path = ".",
        redactor: Optional[Redactor] = None,
    ):
        super().__init__(redactor)
        self.artifacts_dir = Path(artifacts_dir)
        self.metadata_file = Path(state_dir) / "metadata.json"
        self.secrets = secrets
        self.workspace = Path(workspace)
        self._lock = threading.Lock()

    # -- artifacts -----------------------------------------------------

    def upload_artifact(self, path: str) -> None:
        matches = sorted(glob.glob(str(self.workspace / path), recursive=True))
        if not matches:
            raise TransferError("no files match artifact path", path)
        for m in matches:
            src = Path(m)
            if src.is_dir():
                continue
            rel = src.relative_to(self.workspace) if src.is_relative_to(self.workspace) else Path(src.name)
            dest = self.artifacts_dir / rel
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(src, dest)

    def download_artifact(self, pattern: str, dest_dir: str) -> List[Path]:
        found = sorted(p for p in self.artifacts_dir.glob(pattern) if p.is_file())
        if not found:
            raise TransferError("no artifacts match", pattern)
        out: List[Path] = []
        for src in found:
            dest = Path(dest_dir) / src.relative_to(self.artifacts_dir)
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(src, dest)
            out.append(dest)
        return out

    # -- secrets -------------------------------------------------------

    def get_secret(self, key: str) -> str:
        if self.secrets is None:
            raise SecretNotFound(key)
        value = self.secrets.get(key)
        self.redact(value)
        return value

    # -- metadata ------------------------------------------------------

    def _read(self) -> Dict[str, str]:
        if not self.metadata_file.exists():
            return {}
        return json.loads(self.metadata_file.read_text(encoding="utf-8"))

    def set_metadata(self, key: str, value: str) -> None:
        with self._lock:
            data = self._read()
            data[key] = value
            self.metadata_file.parent.mkdir(parents=True, exist_ok=True)
            self.metadata_file.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")

    def get_metadata(self, key: str) -> Optional[str]:
        with self._lock:
            return self._read().get(key)
