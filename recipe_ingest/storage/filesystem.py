from __future__ import annotations

import asyncio
import json
import re
from pathlib import Path
from typing import Optional

from recipe_ingest.services.logger import log_store_operation
from recipe_ingest.storage.base import ArtifactStore

_SEGMENT_RE = re.compile(r"[^A-Za-z0-9._:-]")
SIDECAR_SUFFIX = ".meta.sidecar"


def _safe_relative(path: str) -> Path:
    parts = [seg for seg in path.replace("\\", "/").split("/") if seg and seg not in (".", "..")]
    if not parts:
        raise ValueError(f"Invalid artifact path: {path!r}")
    return Path(*[_SEGMENT_RE.sub("-", seg) for seg in parts])


class LocalArtifactStore(ArtifactStore):
    """Artifacts as files under root_dir with a JSON sidecar carrying the content type."""

    def __init__(self, root_dir: str = ".cache/artifacts"):
        self.root_dir = Path(root_dir)
        self.root_dir.mkdir(parents=True, exist_ok=True)

    def _resolve(self, path: str) -> Path:
        return self.root_dir / _safe_relative(path)

    async def put(self, path: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        target = self._resolve(path)

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
            sidecar = target.with_name(target.name + SIDECAR_SUFFIX)
            sidecar.write_text(
                json.dumps({"content_type": content_type, "size": len(data)}),
                encoding="utf-8",
            )

        await asyncio.to_thread(_write)
        log_store_operation("put", "artifacts", "success", details=str(target))
        return target.resolve().as_uri()

    async def get(self, path: str) -> Optional[bytes]:
        target = self._resolve(path)
        if not target.is_file():
            return None
        return await asyncio.to_thread(target.read_bytes)

    async def list(self, prefix: str) -> list[str]:
        def _walk() -> list[str]:
            if not self.root_dir.exists():
                return []
            found: list[str] = []
            for item in self.root_dir.rglob("*"):
                if not item.is_file() or item.name.endswith(SIDECAR_SUFFIX):
                    continue
                rel = item.relative_to(self.root_dir).as_posix()
                if rel.startswith(prefix):
                    found.append(rel)
            return sorted(found)

        return await asyncio.to_thread(_walk)

    async def delete(self, path: str) -> bool:
        target = self._resolve(path)

        def _remove() -> bool:
            if not target.is_file():
                return False
            target.unlink()
            target.with_name(target.name + SIDECAR_SUFFIX).unlink(missing_ok=True)
            return True

        removed = await asyncio.to_thread(_remove)
        if removed:
            log_store_operation("delete", "artifacts", "success", details=str(target))
        return removed

    def content_type(self, path: str) -> Optional[str]:
        sidecar = self._resolve(path)
        sidecar = sidecar.with_name(sidecar.name + SIDECAR_SUFFIX)
        if not sidecar.exists():
            return None
        try:
            return json.loads(sidecar.read_text(encoding="utf-8")).get("content_type")
        except json.JSONDecodeError:
            return None
