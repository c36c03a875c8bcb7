# archive.py
from __future__ import annotations

import json
import logging
import tarfile
import time
from io import BytesIO
from pathlib import Path
from typing import Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

MANIFEST_NAME = "flare_manifest.json"


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file() and not p.is_symlink():
            yield p


def bundle(workdir: str | Path, output: str | Path, manifest: Optional[Dict] = None) -> Path:
    """
    Write every file under workdir into a tar.gz at output.

    Members are stored relative to workdir, under a top-level directory named
    after it. The archive is built next to output and renamed into place, so
    a failed run never leaves a truncated bundle behind. When output lies
    inside workdir it is not archived into itself.
    """
    root = Path(workdir).resolve()
    out = Path(output).expanduser().resolve()
    out.parent.mkdir(parents=True, exist_ok=True)

    prefix = root.name or "flare"
    tmp = out.with_name(out.name + ".tmp")
    try:
        with tarfile.open(str(tmp), mode="w:gz") as tar:
            for f in _iter_files_under(root):
                if f in (out, tmp):
                    continue
                arcname = f"{prefix}/{f.relative_to(root).as_posix()}"
                tar.add(str(f), arcname=arcname, recursive=False)

            if manifest is not None:
                payload = json.dumps(manifest, sort_keys=True, indent=2, ensure_ascii=False).encode("utf-8")
                info = tarfile.TarInfo(name=f"{prefix}/{MANIFEST_NAME}")
                info.size = len(payload)
                info.mtime = int(time.time())
                tar.addfile(info, fileobj=BytesIO(payload))

        tmp.replace(out)
    finally:
        if tmp.exists():
            tmp.unlink(missing_ok=True)

    logger.info("Bundled %s -> %s", root, out)
    return out


def list_members(archive: str | Path) -> List[str]:
    with tarfile.open(str(archive), mode="r:gz") as tar:
        return tar.getnames()
