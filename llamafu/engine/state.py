"""Session state persistence.

A saved state is one directory:
- `manifest.json`: schema, compatibility fingerprint, session counters
- `engine.state`: opaque KV-cache blob written by the backend
- `sampler.pt`: torch payload with the RNG state, last logits and token history

Writes go to a temporary sibling directory which is renamed into place, so a
failed save never leaves a half-written state at the destination.
"""

from __future__ import annotations

import hashlib
import json
import shutil
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Mapping

from .errors import InvalidStateError, StateLoadError

if TYPE_CHECKING:
    from .backends.base import ModelMetadata

SCHEMA = "llamafu.session_state.v1"
MANIFEST_FILE = "manifest.json"
ENGINE_FILE = "engine.state"
SAMPLER_FILE = "sampler.pt"


def _stable_json_dumps(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, ensure_ascii=False, default=str, allow_nan=True)


def compute_compatibility(metadata: "ModelMetadata", *, backend: str) -> dict[str, Any]:
    """Fingerprint of the model facts a saved KV cache depends on."""
    payload = {
        "architecture": metadata.architecture,
        "vocab_size": int(metadata.vocab_size),
        "embedding_size": int(metadata.embedding_size),
        "layer_count": int(metadata.layer_count),
        "backend": backend,
        "schema": SCHEMA,
    }
    fingerprint = hashlib.sha256(_stable_json_dumps(payload).encode("utf-8")).hexdigest()
    return {"fingerprint": fingerprint, "payload": payload}


@dataclass(frozen=True)
class StateManifest:
    created_at: int
    compat: dict[str, Any]
    session: dict[str, Any]
    files: dict[str, str]

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "StateManifest":
        return cls(
            created_at=int(d.get("created_at") or 0),
            compat=dict(d.get("compat") or {}),
            session=dict(d.get("session") or {}),
            files=dict(d.get("files") or {}),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema": SCHEMA,
            "created_at": self.created_at,
            "compat": self.compat,
            "session": self.session,
            "files": self.files,
        }


def write_state(
    destination: str | Path,
    *,
    compat: Mapping[str, Any],
    session: Mapping[str, Any],
    write_engine_state: Callable[[Path], None],
    sampler_payload: Mapping[str, Any],
) -> StateManifest:
    """Write a state directory at `destination`, replacing any existing one."""
    import torch

    final_dir = Path(destination)
    final_dir.parent.mkdir(parents=True, exist_ok=True)
    tmp_dir = final_dir.parent / f".tmp-{final_dir.name}-{uuid.uuid4().hex}"
    tmp_dir.mkdir(parents=True, exist_ok=False)

    try:
        write_engine_state(tmp_dir / ENGINE_FILE)
        torch.save(dict(sampler_payload), tmp_dir / SAMPLER_FILE)

        manifest = StateManifest(
            created_at=int(time.time()),
            compat=dict(compat),
            session=dict(session),
            files={"engine": ENGINE_FILE, "sampler": SAMPLER_FILE},
        )
        (tmp_dir / MANIFEST_FILE).write_text(_stable_json_dumps(manifest.to_dict()), encoding="utf-8")

        if final_dir.exists():
            backup = final_dir.parent / f".old-{final_dir.name}-{uuid.uuid4().hex}"
            final_dir.rename(backup)
            tmp_dir.rename(final_dir)
            shutil.rmtree(backup, ignore_errors=True)
        else:
            tmp_dir.rename(final_dir)
        return manifest
    except BaseException:
        shutil.rmtree(tmp_dir, ignore_errors=True)
        raise


def read_manifest(source: str | Path) -> StateManifest:
    src = Path(source)
    mf = src / MANIFEST_FILE
    if not src.is_dir() or not mf.is_file():
        raise StateLoadError(f"No saved state at {src}.", path=str(src))
    try:
        d = json.loads(mf.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise InvalidStateError(f"Unreadable state manifest: {exc}", path=str(src)) from exc
    if not isinstance(d, dict) or d.get("schema") != SCHEMA:
        raise InvalidStateError("Unsupported state schema.", path=str(src), schema=d.get("schema") if isinstance(d, dict) else None)
    return StateManifest.from_dict(d)


def check_compatible(manifest: StateManifest, compat: Mapping[str, Any], *, path: str | None = None) -> None:
    """Raise `InvalidStateError` if the saved state was produced by a different model."""
    saved = manifest.compat.get("fingerprint") or None
    current = compat.get("fingerprint") or None
    if saved != current:
        saved_arch = (manifest.compat.get("payload") or {}).get("architecture")
        current_arch = (compat.get("payload") or {}).get("architecture")
        raise InvalidStateError(
            "Saved state fingerprint does not match the loaded model.",
            path=path,
            saved_architecture=saved_arch,
            current_architecture=current_arch,
        )


def state_file(source: str | Path, manifest: StateManifest, key: str, default: str) -> Path:
    p = Path(source) / manifest.files.get(key, default)
    if not p.is_file():
        raise StateLoadError(f"Saved state is missing {p.name}.", path=str(source))
    return p


def load_sampler_payload(source: str | Path, manifest: StateManifest) -> dict[str, Any]:
    import torch

    path = state_file(source, manifest, "sampler", SAMPLER_FILE)
    payload = torch.load(path, map_location="cpu")
    if not isinstance(payload, dict):
        raise InvalidStateError("Invalid sampler payload (expected dict).", path=str(source))
    return payload
