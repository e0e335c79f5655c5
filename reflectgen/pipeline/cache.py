"""
Content-addressed cache for the generated artifact set.

The cache entry lives next to the artifacts as a manifest sidecar:

    {"version": 1, "cache_key": "<sha256>", "manifest": {...}}

A lookup only hits when the key matches and every file the manifest
lists is still on disk with the recorded hash.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from ..errors import ArtifactWriteFailure
from ..log import trace
from ..utils import sha256_bytes
from .models import ArtifactManifest
from .writer.atomic_writer import AtomicWriter

logger = logging.getLogger(__name__)

MANIFEST_FILE = "manifest.json"


def compute_cache_key(config_bytes: bytes, fingerprint: str, salt: str = "") -> str:
    """Key of an artifact set.

    Args:
        config_bytes: Raw compiler config contents
        fingerprint: Source fingerprint of the project
        salt: Anything else the output depends on (e.g. the reflection mode)
    """
    parts = [config_bytes, fingerprint.encode("utf-8")]
    if salt:
        parts.append(salt.encode("utf-8"))
    return sha256_bytes(b"\0".join(parts))


class ArtifactCache:
    """Reads and writes the manifest sidecar of an output directory."""

    VERSION = 1

    def __init__(self, output_dir: Path, project_root: Path, atomic_writer: AtomicWriter | None = None):
        self.output_dir = output_dir
        self.project_root = project_root
        self.atomic_writer = atomic_writer or AtomicWriter()

    @property
    def sidecar_path(self) -> Path:
        return self.output_dir / MANIFEST_FILE

    def lookup(self, key: str) -> ArtifactManifest | None:
        """The manifest of the current artifact set, if it was produced for key."""
        try:
            data = json.loads(self.sidecar_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            trace(logger, "cache miss: no manifest")
            return None
        except (OSError, ValueError) as e:
            logger.debug("cache miss: unreadable manifest %s: %s", self.sidecar_path, e)
            return None

        if not isinstance(data, dict) or data.get("version") != self.VERSION:
            trace(logger, "cache miss: manifest format changed")
            return None
        if data.get("cache_key") != key:
            trace(logger, "cache miss: key changed")
            return None
        try:
            manifest = ArtifactManifest.from_dict(data["manifest"])
        except (KeyError, TypeError) as e:
            logger.debug("cache miss: malformed manifest %s: %s", self.sidecar_path, e)
            return None

        for entry in manifest.files:
            path = self.project_root / entry.path
            try:
                current = sha256_bytes(path.read_bytes())
            except OSError:
                trace(logger, "cache miss: %s is missing", entry.path)
                return None
            if current != entry.hash:
                trace(logger, "cache miss: %s was modified", entry.path)
                return None

        trace(logger, "cache hit for %s", key)
        return manifest

    def store(self, key: str, manifest: ArtifactManifest) -> None:
        """Record manifest as the artifact set for key.

        Raises:
            ArtifactWriteFailure: If the sidecar cannot be written
        """
        payload = {"version": self.VERSION, "cache_key": key, "manifest": manifest.to_dict()}
        self.atomic_writer.write(self.sidecar_path, json.dumps(payload, indent=2, sort_keys=True) + "\n", "json")

    def invalidate(self) -> None:
        """Drop the cache entry.

        Raises:
            ArtifactWriteFailure: If the sidecar exists and cannot be removed
        """
        try:
            self.sidecar_path.unlink(missing_ok=True)
        except OSError as e:
            raise ArtifactWriteFailure(f"Cannot remove {self.sidecar_path}: {e}") from e
