"""
wasm.py - Prebuilt wasm artifacts

The network under test loads externally built wasm modules (transaction code
and validity predicates). The harness treats them as opaque blobs selected
by feature name: it never inspects their contents, only resolves, checksums
and installs them into a run directory.
"""

from __future__ import annotations

import hashlib
import json
import shutil
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from .core import HarnessError


# Test artifacts, one per build feature of the wasm test crate.
TX_NO_OP = "tx_no_op"
TX_WRITE = "tx_write"
TX_READ_STORAGE_KEY = "tx_read_storage_key"
TX_MEMORY_LIMIT = "tx_memory_limit"
TX_PROPOSAL_CODE = "tx_proposal_code"
VP_ALWAYS_TRUE = "vp_always_true"
VP_ALWAYS_FALSE = "vp_always_false"
VP_EVAL = "vp_eval"
VP_MEMORY_LIMIT = "vp_memory_limit"
VP_READ_STORAGE_KEY = "vp_read_storage_key"

KNOWN_ARTIFACTS = (
    TX_NO_OP,
    TX_WRITE,
    TX_READ_STORAGE_KEY,
    TX_MEMORY_LIMIT,
    TX_PROPOSAL_CODE,
    VP_ALWAYS_TRUE,
    VP_ALWAYS_FALSE,
    VP_EVAL,
    VP_MEMORY_LIMIT,
    VP_READ_STORAGE_KEY,
)

CHECKSUMS_FILE = "checksums.json"


class ArtifactNotFound(HarnessError):
    """Raised when a wasm artifact is requested but missing from the wasm directory."""
    pass


def checksum(path: Path) -> str:
    """SHA-256 hex digest of a file."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


class WasmCatalog:
    """
    Resolves wasm artifacts by feature name inside a directory of prebuilt modules.

    Example:
        catalog = WasmCatalog(Path("wasm_for_tests"))
        installed = catalog.install(["vp_always_false"], run_dir / "wasm")
        # {"vp_always_false": "<run_dir>/wasm/vp_always_false.<hash8>.wasm"}
    """

    def __init__(self, wasm_dir: Optional[Path]):
        self.wasm_dir = Path(wasm_dir) if wasm_dir else None

    def available(self) -> List[str]:
        """Feature names present in the wasm directory, sorted."""
        if self.wasm_dir is None or not self.wasm_dir.is_dir():
            return []
        return sorted(p.stem for p in self.wasm_dir.glob("*.wasm"))

    def resolve(self, name: str) -> Path:
        """
        Return the path of an artifact.

        Args:
            name: Feature name, with or without the .wasm suffix

        Raises:
            ArtifactNotFound: If no wasm directory is configured or the file is missing
        """
        stem = name[:-5] if name.endswith(".wasm") else name
        if self.wasm_dir is None:
            raise ArtifactNotFound(f"no wasm directory configured (wanted {stem})")
        path = self.wasm_dir / f"{stem}.wasm"
        if not path.is_file():
            raise ArtifactNotFound(f"{stem}.wasm not found in {self.wasm_dir}")
        return path

    def install(self, names: Iterable[str], dest_dir: Path) -> Dict[str, str]:
        """
        Copy artifacts into dest_dir under checksum-qualified names.

        Also writes dest_dir/checksums.json mapping "<name>.wasm" to the
        installed file name, the layout nodes expect for their wasm directory.

        Returns:
            Mapping from feature name to the installed path
        """
        dest_dir.mkdir(parents=True, exist_ok=True)
        installed: Dict[str, str] = {}
        checksums: Dict[str, str] = {}
        for name in sorted(set(names)):
            source = self.resolve(name)
            digest = checksum(source)
            target = dest_dir / f"{source.stem}.{digest[:8]}.wasm"
            shutil.copyfile(source, target)
            installed[source.stem] = str(target)
            checksums[source.name] = target.name
        if checksums:
            with open(dest_dir / CHECKSUMS_FILE, "w") as f:
                json.dump(checksums, f, indent=2, sort_keys=True)
        return installed
