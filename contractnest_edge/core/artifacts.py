import json
from pathlib import Path
from typing import Any, Dict, List, Protocol


class ArtifactStore(Protocol):
    def write_json(self, relative_path: str, data: Dict[str, Any]) -> str:
        """Write JSON data and return the usable path to the stored artifact."""
        ...

    def list_json(self, relative_dir: str) -> List[Dict[str, Any]]:
        """Read every JSON artifact directly under relative_dir."""
        ...


class LocalArtifactStore:
    def __init__(self, base_dir: Path):
        self.base_dir = base_dir
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _resolve(self, relative: str) -> Path:
        base = self.base_dir.resolve()
        path = (base / relative).resolve()
        if path != base and base not in path.parents:
            raise ValueError(f"Artifact path escapes {base}: {relative}")
        return path

    def write_json(self, relative_path: str, data: Dict[str, Any]) -> str:
        path = self._resolve(relative_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        # Write-then-rename so a crashed handler never leaves half a record
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(json.dumps(data, indent=2, default=str), encoding="utf-8")
        tmp.replace(path)
        return str(path)

    def list_json(self, relative_dir: str) -> List[Dict[str, Any]]:
        directory = self._resolve(relative_dir)
        if not directory.exists():
            return []
        return [
            json.loads(p.read_text(encoding="utf-8"))
            for p in sorted(directory.glob("*.json"))
        ]
