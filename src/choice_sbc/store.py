"""On-disk rank tables and run metadata."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Any

import pyarrow as pa
import pyarrow.csv as pacsv
import pyarrow.parquet as pq

from .calibration import CalibrationReport, rank_table
from .config import default_store_root


@dataclass(frozen=True)
class StorePaths:
    root: Path
    ranks: Path
    meta: Path


class ResultStore:
    def __init__(self, root: Path | None = None) -> None:
        root = Path(root) if root is not None else default_store_root()
        self._paths = StorePaths(root=root, ranks=root / "ranks", meta=root / "meta")

    @property
    def root(self) -> Path:
        return self._paths.root

    def list_runs(self) -> list[str]:
        if not self._paths.ranks.exists():
            return []
        return sorted(
            path.name.removesuffix(".ranks.parquet")
            for path in self._paths.ranks.glob("*.ranks.parquet")
        )

    def save(
        self,
        name: str,
        report: CalibrationReport,
        config: dict[str, Any] | None = None,
    ) -> tuple[Path, Path]:
        self._paths.ranks.mkdir(parents=True, exist_ok=True)
        self._paths.meta.mkdir(parents=True, exist_ok=True)
        ranks_path = self._paths.ranks / f"{name}.ranks.parquet"
        meta_path = self._paths.meta / f"{name}.meta.json"

        meta = {
            "name": name,
            "generated_date": date.today().isoformat(),
            "config": config or {},
            "report": report.to_dict(),
        }
        pq.write_table(rank_table(report), ranks_path)
        meta_path.write_text(json.dumps(meta, indent=2, sort_keys=True, default=_json_default))
        return ranks_path, meta_path

    def resolve_ranks_path(self, name: str) -> Path:
        path = self._paths.ranks / f"{name}.ranks.parquet"
        if not path.exists():
            raise FileNotFoundError(f"ranks not found for run: {name}")
        return path

    def resolve_meta_path(self, name: str) -> Path:
        path = self._paths.meta / f"{name}.meta.json"
        if not path.exists():
            raise FileNotFoundError(f"metadata not found for run: {name}")
        return path

    def read_ranks(self, name: str) -> pa.Table:
        return pq.read_table(self.resolve_ranks_path(name))

    def read_meta(self, name: str) -> dict:
        return json.loads(self.resolve_meta_path(name).read_text())

    def export_csv(self, name: str, path: Path) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        pacsv.write_csv(self.read_ranks(name), path)
        return path


def _json_default(value: Any) -> Any:
    # numpy scalars in chi-square results
    if hasattr(value, "item"):
        return value.item()
    raise TypeError(f"not JSON serializable: {type(value).__name__}")
