from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import ValidationError

from runguard.exceptions import NotFoundError
from .schema import RunbookDefinition

logger = logging.getLogger(__name__)

_SUFFIXES = (".yaml", ".yml", ".json")


def discover_runbooks(packs_dir: Optional[Path] = None) -> List[dict]:
    """
    Discover all runbooks in the packs directory and return them as summaries.

    Invalid pack files are logged and skipped so one broken file does not hide the rest.
    """
    registry = RunbookRegistry(packs_dir)
    runbooks = []
    for name in registry.list():
        try:
            runbook = registry.load(name)
        except (ValidationError, ValueError, yaml.YAMLError) as e:
            logger.warning(f"Skipping invalid runbook pack {name}: {e}")
            continue
        runbooks.append({
            "id": runbook.id,
            "name": runbook.name,
            "file": name,
            "steps": len(runbook.steps),
        })
    return runbooks


class RunbookRegistry:
    def __init__(self, packs_dir: Optional[Path] = None) -> None:
        self.packs_dir = Path(packs_dir) if packs_dir else (Path(__file__).parent.parent / "packs")

    def list(self) -> List[str]:
        if not self.packs_dir.exists():
            return []
        names = set()
        for suffix in _SUFFIXES:
            for p in self.packs_dir.glob(f"*{suffix}"):
                names.add(p.stem)
        return sorted(names)

    def load(self, name: str) -> RunbookDefinition:
        for suffix in _SUFFIXES:
            path = self.packs_dir / f"{name}{suffix}"
            if path.exists():
                return self.load_file(path)
        raise NotFoundError("Runbook", name)

    @staticmethod
    def load_file(path: Path) -> RunbookDefinition:
        path = Path(path)
        if not path.exists():
            raise NotFoundError("Runbook file", str(path))
        text = path.read_text("utf-8")
        data: Dict[str, Any]
        if path.suffix == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
        if not isinstance(data, dict):
            raise ValueError(f"runbook file {path} must contain a mapping")
        data.setdefault("id", path.stem)
        return RunbookDefinition.model_validate(data)
