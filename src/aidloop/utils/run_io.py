from __future__ import annotations

from dataclasses import asdict, is_dataclass
from enum import Enum
import json
from pathlib import Path
from typing import Any, Dict, Optional, Union


def _serialize_payload(payload: Any) -> Any:
    if hasattr(payload, "to_dict"):
        return payload.to_dict()
    if is_dataclass(payload) and not isinstance(payload, type):
        return asdict(payload)
    if isinstance(payload, Enum):
        return payload.value
    if isinstance(payload, Path):
        return str(payload)
    if isinstance(payload, tuple):
        return list(payload)
    return payload


def write_json(path: Path, payload: Dict[str, Any]) -> None:
    safe_payload = {key: _serialize_payload(value) for key, value in payload.items()}
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(safe_payload, indent=2, sort_keys=True))


def read_state(path: Optional[Union[str, Path]]) -> Optional[Dict[str, Any]]:
    """Loads persisted orchestrator state; a missing file means a fresh start."""
    if path is None:
        return None
    state_path = Path(path)
    if not state_path.is_file():
        return None
    data = json.loads(state_path.read_text())
    if not isinstance(data, dict):
        raise ValueError(f"{state_path} does not contain a state mapping")
    return data


def write_state(path: Union[str, Path], state: Dict[str, Any]) -> None:
    write_json(Path(path), state)
