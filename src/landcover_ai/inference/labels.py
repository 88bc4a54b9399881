from __future__ import annotations

import json
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path

from ..errors import LoadError


@dataclass(frozen=True)
class LabelMap:
    """Ordered category names, index-aligned with the model's output vector."""

    names: tuple[str, ...]

    @staticmethod
    def load(path: Path) -> LabelMap:
        """Read a label file.

        Accepted layouts: a JSON array of names, a JSON object keyed by the
        contiguous indices ``"0"..."N-1"``, or plain text with one name per line
        (blank lines and ``#`` comments skipped).
        """
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise LoadError(f"cannot read label file: {path}") from exc
        if path.suffix.lower() == ".json" or text.lstrip().startswith(("[", "{")):
            names = _names_from_json(text)
        else:
            names = _names_from_lines(text)
        return LabelMap.from_names(names)

    @staticmethod
    def from_names(names: list[str] | tuple[str, ...]) -> LabelMap:
        cleaned = tuple(n.strip() for n in names)
        if not cleaned:
            raise LoadError("label file is empty")
        if any(not n for n in cleaned):
            raise LoadError("label names must be non-empty")
        if len(set(cleaned)) != len(cleaned):
            raise LoadError("label names must be unique")
        return LabelMap(names=cleaned)

    def name_for(self, index: int) -> str:
        if not (0 <= index < len(self.names)):
            raise IndexError(f"label index {index} out of range [0, {len(self.names)})")
        return self.names[index]

    def __len__(self) -> int:
        return len(self.names)

    def __iter__(self) -> Iterator[str]:
        return iter(self.names)

    def __contains__(self, name: object) -> bool:
        return name in self.names


def _names_from_json(text: str) -> list[str]:
    try:
        obj: object = json.loads(text)
    except json.JSONDecodeError as exc:
        raise LoadError("label file is not valid JSON") from exc
    if isinstance(obj, list):
        if not all(isinstance(x, str) for x in obj):
            raise LoadError("label array must contain only strings")
        return [str(x) for x in obj]
    if isinstance(obj, dict):
        return _names_from_index_mapping(obj)
    raise LoadError("label JSON must be an array or an object")


def _names_from_index_mapping(obj: dict[object, object]) -> list[str]:
    by_index: dict[int, str] = {}
    for k, v in obj.items():
        key = str(k).strip()
        if not (key.isascii() and key.isdecimal()) or not isinstance(v, str):
            raise LoadError("label object must map integer indices to names")
        by_index[int(key)] = v
    if sorted(by_index) != list(range(len(by_index))):
        raise LoadError("label indices must be contiguous from 0")
    return [by_index[i] for i in range(len(by_index))]


def _names_from_lines(text: str) -> list[str]:
    out: list[str] = []
    for line in text.splitlines():
        s = line.strip()
        if not s or s.startswith("#"):
            continue
        out.append(s)
    return out
