"""Intermediate representation (IR) documents.

An IR file (`*.ir.json`) holds one corpus: an ordered list of documents
(books), each an ordered list of content blocks (verses) whose ids use the
`Book.Chapter.Verse` form.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

IR_VERSION = "1.0.0"


@dataclass(slots=True)
class ContentBlock:
    id: str
    text: str
    strongs: list[str] = field(default_factory=list)

    @property
    def chapter(self) -> int:
        parts = self.id.split(".")
        return int(parts[1]) if len(parts) > 1 and parts[1].isdigit() else 0

    @property
    def verse(self) -> int:
        parts = self.id.split(".")
        return int(parts[2]) if len(parts) > 2 and parts[2].isdigit() else 0

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"id": self.id, "text": self.text}
        if self.strongs:
            out["strongs"] = list(self.strongs)
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ContentBlock:
        return cls(
            id=str(data.get("id", "")),
            text=str(data.get("text", "")),
            strongs=[str(s) for s in data.get("strongs") or []],
        )


@dataclass(slots=True)
class Document:
    id: str
    title: str = ""
    order: int = 0
    content_blocks: list[ContentBlock] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "order": self.order,
            "content_blocks": [b.to_dict() for b in self.content_blocks],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Document:
        return cls(
            id=str(data.get("id", "")),
            title=str(data.get("title", "")),
            order=int(data.get("order", 0) or 0),
            content_blocks=[ContentBlock.from_dict(b) for b in data.get("content_blocks") or []],
        )


@dataclass(slots=True)
class Corpus:
    id: str
    title: str = ""
    language: str = ""
    versification: str = ""
    module_type: str = "bible"
    source_format: str = ""
    loss_class: str = ""
    version: str = IR_VERSION
    documents: list[Document] = field(default_factory=list)
    attributes: dict[str, str] = field(default_factory=dict)

    @property
    def verse_count(self) -> int:
        return sum(len(d.content_blocks) for d in self.documents)

    @property
    def has_strongs(self) -> bool:
        return any(b.strongs for d in self.documents for b in d.content_blocks)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "version": self.version,
            "id": self.id,
            "title": self.title,
            "language": self.language,
            "versification": self.versification,
            "module_type": self.module_type,
            "source_format": self.source_format,
            "loss_class": self.loss_class,
            "documents": [d.to_dict() for d in self.documents],
        }
        if self.attributes:
            out["attributes"] = dict(self.attributes)
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Corpus:
        if not isinstance(data, dict):
            raise ValueError("IR must be a JSON object")
        return cls(
            id=str(data.get("id", "")),
            title=str(data.get("title", "")),
            language=str(data.get("language", "")),
            versification=str(data.get("versification", "")),
            module_type=str(data.get("module_type", "bible") or "bible"),
            source_format=str(data.get("source_format", "")),
            loss_class=str(data.get("loss_class", "")),
            version=str(data.get("version", IR_VERSION)),
            documents=[Document.from_dict(d) for d in data.get("documents") or []],
            attributes={str(k): str(v) for k, v in (data.get("attributes") or {}).items()},
        )


def load_ir(path: Path) -> Corpus:
    return Corpus.from_dict(json.loads(path.read_text(encoding="utf-8")))


def write_ir(corpus: Corpus, path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(json.dumps(corpus.to_dict(), ensure_ascii=False, indent=2) + "\n", encoding="utf-8")
    os.replace(tmp, path)
    return path
