"""format.json - IR rendered as a standalone, verse-per-entry JSON Bible."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from capsulekit.ir import load_ir
from capsulekit.plugins.embedded.base import EmbeddedPlugin


class JsonPlugin(EmbeddedPlugin):
    plugin_id = "format.json"
    inputs = ("ir",)
    outputs = ("json",)
    suffixes = (".json",)
    can_emit = True

    def emit_native(self, ir_path: Path, output_dir: Path) -> dict[str, Any]:
        corpus = load_ir(ir_path)
        payload = {
            "id": corpus.id,
            "title": corpus.title,
            "language": corpus.language,
            "versification": corpus.versification,
            "books": [
                {
                    "id": doc.id,
                    "name": doc.title,
                    "verses": [
                        {"ref": b.id, "chapter": b.chapter, "verse": b.verse, "text": b.text}
                        | ({"strongs": b.strongs} if b.strongs else {})
                        for b in doc.content_blocks
                    ],
                }
                for doc in corpus.documents
            ],
        }
        output_dir.mkdir(parents=True, exist_ok=True)
        out = output_dir / f"{corpus.id}.json"
        out.write_text(json.dumps(payload, ensure_ascii=False, indent=2) + "\n", encoding="utf-8")
        return {"output_path": str(out), "format": "json", "loss_class": "L0"}
