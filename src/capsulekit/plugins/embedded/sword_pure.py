"""format.sword-pure - SWORD module trees (mods.d/*.conf) to IR.

Each Bible module described in mods.d becomes one IR corpus carrying the
module metadata. Verse text stored by the binary zText/RawText drivers is
not decoded in-process (loss class L3); an external format.sword-pure
plugin takes over when installed. Results use the multi-module shape.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from capsulekit.ir import Corpus, write_ir
from capsulekit.plugins.embedded.base import EmbeddedPlugin
from capsulekit.sword import SwordConf, conf_files, read_conf


def module_base(path: Path) -> Path | None:
    """Directory holding mods.d, checking a nested capsule/ directory too."""
    for base in (path, path / "capsule"):
        if conf_files(base):
            return base
    return None


def _data_dir(base: Path, conf: SwordConf) -> Path | None:
    data_path = conf.get("DataPath").lstrip("./")
    if not data_path:
        return None
    return base / data_path


class SwordPurePlugin(EmbeddedPlugin):
    plugin_id = "format.sword-pure"
    inputs = ("sword", "sword-pure")
    outputs = ("ir",)
    can_extract = True

    def detect(self, path: Path) -> dict[str, Any]:
        if path.is_dir() and module_base(path) is not None:
            return {"detected": True, "format": "sword-pure", "reason": "mods.d/*.conf present"}
        return {"detected": False, "reason": "no mods.d/*.conf"}

    def extract_ir(self, path: Path, output_dir: Path) -> dict[str, Any]:
        base = module_base(path)
        if base is None:
            raise FileNotFoundError(f"no SWORD module configuration under {path}")

        modules: list[dict[str, Any]] = []
        for conf_path in conf_files(base):
            conf = read_conf(conf_path)
            modules.append(self._extract_module(base, conf, output_dir))
        return {"modules": modules, "count": len(modules)}

    def _extract_module(self, base: Path, conf: SwordConf, output_dir: Path) -> dict[str, Any]:
        name = conf.module
        if not conf.is_bible:
            category = conf.category or conf.driver or "unknown"
            return {"module": name, "status": "skipped", "reason": f"not a Bible text ({category})"}

        data_dir = _data_dir(base, conf)
        attributes = {
            "sword_module": name,
            "sword_driver": conf.driver,
            "sword_version": conf.get("Version"),
            "data_present": str(bool(data_dir and data_dir.exists())).lower(),
        }
        if conf.features:
            attributes["features"] = " ".join(conf.features)

        corpus = Corpus(
            id=name,
            title=conf.description,
            language=conf.language,
            versification=conf.versification,
            module_type="bible",
            source_format="sword",
            loss_class="L3",
            attributes={k: v for k, v in attributes.items() if v},
        )
        ir_path = write_ir(corpus, output_dir / f"{name}.ir.json")
        return {
            "module": name,
            "status": "ok",
            "ir_path": str(ir_path),
            "loss_class": corpus.loss_class,
        }
