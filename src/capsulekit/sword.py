"""Minimal reader for SWORD module `.conf` files.

Only the key/value layout is handled: a `[ModuleName]` section header
followed by `Key=Value` lines. Continuation lines and repeated keys keep
the first value.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

# Module drivers that hold verse-keyed Bible text.
BIBLE_DRIVERS = frozenset({"ztext", "ztext4", "rawtext", "rawtext4"})
BIBLE_CATEGORY = "Biblical Texts"


@dataclass(slots=True)
class SwordConf:
    module: str
    values: dict[str, str] = field(default_factory=dict)
    conf_path: Path | None = None

    def get(self, key: str, default: str = "") -> str:
        return self.values.get(key, default)

    @property
    def description(self) -> str:
        return self.get("Description", self.module)

    @property
    def language(self) -> str:
        return self.get("Lang")

    @property
    def versification(self) -> str:
        return self.get("Versification", "KJV")

    @property
    def driver(self) -> str:
        return self.get("ModDrv")

    @property
    def category(self) -> str:
        return self.get("Category")

    @property
    def is_bible(self) -> bool:
        if self.category:
            return self.category == BIBLE_CATEGORY
        return self.driver.lower() in BIBLE_DRIVERS

    @property
    def features(self) -> list[str]:
        """GlobalOptionFilter values such as OSISStrongs, OSISFootnotes."""
        return sorted(set(self.values.get("GlobalOptionFilter", "").split()))


def parse_conf(text: str, filename: str = "") -> SwordConf:
    """Parse `.conf` text; the module name falls back to the file stem."""
    module = ""
    values: dict[str, str] = {}
    filters: list[str] = []

    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("[") and line.endswith("]"):
            if not module:
                module = line[1:-1].strip()
            continue
        key, sep, value = line.partition("=")
        if not sep:
            continue
        key = key.strip()
        value = value.strip()
        if key == "GlobalOptionFilter":
            filters.append(value)
            continue
        values.setdefault(key, value)

    if filters:
        values["GlobalOptionFilter"] = " ".join(filters)
    if not module:
        module = Path(filename).stem if filename else ""
    return SwordConf(module=module, values=values)


def read_conf(path: Path) -> SwordConf:
    conf = parse_conf(path.read_text(encoding="utf-8", errors="replace"), path.name)
    conf.conf_path = path
    return conf


def conf_files(base: Path) -> list[Path]:
    """Sorted `mods.d/*.conf` files under base."""
    mods = base / "mods.d"
    if not mods.is_dir():
        return []
    return sorted(p for p in mods.iterdir() if p.is_file() and p.suffix.lower() == ".conf")
