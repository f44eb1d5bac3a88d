"""format.usfm - USFM books to IR and back.

One USFM file holds one book; a Bible is a directory of them, so
extraction reads the given file together with its sibling .usfm/.sfm files.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any

from capsulekit.books import book_order, by_usfm, osis_from_usfm, usfm_from_osis
from capsulekit.ir import ContentBlock, Corpus, Document, load_ir, write_ir
from capsulekit.plugins.embedded.base import EmbeddedPlugin, sibling_files

USFM_SUFFIXES = (".usfm", ".sfm")

_LINE_RE = re.compile(r"^\\(\S+)\s*(.*)$")
_NOTE_RE = re.compile(r"\\(f|fe|x)\s.*?\\\1\*", re.DOTALL)
_WORD_RE = re.compile(r"\\\+?w\s+([^|\\]*?)(?:\|([^\\]*?))?\\\+?w\*")
_STRONG_ATTR_RE = re.compile(r'strong="([^"]+)"')
_MARKER_RE = re.compile(r"\\\+?[a-z0-9]+\*?\s?")

# Paragraph markers whose text continues the current verse.
_FLOW_MARKERS = frozenset({"p", "m", "pi", "pi1", "pi2", "q", "q1", "q2", "q3", "li", "li1", "nb", "pc", "b"})
_TITLE_MARKERS = ("h", "toc2", "toc1", "mt", "mt1")
# Character-level markers; a line starting with one continues the verse.
_CHAR_MARKERS = frozenset({"w", "+w", "add", "nd", "wj", "f", "fe", "x", "qs", "bk", "k", "tl", "sc", "it", "bd", "em"})


def clean_inline(text: str) -> tuple[str, list[str], int]:
    """Strip character markup; returns (text, strong's numbers, dropped notes)."""
    dropped = len(_NOTE_RE.findall(text))
    text = _NOTE_RE.sub("", text)

    strongs: list[str] = []

    def _word(m: re.Match[str]) -> str:
        attrs = m.group(2) or ""
        for value in _STRONG_ATTR_RE.findall(attrs):
            strongs.extend(value.replace(",", " ").split())
        return m.group(1)

    text = _WORD_RE.sub(_word, text)
    text = _MARKER_RE.sub("", text)
    return " ".join(text.split()), strongs, dropped


class _BookParser:
    def __init__(self) -> None:
        self.doc: Document | None = None
        self.titles: dict[str, str] = {}
        self.chapter = 0
        self.verse = ""
        self.parts: list[str] = []
        self.dropped = 0

    def feed(self, text: str) -> Document | None:
        for raw in text.splitlines():
            line = raw.strip()
            if not line:
                continue
            m = _LINE_RE.match(line)
            if m is None:
                self._append(line)
                continue
            marker, rest = m.groups()
            if marker in _CHAR_MARKERS:
                self._append(line)
            elif marker == "id":
                code = rest.split()[0] if rest.split() else ""
                book = by_usfm(code)
                self.doc = Document(
                    id=osis_from_usfm(code),
                    title=book.name if book else code,
                    order=book_order(osis_from_usfm(code)),
                )
            elif marker in _TITLE_MARKERS:
                self.titles.setdefault(marker, rest.strip())
            elif marker == "c":
                self._close()
                number = rest.split()[0] if rest.split() else "0"
                self.chapter = int(number) if number.isdigit() else 0
            elif marker == "v":
                self._close()
                number, _, body = rest.partition(" ")
                self.verse = number.split("-")[0]
                self._append(body)
            elif marker in _FLOW_MARKERS:
                self._append(rest)
            elif self.verse:
                # Headings and other paragraph-level markup inside a chapter.
                self.dropped += 1
        self._close()

        if self.doc is not None:
            for key in _TITLE_MARKERS:
                if self.titles.get(key):
                    self.doc.title = clean_inline(self.titles[key])[0]
                    break
        return self.doc

    def _append(self, text: str) -> None:
        if self.verse and text:
            self.parts.append(text)

    def _close(self) -> None:
        if not self.verse or self.doc is None or not self.chapter:
            self.verse = ""
            self.parts = []
            return
        text, strongs, dropped = clean_inline(" ".join(self.parts))
        self.dropped += dropped
        self.doc.content_blocks.append(
            ContentBlock(id=f"{self.doc.id}.{self.chapter}.{self.verse}", text=text, strongs=strongs)
        )
        self.verse = ""
        self.parts = []


def parse_usfm_files(paths: list[Path]) -> tuple[list[Document], int]:
    documents: list[Document] = []
    dropped = 0
    for path in paths:
        parser = _BookParser()
        doc = parser.feed(path.read_text(encoding="utf-8-sig"))
        dropped += parser.dropped
        if doc is not None:
            documents.append(doc)
    documents.sort(key=lambda d: (d.order == 0, d.order, d.id))
    return documents, dropped


def render_usfm(doc: Document) -> str:
    code = usfm_from_osis(doc.id)
    lines = [f"\\id {code}", f"\\h {doc.title or doc.id}", f"\\mt1 {doc.title or doc.id}"]
    chapter = -1
    for block in doc.content_blocks:
        if block.chapter != chapter:
            chapter = block.chapter
            lines.append(f"\\c {chapter}")
            lines.append("\\p")
        lines.append(f"\\v {block.verse} {block.text}")
    return "\n".join(lines) + "\n"


class UsfmPlugin(EmbeddedPlugin):
    plugin_id = "format.usfm"
    inputs = ("usfm",)
    outputs = ("usfm", "ir")
    suffixes = USFM_SUFFIXES
    can_extract = True
    can_emit = True

    def extract_ir(self, path: Path, output_dir: Path) -> dict[str, Any]:
        files = sibling_files(path, USFM_SUFFIXES)
        documents, dropped = parse_usfm_files(files)
        corpus_id = (path.stem if path.is_file() else path.name) or "usfm"
        if len(documents) > 1:
            corpus_id = path.parent.name if path.is_file() else path.name
        corpus = Corpus(
            id=corpus_id,
            title=corpus_id,
            source_format="usfm",
            loss_class="L1" if dropped else "L0",
            documents=documents,
        )
        ir_path = write_ir(corpus, output_dir / f"{corpus.id}.ir.json")
        return {"ir_path": str(ir_path), "loss_class": corpus.loss_class}

    def emit_native(self, ir_path: Path, output_dir: Path) -> dict[str, Any]:
        corpus = load_ir(ir_path)
        out_dir = output_dir / f"{corpus.id}-usfm"
        out_dir.mkdir(parents=True, exist_ok=True)
        for doc in corpus.documents:
            name = f"{doc.order:02d}-{usfm_from_osis(doc.id)}.usfm"
            (out_dir / name).write_text(render_usfm(doc), encoding="utf-8")
        loss = "L1" if corpus.has_strongs else "L0"
        return {"output_path": str(out_dir), "format": "usfm", "loss_class": loss}
