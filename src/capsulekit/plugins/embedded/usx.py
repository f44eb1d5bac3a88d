"""format.usx - USX (Unified Scripture XML) books to IR and back.

Verses are milestones (`<verse number sid/>` ... `<verse eid/>`); USX 2
files without `eid` close a verse at the next verse, chapter or book end.
"""

from __future__ import annotations

import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Any

from capsulekit.books import book_order, by_usfm, osis_from_usfm, usfm_from_osis
from capsulekit.ir import ContentBlock, Corpus, Document, load_ir, write_ir
from capsulekit.plugins.embedded.base import EmbeddedPlugin, sibling_files, sniff

USX_SUFFIXES = (".usx",)

# Paragraph styles that carry no verse text.
_HEADING_STYLES = frozenset({"h", "toc1", "toc2", "toc3", "mt", "mt1", "mt2", "s", "s1", "s2", "ms", "r", "d"})
_TITLE_STYLES = ("h", "toc2", "toc1", "mt1", "mt")


class _Reader:
    def __init__(self) -> None:
        self.doc: Document | None = None
        self.titles: dict[str, str] = {}
        self.chapter = 0
        self.verse = ""
        self.parts: list[str] = []
        self.strongs: list[str] = []
        self.dropped = 0

    def walk(self, el: ET.Element) -> None:
        tag = el.tag
        style = el.get("style", "")
        if tag == "book":
            code = el.get("code", "")
            book = by_usfm(code)
            self.doc = Document(
                id=osis_from_usfm(code),
                title=book.name if book else code,
                order=book_order(osis_from_usfm(code)),
            )
            return
        if tag == "chapter":
            self._close()
            if el.get("number"):
                self.chapter = int(el.get("number", "0").split("-")[0] or 0)
            return
        if tag == "verse":
            self._close()
            if el.get("number") and not el.get("eid"):
                self.verse = el.get("number", "").split("-")[0]
            return
        if tag == "note":
            self.dropped += 1
            return
        if tag == "para" and style in _HEADING_STYLES:
            if el.text:
                self.titles.setdefault(style, el.text.strip())
            if self.verse or self.chapter:
                self.dropped += 1
            return
        if tag == "char" and el.get("strong"):
            self.strongs.extend(el.get("strong", "").replace(",", " ").split())

        self._text(el.text)
        for child in el:
            self.walk(child)
            self._text(child.tail)

    def finish(self) -> Document | None:
        self._close()
        if self.doc is not None:
            for style in _TITLE_STYLES:
                if self.titles.get(style):
                    self.doc.title = self.titles[style]
                    break
        return self.doc

    def _text(self, text: str | None) -> None:
        if self.verse and text:
            self.parts.append(text)

    def _close(self) -> None:
        if self.verse and self.doc is not None and self.chapter:
            self.doc.content_blocks.append(
                ContentBlock(
                    id=f"{self.doc.id}.{self.chapter}.{self.verse}",
                    text=" ".join("".join(self.parts).split()),
                    strongs=list(self.strongs),
                )
            )
        self.verse = ""
        self.parts = []
        self.strongs = []


def parse_usx(path: Path) -> tuple[Document | None, int]:
    reader = _Reader()
    reader.walk(ET.parse(path).getroot())
    return reader.finish(), reader.dropped


def render_usx(doc: Document) -> bytes:
    code = usfm_from_osis(doc.id)
    root = ET.Element("usx", {"version": "3.0"})
    ET.SubElement(root, "book", {"code": code, "style": "id"})
    ET.SubElement(root, "para", {"style": "h"}).text = doc.title or doc.id

    chapter = -1
    para: ET.Element | None = None
    for block in doc.content_blocks:
        if block.chapter != chapter or para is None:
            chapter = block.chapter
            ET.SubElement(root, "chapter", {"number": str(chapter), "style": "c", "sid": f"{code} {chapter}"})
            para = ET.SubElement(root, "para", {"style": "p"})
        sid = f"{code} {chapter}:{block.verse}"
        ET.SubElement(para, "verse", {"number": str(block.verse), "style": "v", "sid": sid}).tail = (
            block.text
        )
        ET.SubElement(para, "verse", {"eid": sid})

    ET.indent(root)
    return ET.tostring(root, encoding="utf-8", xml_declaration=True)


class UsxPlugin(EmbeddedPlugin):
    plugin_id = "format.usx"
    inputs = ("usx",)
    outputs = ("usx", "ir")
    suffixes = USX_SUFFIXES
    can_extract = True
    can_emit = True

    def detect(self, path: Path) -> dict[str, Any]:
        if path.is_file() and sniff(path, b"<usx"):
            return {"detected": True, "format": "usx", "reason": "usx root element"}
        return {"detected": False, "reason": "no <usx> element"}

    def extract_ir(self, path: Path, output_dir: Path) -> dict[str, Any]:
        documents: list[Document] = []
        dropped = 0
        for file in sibling_files(path, USX_SUFFIXES):
            doc, n = parse_usx(file)
            dropped += n
            if doc is not None:
                documents.append(doc)
        documents.sort(key=lambda d: (d.order == 0, d.order, d.id))

        corpus_id = path.parent.name if path.is_file() else path.name
        corpus = Corpus(
            id=corpus_id or "usx",
            title=corpus_id,
            source_format="usx",
            loss_class="L1" if dropped else "L0",
            documents=documents,
        )
        ir_path = write_ir(corpus, output_dir / f"{corpus.id}.ir.json")
        return {"ir_path": str(ir_path), "loss_class": corpus.loss_class}

    def emit_native(self, ir_path: Path, output_dir: Path) -> dict[str, Any]:
        corpus = load_ir(ir_path)
        out_dir = output_dir / f"{corpus.id}-usx"
        out_dir.mkdir(parents=True, exist_ok=True)
        for doc in corpus.documents:
            (out_dir / f"{usfm_from_osis(doc.id)}.usx").write_bytes(render_usx(doc))
        loss = "L1" if corpus.has_strongs else "L0"
        return {"output_path": str(out_dir), "format": "usx", "loss_class": loss}
