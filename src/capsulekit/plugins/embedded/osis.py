"""format.osis - OSIS XML to IR and back.

Both verse encodings are read: container verses (`<verse osisID>text</verse>`)
and milestones (`<verse sID/>text<verse eID/>`). Notes and headings are not
verse text; dropping them makes extraction lossy (L1).
"""

from __future__ import annotations

import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Any

from capsulekit.books import book_order, by_osis
from capsulekit.ir import ContentBlock, Corpus, Document, load_ir, write_ir
from capsulekit.plugins.embedded.base import EmbeddedPlugin, sniff

OSIS_NS = "http://www.bibletechnologies.net/2003/OSIS/namespace"
XML_LANG = "{http://www.w3.org/XML/1998/namespace}lang"

_SKIPPED = frozenset({"note", "title", "header", "reference"})


def _local(tag: Any) -> str:
    return tag.rsplit("}", 1)[-1] if isinstance(tag, str) else ""


def _strongs(lemma: str) -> list[str]:
    out = []
    for token in lemma.split():
        if token.startswith("strong:"):
            out.append(token[len("strong:") :])
    return out


class _Reader:
    def __init__(self) -> None:
        self.documents: list[Document] = []
        self.book: Document | None = None
        self.verse_id = ""
        self.parts: list[str] = []
        self.strongs: list[str] = []
        self.dropped = 0

    def walk(self, el: ET.Element) -> None:
        tag = _local(el.tag)
        if tag in _SKIPPED:
            if tag != "header":
                self.dropped += 1
            return

        container = False
        if tag == "div" and el.get("type") == "book":
            self._start_book(el.get("osisID", ""))
        elif tag == "verse":
            if el.get("eID"):
                self._close_verse()
                return
            self._open_verse(el.get("osisID") or el.get("sID", ""))
            container = not el.get("sID")
        elif tag == "w" and self.verse_id:
            self.strongs.extend(_strongs(el.get("lemma", "")))

        self._text(el.text)
        for child in el:
            self.walk(child)
            self._text(child.tail)

        if container:
            self._close_verse()

    def finish(self) -> list[Document]:
        self._close_verse()
        return self.documents

    def _start_book(self, osis_id: str) -> None:
        self._close_verse()
        book = by_osis(osis_id)
        self.book = Document(
            id=osis_id,
            title=book.name if book else osis_id,
            order=book_order(osis_id) or len(self.documents) + 1,
        )
        self.documents.append(self.book)

    def _open_verse(self, osis_id: str) -> None:
        self._close_verse()
        # "Gen.1.1 Gen.1.2" spans; the first reference names the block.
        ref = osis_id.split()[0] if osis_id.split() else ""
        book_id = ref.split(".", 1)[0]
        if self.book is None or self.book.id != book_id:
            self._start_book(book_id)
        self.verse_id = ref

    def _text(self, text: str | None) -> None:
        if self.verse_id and text:
            self.parts.append(text)

    def _close_verse(self) -> None:
        if not self.verse_id or self.book is None:
            self.verse_id = ""
            return
        text = " ".join("".join(self.parts).split())
        self.book.content_blocks.append(
            ContentBlock(id=self.verse_id, text=text, strongs=list(self.strongs))
        )
        self.verse_id = ""
        self.parts = []
        self.strongs = []


def parse_osis(path: Path) -> tuple[Corpus, int]:
    """Parse an OSIS file; returns the corpus and the count of dropped elements."""
    root = ET.parse(path).getroot()
    osis_text = next((el for el in root.iter() if _local(el.tag) == "osisText"), root)

    corpus = Corpus(
        id=osis_text.get("osisIDWork", "") or path.name.split(".")[0],
        language=osis_text.get(XML_LANG, ""),
        source_format="osis",
    )
    header = next((el for el in osis_text if _local(el.tag) == "header"), None)
    work = None
    if header is not None:
        work = next((el for el in header if _local(el.tag) == "work"), None)
    if work is not None:
        for child in work:
            if _local(child.tag) == "title" and child.text and not corpus.title:
                corpus.title = child.text.strip()
            elif _local(child.tag) == "refSystem" and child.text:
                corpus.versification = child.text.strip().removeprefix("Bible.")

    reader = _Reader()
    reader.walk(osis_text)
    corpus.documents = reader.finish()
    return corpus, reader.dropped


def render_osis(corpus: Corpus) -> bytes:
    ET.register_namespace("", OSIS_NS)
    ns = f"{{{OSIS_NS}}}"
    root = ET.Element(f"{ns}osis")
    text_el = ET.SubElement(root, f"{ns}osisText", {"osisIDWork": corpus.id, "osisRefWork": "Bible"})
    if corpus.language:
        text_el.set(XML_LANG, corpus.language)

    header = ET.SubElement(text_el, f"{ns}header")
    work = ET.SubElement(header, f"{ns}work", {"osisWork": corpus.id})
    ET.SubElement(work, f"{ns}title").text = corpus.title or corpus.id
    if corpus.versification:
        ET.SubElement(work, f"{ns}refSystem").text = f"Bible.{corpus.versification}"

    for doc in corpus.documents:
        book_el = ET.SubElement(text_el, f"{ns}div", {"type": "book", "osisID": doc.id})
        chapter_el: ET.Element | None = None
        chapter_no = -1
        for block in doc.content_blocks:
            if block.chapter != chapter_no or chapter_el is None:
                chapter_no = block.chapter
                chapter_el = ET.SubElement(
                    book_el, f"{ns}chapter", {"osisID": f"{doc.id}.{chapter_no}"}
                )
            ET.SubElement(chapter_el, f"{ns}verse", {"osisID": block.id}).text = block.text

    ET.indent(root)
    return ET.tostring(root, encoding="utf-8", xml_declaration=True)


class OsisPlugin(EmbeddedPlugin):
    plugin_id = "format.osis"
    inputs = ("osis",)
    outputs = ("osis", "ir")
    suffixes = (".osis", ".osis.xml", ".xml")
    can_extract = True
    can_emit = True

    def detect(self, path: Path) -> dict[str, Any]:
        if path.is_file() and sniff(path, b"<osis"):
            return {"detected": True, "format": "osis", "reason": "osis root element"}
        return {"detected": False, "reason": "no <osis> element"}

    def extract_ir(self, path: Path, output_dir: Path) -> dict[str, Any]:
        corpus, dropped = parse_osis(path)
        corpus.loss_class = "L1" if dropped else "L0"
        ir_path = write_ir(corpus, output_dir / f"{corpus.id}.ir.json")
        report: dict[str, Any] = {
            "source_format": "osis",
            "target_format": "ir",
            "loss_class": corpus.loss_class,
        }
        if dropped:
            report["warnings"] = [f"{dropped} notes/titles/references not carried into IR"]
        return {"ir_path": str(ir_path), "loss_class": corpus.loss_class, "loss_report": report}

    def emit_native(self, ir_path: Path, output_dir: Path) -> dict[str, Any]:
        corpus = load_ir(ir_path)
        output_dir.mkdir(parents=True, exist_ok=True)
        out = output_dir / f"{corpus.id}.osis.xml"
        out.write_bytes(render_osis(corpus))
        # Strong's numbers are not positioned inside verse text on output.
        loss = "L1" if corpus.has_strongs else "L0"
        return {"output_path": str(out), "format": "osis", "loss_class": loss}
