"""Canonical book table (Protestant 66) with OSIS and USFM identifiers."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class Book:
    osis: str
    usfm: str
    name: str
    order: int


_TABLE = """\
Gen GEN Genesis
Exod EXO Exodus
Lev LEV Leviticus
Num NUM Numbers
Deut DEU Deuteronomy
Josh JOS Joshua
Judg JDG Judges
Ruth RUT Ruth
1Sam 1SA 1 Samuel
2Sam 2SA 2 Samuel
1Kgs 1KI 1 Kings
2Kgs 2KI 2 Kings
1Chr 1CH 1 Chronicles
2Chr 2CH 2 Chronicles
Ezra EZR Ezra
Neh NEH Nehemiah
Esth EST Esther
Job JOB Job
Ps PSA Psalms
Prov PRO Proverbs
Eccl ECC Ecclesiastes
Song SNG Song of Solomon
Isa ISA Isaiah
Jer JER Jeremiah
Lam LAM Lamentations
Ezek EZK Ezekiel
Dan DAN Daniel
Hos HOS Hosea
Joel JOL Joel
Amos AMO Amos
Obad OBA Obadiah
Jonah JON Jonah
Mic MIC Micah
Nah NAM Nahum
Hab HAB Habakkuk
Zeph ZEP Zephaniah
Hag HAG Haggai
Zech ZEC Zechariah
Mal MAL Malachi
Matt MAT Matthew
Mark MRK Mark
Luke LUK Luke
John JHN John
Acts ACT Acts
Rom ROM Romans
1Cor 1CO 1 Corinthians
2Cor 2CO 2 Corinthians
Gal GAL Galatians
Eph EPH Ephesians
Phil PHP Philippians
Col COL Colossians
1Thess 1TH 1 Thessalonians
2Thess 2TH 2 Thessalonians
1Tim 1TI 1 Timothy
2Tim 2TI 2 Timothy
Titus TIT Titus
Phlm PHM Philemon
Heb HEB Hebrews
Jas JAS James
1Pet 1PE 1 Peter
2Pet 2PE 2 Peter
1John 1JN 1 John
2John 2JN 2 John
3John 3JN 3 John
Jude JUD Jude
Rev REV Revelation
"""

BOOKS: tuple[Book, ...] = tuple(
    Book(osis=osis, usfm=usfm, name=name, order=i)
    for i, (osis, usfm, name) in enumerate(
        (line.split(" ", 2) for line in _TABLE.splitlines() if line), start=1
    )
)

_BY_OSIS = {b.osis.lower(): b for b in BOOKS}
_BY_USFM = {b.usfm: b for b in BOOKS}


def by_osis(osis_id: str) -> Book | None:
    return _BY_OSIS.get(osis_id.lower())


def by_usfm(code: str) -> Book | None:
    return _BY_USFM.get(code.upper())


def osis_from_usfm(code: str) -> str:
    """USFM book code to OSIS id; unknown codes pass through unchanged."""
    book = by_usfm(code)
    return book.osis if book else code


def usfm_from_osis(osis_id: str) -> str:
    book = by_osis(osis_id)
    return book.usfm if book else osis_id.upper()[:3]


def book_order(osis_id: str) -> int:
    book = by_osis(osis_id)
    return book.order if book else 0
