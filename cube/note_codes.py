"""
Fixed vocabulary of note codes that may annotate a data value.
"""

from typing import List, Set, Iterable
import enum


class NoteCode(str, enum.Enum):
    AVERAGE = "a"
    BREAK_IN_SERIES = "b"
    CONFIDENTIAL = "c"
    ESTIMATED = "e"
    FORECAST = "f"
    LOW_FIGURE = "k"
    LOW_RELIABILITY = "u"
    MISSING_DATA = "x"
    NOT_APPLICABLE = "z"
    NOT_RECORDED = "w"
    NOT_STATISTICALLY_SIGNIFICANT = "ns"
    PROVISIONAL = "p"
    REVISED = "r"
    STATISTICALLY_SIGNIFICANT_L1 = "s"
    STATISTICALLY_SIGNIFICANT_L2 = "ss"
    STATISTICALLY_SIGNIFICANT_L3 = "sss"
    TOTAL = "t"


NOTE_CODE_TAGS = {
    NoteCode.AVERAGE: "average",
    NoteCode.BREAK_IN_SERIES: "break_in_series",
    NoteCode.CONFIDENTIAL: "confidential",
    NoteCode.ESTIMATED: "estimated",
    NoteCode.FORECAST: "forecast",
    NoteCode.LOW_FIGURE: "low_figure",
    NoteCode.NOT_STATISTICALLY_SIGNIFICANT: "not_statistically_significant",
    NoteCode.PROVISIONAL: "provisional",
    NoteCode.REVISED: "revised",
    NoteCode.STATISTICALLY_SIGNIFICANT_L1: "statistically_significant_at_level_1",
    NoteCode.STATISTICALLY_SIGNIFICANT_L2: "statistically_significant_at_level_2",
    NoteCode.STATISTICALLY_SIGNIFICANT_L3: "statistically_significant_at_level_3",
    NoteCode.TOTAL: "total",
    NoteCode.LOW_RELIABILITY: "low_reliability",
    NoteCode.NOT_RECORDED: "not_recorded",
    NoteCode.MISSING_DATA: "missing_data",
    NoteCode.NOT_APPLICABLE: "not_applicable",
}

VALID_NOTE_CODES: Set[str] = {code.value for code in NoteCode}


def split_note_codes(cell: str) -> List[str]:
    """Comma-separated cell -> stripped, lower-cased tokens (empty tokens dropped)"""
    tokens = (token.strip().lower() for token in cell.split(","))
    return [token for token in tokens if token]


def find_bad_note_codes(cells: Iterable[str]) -> List[str]:
    """Tokens not in the vocabulary, in first-seen order without repeats"""
    bad: List[str] = []
    for cell in cells:
        if cell is None:
            continue
        for token in split_note_codes(cell):
            if token not in VALID_NOTE_CODES and token not in bad:
                bad.append(token)
    return bad
