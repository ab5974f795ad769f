"""
Heuristic role assignment for upstream output files.

The provider labels its outputs inconsistently across processing modes, so
roles are picked by regex over ``SeparationFile.label``. Each classifier is
an ordered list of strategies; the first one that returns an assignment
wins. Swapping vocal and instrumental silently corrupts the result, so the
order below matters.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Sequence

from stemflow.core.errors import ClassificationError
from stemflow.separation.client import SeparationFile


def _rx(*patterns: str) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(p) for p in patterns)


VOCAL_LIKE = _rx(r"vocal", r"voice", r"lead", r"back", r"speech", r"clean", r"dry")
NON_VOCAL = _rx(r"instrument", r"instrum", r"music", r"other", r"drum", r"bass")

STRICT_VOCAL = _rx(r"vocal", r"voice", r"acapella")
STRICT_VOCAL_EXCLUDE = _rx(r"back", r"lead", r"instrument", r"instrum", r"music", r"other", r"drum", r"bass")
STRICT_INSTRUMENTAL = _rx(r"instrument", r"instrum", r"music", r"karaoke", r"no[_ -]?vocal")
STRICT_INSTRUMENTAL_EXCLUDE = _rx(r"vocal", r"voice", r"lead", r"back")
INSTRUMENTAL_KEYWORD = _rx(r"instrument|instrum|karaoke|no[_ -]?vocal|music")

LEAD = _rx(r"lead", r"main")
LEAD_EXCLUDE = _rx(r"back", r"instrument", r"music", r"other")
BACK = _rx(r"back", r"bv", r"background")
BACK_EXCLUDE = _rx(r"lead", r"main", r"instrument", r"music", r"other")


@dataclass(frozen=True)
class VocalSplit:
    vocal: SeparationFile
    instrumental: Optional[SeparationFile]


@dataclass(frozen=True)
class LeadBackSplit:
    lead: SeparationFile
    back: SeparationFile


def _matches(label: str, patterns: Iterable[re.Pattern[str]]) -> bool:
    return any(p.search(label) for p in patterns)


def find_by_rules(
    files: Sequence[SeparationFile],
    include: Sequence[re.Pattern[str]],
    exclude: Sequence[re.Pattern[str]] = (),
) -> Optional[SeparationFile]:
    for f in files:
        if _matches(f.label, include) and not _matches(f.label, exclude):
            return f
    return None


def pick_single_vocal_like(files: Sequence[SeparationFile]) -> Optional[SeparationFile]:
    """First vocal-looking file, else the first file, else None."""
    return find_by_rules(files, VOCAL_LIKE, NON_VOCAL) or (files[0] if files else None)


# ---------- vocal / instrumental ----------

def _strict_vocal_instrumental(files: Sequence[SeparationFile]) -> Optional[VocalSplit]:
    vocal = find_by_rules(files, STRICT_VOCAL, STRICT_VOCAL_EXCLUDE)
    instrumental = find_by_rules(files, STRICT_INSTRUMENTAL, STRICT_INSTRUMENTAL_EXCLUDE)
    if vocal is not None and instrumental is not None:
        return VocalSplit(vocal=vocal, instrumental=instrumental)
    return None


def _keyword_instrumental(files: Sequence[SeparationFile]) -> Optional[VocalSplit]:
    if len(files) < 2:
        return None
    instrumental = find_by_rules(files, INSTRUMENTAL_KEYWORD)
    if instrumental is None:
        return None
    other = next((f for f in files if f is not instrumental), None)
    if other is None:
        return None
    return VocalSplit(vocal=other, instrumental=instrumental)


def _positional_pair(files: Sequence[SeparationFile]) -> Optional[VocalSplit]:
    if len(files) < 2:
        return None
    return VocalSplit(vocal=files[0], instrumental=files[1])


def _single_vocal(files: Sequence[SeparationFile]) -> Optional[VocalSplit]:
    vocal = pick_single_vocal_like(files)
    return VocalSplit(vocal=vocal, instrumental=None) if vocal is not None else None


VOCAL_INSTRUMENTAL_STRATEGIES: tuple[Callable[[Sequence[SeparationFile]], Optional[VocalSplit]], ...] = (
    _strict_vocal_instrumental,
    _keyword_instrumental,
    _positional_pair,
    _single_vocal,
)


def classify_vocal_and_instrumental(files: Sequence[SeparationFile]) -> VocalSplit:
    for strategy in VOCAL_INSTRUMENTAL_STRATEGIES:
        split = strategy(files)
        if split is not None:
            return split
    raise ClassificationError(
        "no output files to classify as vocal/instrumental",
        user_message="Could not identify the vocal and instrumental stems: the separation returned no files.",
    )


# ---------- lead / back ----------

def _pick_lead(files: Sequence[SeparationFile]) -> Optional[SeparationFile]:
    return find_by_rules(files, LEAD, LEAD_EXCLUDE) or pick_single_vocal_like(files)


def _pick_back(files: Sequence[SeparationFile], lead: SeparationFile) -> Optional[SeparationFile]:
    strict = find_by_rules(files, BACK, BACK_EXCLUDE)
    if strict is not None and strict is not lead:
        return strict
    # any remaining file that does not look like an instrument stem
    return next((f for f in files if f is not lead and not _matches(f.label, NON_VOCAL)), None)


def classify_lead_and_back(files: Sequence[SeparationFile]) -> LeadBackSplit:
    names = ", ".join(f.download_name for f in files)
    lead = _pick_lead(files)
    if lead is None:
        raise ClassificationError(
            "no lead vocal candidate",
            user_message="Could not identify the lead vocal stem: the separation returned no files.",
        )
    back = _pick_back(files, lead)
    if back is None:
        raise ClassificationError(
            f"no back vocal candidate among: {names}",
            user_message=f"Could not identify the back vocal stem. Files: {names}",
        )
    return LeadBackSplit(lead=lead, back=back)
