"""Header-name heuristics mapping uploaded spreadsheet columns onto pile fields."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Sequence

from .normalizers import canonical_key, normalize_text

LOGGER = logging.getLogger(__name__)

UNMAPPED = "__none__"

# Field -> header patterns. Order matters only as a tie-breaker.
PILE_FIELD_PATTERNS: dict[str, tuple[str, ...]] = {
    "pile_id": ("pile id", "pile tag", "tag", "id", "pile name"),
    "pile_number": ("pile number", "pile no", "pile num"),
    "block": ("block", "blocks", "pile block", "pileblock"),
    "zone": ("zone", "area", "section", "pile zone"),
    "pile_location": ("pile location", "location"),
    "pile_type": ("pile type", "type"),
    "pile_size": ("pile size", "size"),
    "pile_color": ("pile color", "pile colour", "color", "colour"),
    "machine": ("machine", "equipment", "rig", "machine id", "equipment id", "machine number"),
    "design_embedment": (
        "design embedment",
        "target embedment",
        "design depth",
        "required embedment",
        "design emb",
    ),
    "embedment": ("embedment", "actual embedment", "final embedment", "embedment depth"),
    "start_z": ("start z", "initial z", "start elevation", "start elev"),
    "end_z": ("end z", "final z", "end elevation", "end elev"),
    "gain_per_30_seconds": ("gain per 30 seconds", "gain per 30", "gain/30", "gain30", "gain"),
    "start_date": ("start date", "date", "installation date", "install date", "drive date"),
    "start_time": ("start time", "begin time"),
    "stop_time": ("stop time", "end time", "finish time"),
    "duration": ("duration", "drive time", "total time", "time", "drive duration"),
    "inspector_name": ("inspector name", "inspector"),
    "notes": ("notes", "note", "comments", "comment", "remarks"),
}

PILE_FIELD_LABELS: dict[str, str] = {
    "pile_id": "Pile ID",
    "pile_number": "Pile Number",
    "block": "Block",
    "zone": "Zone",
    "pile_location": "Pile Location",
    "pile_type": "Pile Type",
    "pile_size": "Pile Size",
    "pile_color": "Pile Color",
    "machine": "Machine",
    "design_embedment": "Design Embedment",
    "embedment": "Embedment",
    "start_z": "Start Z",
    "end_z": "End Z",
    "gain_per_30_seconds": "Gain per 30s",
    "start_date": "Start Date",
    "start_time": "Start Time",
    "stop_time": "Stop Time",
    "duration": "Duration",
    "inspector_name": "Inspector",
    "notes": "Notes",
}

EXACT_SCORE = 3.0
CONTAINS_SCORE = 2.0
CONTAINED_SCORE = 1.0
MIN_PARTIAL_LENGTH = 3


def column_letter(index: int) -> str:
    """0 -> 'A', 25 -> 'Z', 26 -> 'AA'."""

    letters = ""
    index += 1
    while index:
        index, rem = divmod(index - 1, 26)
        letters = chr(65 + rem) + letters
    return letters


def dedupe_headers(headers: Iterable[object]) -> list[str]:
    """Blank headers become 'Column <letter>'; repeats get ' (1)', ' (2)' suffixes."""

    result: list[str] = []
    used: set[str] = set()
    for index, raw in enumerate(headers):
        base = normalize_text(raw) or f"Column {column_letter(index)}"
        text = base
        suffix = 1
        while text.lower() in used:
            text = f"{base} ({suffix})"
            suffix += 1
        used.add(text.lower())
        result.append(text)
    return result


def score_header(header: str, patterns: Sequence[str]) -> float:
    """Score how well ``header`` matches a field's patterns (0 = no match)."""

    header_key = canonical_key(header)
    if not header_key:
        return 0.0
    best = 0.0
    for pattern in patterns:
        pattern_key = canonical_key(pattern)
        if not pattern_key:
            continue
        if header_key == pattern_key:
            score = EXACT_SCORE
        elif len(pattern_key) >= MIN_PARTIAL_LENGTH and pattern_key in header_key:
            score = CONTAINS_SCORE + len(pattern_key) / 100.0
        elif len(header_key) >= MIN_PARTIAL_LENGTH and header_key in pattern_key:
            score = CONTAINED_SCORE + len(header_key) / 100.0
        else:
            continue
        best = max(best, score)
    return best


@dataclass(frozen=True)
class ColumnMapping:
    """Assignment of spreadsheet headers to fields (at most one header per field)."""

    headers: tuple[str, ...]
    fields: dict[str, str] = field(default_factory=dict)
    scores: dict[str, float] = field(default_factory=dict, compare=False)

    def header_for(self, field_name: str) -> str | None:
        return self.fields.get(field_name)

    def mapped(self) -> dict[str, str]:
        return dict(self.fields)

    def unmapped_headers(self) -> list[str]:
        used = set(self.fields.values())
        return [h for h in self.headers if h not in used]

    def with_overrides(self, overrides: Mapping[str, str | int | None]) -> "ColumnMapping":
        """Return a new mapping with user choices applied.

        Values may be a header name, a header index, or None / '__none__' to
        unmap the field. A header chosen for one field is released from any
        other field that had it.
        """

        fields = dict(self.fields)
        for field_name, choice in overrides.items():
            if choice is None or choice == UNMAPPED or choice == "":
                fields.pop(field_name, None)
                continue
            if isinstance(choice, int) and not isinstance(choice, bool):
                if not 0 <= choice < len(self.headers):
                    raise ValueError(f"Column index {choice} is out of range.")
                header = self.headers[choice]
            else:
                header = str(choice)
                if header not in self.headers:
                    raise ValueError(f"Unknown column '{header}'.")
            for other, used in list(fields.items()):
                if used == header and other != field_name:
                    fields.pop(other)
            fields[field_name] = header
        return ColumnMapping(self.headers, fields, {})

    def to_records(self, labels: Mapping[str, str] | None = None) -> list[dict[str, str]]:
        labels = labels or PILE_FIELD_LABELS
        return [
            {"field": name, "label": labels.get(name, name), "column": self.fields.get(name, "")}
            for name in labels
        ]


def infer_column_mapping(
    headers: Sequence[str],
    patterns: Mapping[str, Sequence[str]] | None = None,
) -> ColumnMapping:
    """Greedy best-score assignment of headers to fields."""

    patterns = patterns or PILE_FIELD_PATTERNS
    field_order = {name: idx for idx, name in enumerate(patterns)}
    candidates: list[tuple[float, int, int, str]] = []
    for header_index, header in enumerate(headers):
        for field_name, field_patterns in patterns.items():
            score = score_header(header, field_patterns)
            if score > 0:
                candidates.append((score, field_order[field_name], header_index, field_name))

    candidates.sort(key=lambda item: (-item[0], item[1], item[2]))
    fields: dict[str, str] = {}
    scores: dict[str, float] = {}
    used_headers: set[int] = set()
    for score, _, header_index, field_name in candidates:
        if field_name in fields or header_index in used_headers:
            continue
        fields[field_name] = headers[header_index]
        scores[field_name] = score
        used_headers.add(header_index)

    LOGGER.debug("Inferred column mapping: %s", fields)
    return ColumnMapping(tuple(headers), fields, scores)


def header_row_score(values: Sequence[object], patterns: Mapping[str, Sequence[str]] | None = None) -> float:
    """How header-like a row is: strong matches count 1, weak matches 0.25."""

    mapping = infer_column_mapping([normalize_text(v) for v in values], patterns)
    total = 0.0
    for score in mapping.scores.values():
        total += 1.0 if score >= CONTAINS_SCORE else 0.25
    return total
