"""
Lacquer — Confidence Matcher
Turns accumulated capture evidence into ranked catalog candidates and a
decision (auto-match, ask a question). Pure: all reads go through the
`lookup` collaborator, all writes happen in orchestrator/resolver.py.

Signal precedence:
  1. GTIN/barcode exact SKU hit   → score 1.0, text similarity never consulted
  2. brand + shade text similarity (catalog fuzzy search)
  3. image-derived colour, via an injected distance(hexA, hexB) function

The lookup collaborator provides:
    find_by_gtin(gtin) -> Optional[CatalogEntry]
    search_text(brand, shade_name, limit) -> list[(CatalogEntry, similarity)]
    color_entries(limit) -> list[CatalogEntry]       # entries with a hex
"""
import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from orchestrator.capture_types import (
    Candidate,
    CaptureFrame,
    QUESTION_BRAND_SHADE,
    QUESTION_CANDIDATE_SELECT,
    QUESTION_CAPTURE_FRAME,
    SessionMetadata,
)

logger = logging.getLogger("lacquer.capture.matcher")

# Business policy: tune here, not in the state machine
AUTO_MATCH_THRESHOLD = 0.90
CANDIDATE_THRESHOLD = 0.65
MAX_CANDIDATE_OPTIONS = 3

# Colour alone never auto-matches
COLOR_SCORE_CEILING = 0.89
# distance() at or beyond this value scores 0 (OKLAB ΔE units)
COLOR_DISTANCE_SCALE = 0.30
COLOR_SCAN_LIMIT = 500

SIGNAL_BARCODE = "barcode"
SIGNAL_SHADE = "shade_similarity"
SIGNAL_COLOR = "color_similarity"

ACTION_AUTO_MATCH = "auto_match"
ACTION_ASK = "ask"

ColorDistance = Callable[[str, str], float]


@dataclass
class MatchPolicy:
    auto_match_threshold: float = AUTO_MATCH_THRESHOLD
    candidate_threshold: float = CANDIDATE_THRESHOLD
    max_candidate_options: int = MAX_CANDIDATE_OPTIONS


@dataclass
class Hints:
    gtin: Optional[str] = None
    brand: Optional[str] = None
    shade_name: Optional[str] = None
    color_hex: Optional[str] = None
    frame_count: int = 0

    @property
    def has_text(self) -> bool:
        return bool(self.brand or self.shade_name)

    @property
    def has_any(self) -> bool:
        return bool(self.gtin or self.has_text or self.color_hex)

    def fingerprint(self) -> str:
        """Stable key for 'the same evidence set'."""
        raw = json.dumps({
            "gtin": self.gtin,
            "brand": (self.brand or "").lower(),
            "shade": (self.shade_name or "").lower(),
            "hex": self.color_hex,
            "frames": self.frame_count,
        }, sort_keys=True)
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]

    def to_dict(self) -> dict:
        return {
            "gtin": self.gtin,
            "brand": self.brand,
            "shadeName": self.shade_name,
            "colorHex": self.color_hex,
            "frameCount": self.frame_count,
        }


@dataclass
class MatchDecision:
    action: str
    signal: Optional[str]
    hints: Hints
    candidates: List[Candidate] = field(default_factory=list)
    question_key: Optional[str] = None

    @property
    def top(self) -> Optional[Candidate]:
        return self.candidates[0] if self.candidates else None

    @property
    def top_score(self) -> float:
        return self.top.score if self.top else 0.0


def merge_hints(metadata: SessionMetadata, frames: List[CaptureFrame]) -> Hints:
    """Session-level hints win; otherwise the newest frame carrying a field."""
    hints = Hints(
        gtin=metadata.gtin,
        brand=metadata.brand,
        shade_name=metadata.shade_name,
        frame_count=len(frames),
    )
    for frame in sorted(frames, key=lambda f: f.id, reverse=True):
        ex = frame.extracted
        hints.gtin = hints.gtin or ex.gtin
        hints.brand = hints.brand or ex.brand
        hints.shade_name = hints.shade_name or ex.shade_name
        hints.color_hex = hints.color_hex or ex.color_hex
    return hints


def _rank(candidates: List[Candidate]) -> List[Candidate]:
    # score descending, catalog id ascending on ties
    return sorted(candidates, key=lambda c: (-c.score, c.entity_id))


def _clamp(score) -> float:
    try:
        score = float(score)
    except (TypeError, ValueError):
        return 0.0
    return max(0.0, min(1.0, score))


def rank_candidates(hints: Hints, lookup, distance: Optional[ColorDistance] = None,
                    limit: int = 10):
    """Return (signal, ranked candidates) for the strongest available signal."""
    if hints.gtin:
        entry = lookup.find_by_gtin(hints.gtin)
        if entry is not None:
            logger.info(f"Exact barcode hit for GTIN {hints.gtin}: {entry.entity_type} {entry.entity_id}")
            return SIGNAL_BARCODE, [Candidate(
                entity_type=entry.entity_type,
                entity_id=entry.entity_id,
                score=1.0,
                signal=SIGNAL_BARCODE,
                label=entry.label,
                shade_id=entry.shade_id,
            )]

    if hints.has_text:
        results = lookup.search_text(hints.brand, hints.shade_name, limit)
        candidates = [
            Candidate(
                entity_type=entry.entity_type,
                entity_id=entry.entity_id,
                score=_clamp(sim),
                signal=SIGNAL_SHADE,
                label=entry.label,
                shade_id=entry.shade_id,
            )
            for entry, sim in results
        ]
        if candidates:
            return SIGNAL_SHADE, _rank(candidates)[:limit]

    if hints.color_hex and distance is not None:
        candidates = []
        for entry in lookup.color_entries(COLOR_SCAN_LIMIT):
            if not entry.hex:
                continue
            score = 1.0 - float(distance(hints.color_hex, entry.hex)) / COLOR_DISTANCE_SCALE
            score = min(_clamp(score), COLOR_SCORE_CEILING)
            if score > 0:
                candidates.append(Candidate(
                    entity_type=entry.entity_type,
                    entity_id=entry.entity_id,
                    score=score,
                    signal=SIGNAL_COLOR,
                    label=entry.label,
                    shade_id=entry.shade_id,
                ))
        if candidates:
            return SIGNAL_COLOR, _rank(candidates)[:limit]

    return None, []


def decide(hints: Hints, signal: Optional[str], candidates: List[Candidate],
           policy: MatchPolicy = None) -> MatchDecision:
    policy = policy or MatchPolicy()
    top_score = candidates[0].score if candidates else 0.0

    if candidates and top_score >= policy.auto_match_threshold:
        return MatchDecision(ACTION_AUTO_MATCH, signal, hints, candidates[:1])

    if candidates and top_score >= policy.candidate_threshold:
        return MatchDecision(
            ACTION_ASK, signal, hints,
            candidates[:policy.max_candidate_options],
            question_key=QUESTION_CANDIDATE_SELECT,
        )

    # Low confidence or nothing to go on: ask for whichever evidence is missing
    key = QUESTION_CAPTURE_FRAME if hints.frame_count == 0 else QUESTION_BRAND_SHADE
    return MatchDecision(ACTION_ASK, signal, hints, candidates[:policy.max_candidate_options], question_key=key)


def evaluate(metadata: SessionMetadata, frames: List[CaptureFrame], lookup,
             distance: Optional[ColorDistance] = None,
             policy: MatchPolicy = None) -> MatchDecision:
    """Merge hints, rank candidates, apply the confidence policy."""
    hints = merge_hints(metadata, frames)
    if not hints.has_any:
        return decide(hints, None, [], policy)
    signal, candidates = rank_candidates(hints, lookup, distance=distance)
    return decide(hints, signal, candidates, policy)
