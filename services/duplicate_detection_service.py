"""
Duplicate Detection Service for MLS listings

Finds record pairs that likely describe the same physical listing using
weighted fuzzy matching, proposes a resolution and applies it.

overall = 0.4 * address + 0.3 * price + 0.3 * details; pairs scoring below
0.85 are never reported.

Pairwise comparison is restricted to blocks (shared ZIP, or same state within
neighbouring logarithmic price bands). A pair can only reach the threshold if
its address score is at least 0.625 and its price ratio at least 0.75; two
records that disagree on both state and ZIP score at most 0.5 on address, so
blocking never drops a reportable pair.
"""

import asyncio
import copy
import logging
import math
import re
from collections import defaultdict
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from rapidfuzz.distance import Levenshtein

from config.record_id import generate_candidate_id, normalize_mls_id
from .models import (
    CanonicalPropertyRecord,
    DuplicateCandidate,
    DuplicateResolution,
    Media,
    ResolvedAction,
    SuggestedAction,
    utcnow,
)
from .property_store import PropertyStore

logger = logging.getLogger(__name__)

SIMILARITY_THRESHOLD = 0.85
HIGH_CONFIDENCE_THRESHOLD = 0.95

ADDRESS_WEIGHT = 0.4
PRICE_WEIGHT = 0.3
DETAILS_WEIGHT = 0.3

# Price similarity reaches zero at 50% variance
PRICE_VARIANCE_FACTOR = 2.0
BATHROOM_TOLERANCE = 0.5
SQUARE_FEET_MIN_RATIO = 0.9
YEAR_BUILT_TOLERANCE = 2

# Lowest min/max price ratio that can still reach SIMILARITY_THRESHOLD
MIN_MATCHING_PRICE_RATIO = 1 - (
    1 - (SIMILARITY_THRESHOLD - ADDRESS_WEIGHT - DETAILS_WEIGHT) / PRICE_WEIGHT
) / PRICE_VARIANCE_FACTOR
# Widened slightly so float rounding at the boundary ratio cannot split a pair
PRICE_BAND_WIDTH = math.log(1 / MIN_MATCHING_PRICE_RATIO) * 1.001

ADDRESS_ABBREVIATIONS = {
    'street': 'st',
    'avenue': 'ave',
    'road': 'rd',
    'drive': 'dr',
    'lane': 'ln',
    'boulevard': 'blvd',
    'court': 'ct',
    'place': 'pl',
    'circle': 'cir',
    'parkway': 'pkwy',
    'highway': 'hwy',
    'terrace': 'ter',
    'trail': 'trl',
    'square': 'sq',
    'north': 'n',
    'south': 's',
    'east': 'e',
    'west': 'w',
    'northeast': 'ne',
    'northwest': 'nw',
    'southeast': 'se',
    'southwest': 'sw',
    'apartment': 'apt',
    'suite': 'ste',
}

_NON_ALNUM = re.compile(r'[^a-z0-9\s]')
_WHITESPACE = re.compile(r'\s+')


def normalize_address_text(text: Optional[str]) -> str:
    """Case-fold, strip punctuation and abbreviate common address words"""
    if not text:
        return ""
    cleaned = _NON_ALNUM.sub(' ', str(text).lower())
    words = _WHITESPACE.split(cleaned.strip())
    return ' '.join(ADDRESS_ABBREVIATIONS.get(word, word) for word in words if word)


def string_similarity(a: str, b: str) -> float:
    """1 - levenshtein / max length, in 0..1"""
    if a == b:
        return 1.0
    if not a or not b:
        return 0.0
    return Levenshtein.normalized_similarity(a, b)


def _zip5(zip_code: str) -> str:
    return (zip_code or '').strip()[:5]


def address_similarity(first: CanonicalPropertyRecord, second: CanonicalPropertyRecord) -> float:
    """Mean of the street, city, state and ZIP scores present on both records"""
    a, b = first.address, second.address
    scores = []

    if a.street_name and b.street_name:
        scores.append(string_similarity(normalize_address_text(a.street), normalize_address_text(b.street)))
    if a.city and b.city:
        scores.append(string_similarity(normalize_address_text(a.city), normalize_address_text(b.city)))
    if a.state and b.state:
        scores.append(1.0 if a.state.strip().lower() == b.state.strip().lower() else 0.0)
    if a.zip_code and b.zip_code:
        scores.append(1.0 if _zip5(a.zip_code) == _zip5(b.zip_code) else 0.0)

    return sum(scores) / len(scores) if scores else 0.0


def price_similarity(price_a: float, price_b: float) -> float:
    if price_a <= 0 or price_b <= 0:
        return 0.0
    ratio = min(price_a, price_b) / max(price_a, price_b)
    return max(0.0, 1.0 - abs(1.0 - ratio) * PRICE_VARIANCE_FACTOR)


def details_similarity(first: CanonicalPropertyRecord, second: CanonicalPropertyRecord) -> float:
    a, b = first.details, second.details
    matches = []

    if a.bedrooms and b.bedrooms:
        matches.append(a.bedrooms == b.bedrooms)
    if a.bathrooms and b.bathrooms:
        matches.append(abs(a.bathrooms - b.bathrooms) <= BATHROOM_TOLERANCE)
    if a.square_feet and b.square_feet:
        matches.append(min(a.square_feet, b.square_feet) / max(a.square_feet, b.square_feet)
                       >= SQUARE_FEET_MIN_RATIO)
    if a.year_built and b.year_built:
        matches.append(abs(a.year_built - b.year_built) <= YEAR_BUILT_TOLERANCE)

    return sum(matches) / len(matches) if matches else 0.0


def match_reasons(address: float, price: float, details: float) -> List[str]:
    reasons = []

    if address >= 0.9:
        reasons.append("Very similar addresses")
    elif address >= 0.7:
        reasons.append("Similar addresses")

    if price >= 0.9:
        reasons.append("Identical or very similar prices")
    elif price >= 0.7:
        reasons.append("Similar price ranges")

    if details >= 0.8:
        reasons.append("Matching property details (bedrooms, bathrooms, square footage)")
    elif details >= 0.6:
        reasons.append("Similar property specifications")

    return reasons


def suggest_action(confidence: float, reasons: List[str]) -> SuggestedAction:
    if confidence >= HIGH_CONFIDENCE_THRESHOLD and len(reasons) >= 2:
        return SuggestedAction.MERGE
    if confidence >= SIMILARITY_THRESHOLD:
        return SuggestedAction.MERGE
    return SuggestedAction.KEEP_BOTH


def record_completeness(record: CanonicalPropertyRecord) -> int:
    """10-point checklist used to break ties when choosing a merge base"""
    address = record.address
    checks = [
        record.price > 0,
        bool(address.street_name),
        bool(address.city),
        bool(address.state),
        bool(address.zip_code),
        record.details.bedrooms > 0,
        record.details.bathrooms > 0,
        record.details.square_feet > 0,
        bool(record.agent.name),
        bool(record.media),
    ]
    return sum(checks)


def choose_better_record(first: CanonicalPropertyRecord,
                         second: CanonicalPropertyRecord) -> CanonicalPropertyRecord:
    """Prefer the more recently updated record, then the more complete one"""
    if first.dates.updated > second.dates.updated:
        return first
    if second.dates.updated > first.dates.updated:
        return second
    return first if record_completeness(first) >= record_completeness(second) else second


def merge_media(base: List[Media], other: List[Media]) -> List[Media]:
    """URL-deduplicated union; only the first primary item stays primary"""
    merged: List[Media] = []
    seen: Set[str] = set()
    for item in list(base) + list(other):
        if item.url in seen:
            continue
        seen.add(item.url)
        merged.append(copy.deepcopy(item))

    primary_seen = False
    for item in merged:
        if item.is_primary:
            if primary_seen:
                item.is_primary = False
            primary_seen = True
    return merged


def _fill_empty(target, source, fields: Iterable[str]):
    for name in fields:
        if not getattr(target, name) and getattr(source, name):
            setattr(target, name, getattr(source, name))


def generate_merge_data(first: CanonicalPropertyRecord,
                        second: CanonicalPropertyRecord) -> CanonicalPropertyRecord:
    """
    Build the proposed merged record.

    The better record is the base; its empty fields are filled from the other
    record, media is unioned by URL and dates.updated is set to now.
    """
    base = choose_better_record(first, second)
    other = second if base is first else first
    merged = copy.deepcopy(base)

    if merged.price <= 0 and other.price > 0:
        merged.price = other.price
    _fill_empty(merged, other, ('property_type', 'listing_id'))
    _fill_empty(merged.address, other.address, (
        'street_number', 'street_name', 'unit_number', 'city', 'state', 'zip_code', 'latitude', 'longitude'))
    _fill_empty(merged.details, other.details, (
        'bedrooms', 'bathrooms', 'square_feet', 'year_built', 'lot_size', 'stories', 'description'))
    _fill_empty(merged.agent, other.agent, ('id', 'name', 'email', 'phone'))
    _fill_empty(merged.office, other.office, ('id', 'name'))

    merged.media = merge_media(base.media, other.media)
    merged.dates.updated = utcnow()
    return merged


class DuplicateDetector:
    """
    Service for finding and resolving duplicate listings.

    Handles:
    - Blocked pairwise comparison with deterministic ordering
    - Merge proposals
    - Idempotent resolution against the property store
    """

    def __init__(self, store: Optional[PropertyStore] = None, batch_size: int = 500):
        self.store = store
        self.batch_size = max(1, batch_size)

    def compare(self, first: CanonicalPropertyRecord,
                second: CanonicalPropertyRecord) -> Optional[DuplicateCandidate]:
        """Score one pair; returns a candidate only at or above the threshold"""
        if normalize_mls_id(first.mls_id) == normalize_mls_id(second.mls_id):
            return None

        address = address_similarity(first, second)
        price = price_similarity(first.price, second.price)
        details = details_similarity(first, second)
        confidence = min(1.0, max(0.0,
                                  address * ADDRESS_WEIGHT + price * PRICE_WEIGHT + details * DETAILS_WEIGHT))

        if confidence < SIMILARITY_THRESHOLD:
            return None

        reasons = match_reasons(address, price, details)
        return DuplicateCandidate(
            id=generate_candidate_id(first.record_id, second.record_id),
            confidence=confidence,
            source_record=first,
            target_record=second,
            match_reasons=reasons,
            suggested_action=suggest_action(confidence, reasons),
            merge_data=generate_merge_data(first, second),
            address_similarity=address,
            price_similarity=price,
            details_similarity=details,
        )

    def candidate_pairs(self, records: List[CanonicalPropertyRecord],
                        new_count: Optional[int] = None) -> List[Tuple[int, int]]:
        """
        Index pairs (i < j) that share a block.

        When new_count is given only pairs touching one of the first new_count
        records are produced.
        """
        if new_count is None:
            new_count = len(records)

        blocks: Dict[Tuple, List[int]] = defaultdict(list)
        unblocked: List[int] = []
        for index, record in enumerate(records):
            keys = self._block_keys(record)
            if keys is None:
                unblocked.append(index)
                continue
            for key in keys:
                blocks[key].append(index)

        pairs: Set[Tuple[int, int]] = set()
        for members in blocks.values():
            for position, i in enumerate(members):
                for j in members[position + 1:]:
                    pairs.add((i, j) if i < j else (j, i))
        for i in unblocked:
            for j in range(len(records)):
                if i != j:
                    pairs.add((i, j) if i < j else (j, i))

        return sorted(pair for pair in pairs if pair[0] < new_count)

    @staticmethod
    def _block_keys(record: CanonicalPropertyRecord) -> Optional[List[Tuple]]:
        state = record.address.state.strip().lower()
        zip_code = _zip5(record.address.zip_code)
        if not state or not zip_code:
            return None

        keys: List[Tuple] = [('zip', zip_code)]
        if record.price > 0:
            band = math.floor(math.log(record.price) / PRICE_BAND_WIDTH)
            keys.append(('state', state, band))
            keys.append(('state', state, band + 1))
        return keys

    @staticmethod
    def _sort(candidates: List[Tuple[int, int, DuplicateCandidate]]) -> List[DuplicateCandidate]:
        candidates.sort(key=lambda item: (-item[2].confidence, item[0], item[1]))
        return [candidate for _, _, candidate in candidates]

    def find_duplicates(self, records: List[CanonicalPropertyRecord]) -> List[DuplicateCandidate]:
        """
        Find likely duplicates within a batch.

        Returns:
            Candidates sorted by confidence descending, ties in input order
        """
        found = []
        for i, j in self.candidate_pairs(records):
            candidate = self.compare(records[i], records[j])
            if candidate:
                found.append((i, j, candidate))

        logger.info(f"Compared {len(records)} records, found {len(found)} duplicate candidates")
        return self._sort(found)

    async def find_duplicates_async(
        self,
        records: List[CanonicalPropertyRecord],
        existing: Optional[List[CanonicalPropertyRecord]] = None,
        should_cancel: Optional[Callable[[], bool]] = None,
    ) -> List[DuplicateCandidate]:
        """
        Find duplicates among records and between records and existing.

        Yields to the event loop between comparison batches and stops early
        when should_cancel() returns True; candidates found so far are
        returned in the same deterministic order.
        """
        new_ids = {record.record_id for record in records}
        pool = list(records) + [r for r in (existing or []) if r.record_id not in new_ids]
        pairs = self.candidate_pairs(pool, new_count=len(records))

        found = []
        for start in range(0, len(pairs), self.batch_size):
            if should_cancel and should_cancel():
                logger.info(f"Duplicate detection cancelled after {start} of {len(pairs)} comparisons")
                break
            for i, j in pairs[start:start + self.batch_size]:
                candidate = self.compare(pool[i], pool[j])
                if candidate:
                    found.append((i, j, candidate))
            await asyncio.sleep(0)

        return self._sort(found)

    async def resolve_duplicate(self, candidate: DuplicateCandidate,
                                action: Optional[SuggestedAction] = None) -> DuplicateResolution:
        """
        Apply a resolution to a candidate.

        merge upserts the merged payload and marks the other record merged;
        keep_both and skip only mark the candidate. Resolving an already
        resolved candidate changes nothing.

        Returns:
            DuplicateResolution; store failures are reported, never raised
        """
        try:
            chosen = SuggestedAction(action or candidate.suggested_action)
        except ValueError:
            return DuplicateResolution(candidate.id, False, error_message=f"Unknown action: {action}")
        resolved_action = ResolvedAction.for_action(chosen)

        if candidate.resolved:
            return DuplicateResolution(candidate.id, True, candidate.resolved_action, already_resolved=True)

        newly_resolved = True
        if self.store is not None:
            try:
                stored = await self.store.get_duplicate_candidate(candidate.id)
                if stored is not None and stored.resolved:
                    candidate.resolved = True
                    candidate.resolved_action = stored.resolved_action
                    candidate.resolved_at = stored.resolved_at
                    return DuplicateResolution(candidate.id, True, stored.resolved_action, already_resolved=True)
                if stored is None:
                    await self.store.save_duplicate_candidate(candidate)

                if chosen == SuggestedAction.MERGE:
                    await self._apply_merge(candidate)

                newly_resolved = await self.store.mark_duplicate_resolved(candidate.id, resolved_action)

            except Exception as e:
                logger.error(f"Error resolving duplicate {candidate.id}: {str(e)}")
                return DuplicateResolution(candidate.id, False, error_message=str(e))

        candidate.resolved = True
        candidate.resolved_action = resolved_action
        candidate.resolved_at = utcnow()

        logger.info(f"Resolved duplicate {candidate.id} as {resolved_action.value}")
        return DuplicateResolution(candidate.id, True, resolved_action, already_resolved=not newly_resolved)

    async def _apply_merge(self, candidate: DuplicateCandidate):
        merged = candidate.merge_data or generate_merge_data(candidate.source_record, candidate.target_record)
        await self.store.upsert_property(merged)

        for record in (candidate.source_record, candidate.target_record):
            if record.record_id != merged.record_id:
                await self.store.mark_property_merged(record.record_id, merged.record_id)

    async def resolve_duplicates(self, candidates: List[DuplicateCandidate],
                                 action: Optional[SuggestedAction] = None) -> List[DuplicateResolution]:
        """Resolve candidates independently; one failure never blocks the rest"""
        results = []
        for candidate in candidates:
            results.append(await self.resolve_duplicate(candidate, action))
        return results

    async def resolve_duplicate_by_id(self, candidate_id: str,
                                      action: Optional[SuggestedAction] = None) -> DuplicateResolution:
        if self.store is None:
            return DuplicateResolution(candidate_id, False, error_message="No property store configured")
        try:
            candidate = await self.store.get_duplicate_candidate(candidate_id)
        except Exception as e:
            logger.error(f"Error loading duplicate {candidate_id}: {str(e)}")
            return DuplicateResolution(candidate_id, False, error_message=str(e))
        if candidate is None:
            return DuplicateResolution(candidate_id, False, error_message="Duplicate candidate not found")
        return await self.resolve_duplicate(candidate, action)

    async def save_candidates(self, candidates: List[DuplicateCandidate]) -> int:
        """Persist newly found candidates; returns how many were new"""
        if self.store is None:
            return 0
        saved = 0
        for candidate in candidates:
            if await self.store.save_duplicate_candidate(candidate):
                saved += 1
        return saved

    async def get_pending_duplicates(self, limit: int = 50) -> List[DuplicateCandidate]:
        if self.store is None:
            return []
        return await self.store.list_pending_duplicates(limit)
