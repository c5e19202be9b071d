"""
Normalization helpers for matching the same restaurant across platforms.
Names, areas and phone numbers are reduced to comparable forms here.
"""
import re
import unicodedata
import logging
from typing import Dict, Any, List, Optional, Tuple, TypeVar, Iterable

logger = logging.getLogger(__name__)

T = TypeVar('T')

NON_DINING_RE = re.compile(
    r'\b(cake|birthday|tart|takeaway|take-away|take away|delivery|gift|catering|bento|'
    r'lunch box|sweets|pastry|patisserie|pâtisserie|gâteau|gateau)\b',
    re.IGNORECASE
)

# Neighborhoods whose presence on a page contradicts an expected different area
KNOWN_TOKYO_AREAS = [
    'ginza', 'roppongi', 'shinjuku', 'shibuya', 'asakusa', 'akasaka', 'azabu',
    'ebisu', 'meguro', 'nihonbashi', 'aoyama', 'ikebukuro', 'shinagawa',
]


def normalize_name(name: Optional[str]) -> str:
    """Lowercase, strip diacritics, collapse everything non-alphanumeric to single spaces"""
    if not name:
        return ""
    text = unicodedata.normalize('NFD', name.lower())
    text = ''.join(ch for ch in text if not unicodedata.combining(ch))
    text = re.sub(r'[^a-z0-9 ]', ' ', text)
    return re.sub(r'\s+', ' ', text).strip()


def clean_area_name(area: Optional[str]) -> str:
    """Reduce a station/neighborhood label to the neighborhood itself"""
    if not area:
        return ""
    cleaned = area.strip()
    cleaned = re.sub(r'\s*(Sta\.|Station|駅)\s*$', '', cleaned, flags=re.IGNORECASE)
    cleaned = re.sub(r'^(Higashi|Nishi|Minami|Kita)\s+', '', cleaned, flags=re.IGNORECASE)
    cleaned = re.sub(r'\s+(Itchome|Nichome|Sanchome|Yonchome|Gochome|Mitsuke)\s*$', '', cleaned,
                     flags=re.IGNORECASE)
    return cleaned.strip()


def normalize_phone(phone: Optional[str]) -> str:
    """Digits only, with the +81 country code rewritten to a leading 0"""
    if not phone:
        return ""
    digits = re.sub(r'[\s\-().+]', '', phone)
    if digits.startswith('81') and len(digits) >= 10:
        digits = '0' + digits[2:]
    return digits


def format_phone_for_query(phone: Optional[str]) -> str:
    """Format a domestic number the way listings print it (03-1234-5678)"""
    digits = normalize_phone(phone)
    if re.fullmatch(r'0\d{9}', digits):
        return f"{digits[:2]}-{digits[2:6]}-{digits[6:]}"
    if re.fullmatch(r'0\d{10}', digits):
        return f"{digits[:3]}-{digits[3:6]}-{digits[6:]}"
    return phone or ""


def phones_match(a: Optional[str], b: Optional[str]) -> bool:
    """Exact match, or matching last 8 digits (area-code formatting varies)"""
    na, nb = normalize_phone(a), normalize_phone(b)
    if not na or not nb:
        return False
    if na == nb:
        return True
    return len(na) >= 8 and len(nb) >= 8 and na[-8:] == nb[-8:]


def parse_score(text: Any) -> Optional[float]:
    """Parse a rating; only values in (0, 5] are valid"""
    if text is None:
        return None
    match = re.search(r'(\d+(?:\.\d+)?)', str(text))
    if not match:
        return None
    try:
        value = float(match.group(1))
    except ValueError:
        return None
    if 0 < value <= 5:
        return value
    return None


def word_match(a: str, b: str) -> bool:
    """Tokens match if equal, or long enough and one is a near-complete prefix of the other"""
    if a == b:
        return True
    if len(a) < 4 or len(b) < 4:
        return False
    shorter, longer = (a, b) if len(a) <= len(b) else (b, a)
    if len(shorter) / len(longer) < 0.7:
        return False
    return longer.startswith(shorter)


def shared_word_count(query: str, candidate: str) -> int:
    """
    Number of query tokens matching some candidate token, or 0 unless every
    token on at least one side matches.
    """
    q_words = normalize_name(query).split()
    c_words = normalize_name(candidate).split()
    if not q_words or not c_words:
        return 0

    q_hits = [any(word_match(q, c) for c in c_words) for q in q_words]
    c_hits = [any(word_match(c, q) for q in q_words) for c in c_words]
    if all(q_hits) or all(c_hits):
        return sum(q_hits)
    return 0


def find_fuzzy_match(name: str, candidates: Dict[str, T]) -> Optional[Tuple[str, T]]:
    """Best fuzzy match among {normalized_name: value}; most shared tokens wins"""
    normalized = normalize_name(name)
    if not normalized:
        return None
    if normalized in candidates:
        return normalized, candidates[normalized]

    best: Optional[Tuple[str, T]] = None
    best_count = 0
    for key, value in candidates.items():
        count = shared_word_count(normalized, key)
        if count > best_count:
            best, best_count = (key, value), count
    return best


def title_matches_name(title: str, name: str) -> bool:
    """Whether a search-result title plausibly names the restaurant"""
    t = normalize_name(title)
    n = normalize_name(name)
    if not t or not n:
        return False
    if n in t or t in n:
        return True
    name_words = [w for w in n.split() if len(w) >= 2]
    title_words = t.split()
    if not name_words:
        return False
    return all(any(w in tw or tw in w for tw in title_words) for w in name_words)


def is_dining_listing(title: str) -> bool:
    return not NON_DINING_RE.search(title or "")


def quality_score(record: Dict[str, Any]) -> int:
    """Additive completeness score used to pick between duplicates"""
    score = 0
    if record.get('score'):
        score += 10
    for field in ('cuisine', 'area', 'price_range', 'image_url'):
        if record.get(field):
            score += 1
    if record.get('time_slots'):
        score += 1
    return score


def dedupe_records(records: Iterable[Dict[str, Any]], key_fields: Tuple[str, ...] = ('url', 'name')) -> List[Dict[str, Any]]:
    """Keep one record per key (first non-empty key field), preferring higher quality"""
    kept: Dict[str, Dict[str, Any]] = {}
    order: List[str] = []
    for record in records:
        key = next((record.get(f) for f in key_fields if record.get(f)), None)
        if not key:
            continue
        existing = kept.get(key)
        if existing is None:
            kept[key] = record
            order.append(key)
        elif quality_score(record) > quality_score(existing):
            kept[key] = record
    return [kept[k] for k in order]


def area_key(area: Optional[str]) -> str:
    return normalize_name(clean_area_name(area))
