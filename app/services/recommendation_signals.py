"""Franchise, product type and volume signals for recommendation requests."""

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from app.services.text_normalize import contains_term, normalize_for_search, normalize_for_token

FRANCHISE_SEEDS: Tuple[Tuple[str, str, Tuple[str, ...]], ...] = (
    ("dragon_ball", "dragon ball", ("dragon ball", "dragonball", "dbz", "dragon ball z", "dragon ball super", "goku")),
    ("naruto", "naruto", ("naruto", "naruto shippuden", "konoha", "uzumaki", "sasuke")),
    ("one_piece", "one piece", ("one piece", "onepiece", "luffy", "straw hat")),
    ("pokemon", "pokemon", ("pokemon", "pikachu", "charizard")),
    ("attack_on_titan", "attack on titan", ("attack on titan", "aot", "shingeki no kyojin", "eren")),
    ("demon_slayer", "demon slayer", ("demon slayer", "kimetsu no yaiba", "tanjiro", "hashira")),
    ("jujutsu_kaisen", "jujutsu kaisen", ("jujutsu kaisen", "jjk", "gojo", "sukuna")),
    ("my_hero_academia", "my hero academia", ("my hero academia", "mha", "boku no hero", "deku", "all might")),
    ("hunter_x_hunter", "hunter x hunter", ("hunter x hunter", "hxh", "gon", "killua")),
    ("bleach", "bleach", ("bleach", "ichigo", "zanpakuto")),
    ("fairy_tail", "fairy tail", ("fairy tail", "natsu")),
    ("chainsaw_man", "chainsaw man", ("chainsaw man", "denji", "makima")),
    ("solo_leveling", "solo leveling", ("solo leveling", "sung jinwoo")),
    ("blue_lock", "blue lock", ("blue lock", "isagi")),
    ("tokyo_ghoul", "tokyo ghoul", ("tokyo ghoul", "kaneki")),
    ("jojo", "jojo bizarre adventure", ("jojo", "jojo bizarre adventure", "jotaro")),
    ("batman", "batman", ("batman", "dark knight", "bruce wayne")),
    ("spiderman", "spider man", ("spider man", "spiderman", "spidey", "peter parker")),
    ("evangelion", "evangelion", ("evangelion", "neon genesis evangelion", "shinji", "asuka")),
    ("death_note", "death note", ("death note", "light yagami", "ryuk")),
    ("spy_x_family", "spy x family", ("spy x family", "spy family", "anya")),
    ("sailor_moon", "sailor moon", ("sailor moon", "usagi")),
)

FRANCHISE_TERMS: Dict[str, Tuple[str, ...]] = {
    key: tuple(dict.fromkeys(normalize_for_search(term) for term in (query, *aliases)))
    for key, query, aliases in FRANCHISE_SEEDS
}
FRANCHISE_QUERIES: Dict[str, str] = {key: query for key, query, _ in FRANCHISE_SEEDS}

FUZZY_MAX_DISTANCE = 2
FUZZY_MIN_TOKEN_LENGTH = 5

# Checked in this order; the first type whose terms appear wins.
RECOMMENDATION_TYPE_TERMS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("juego_tcg_magic", ("magic", "mtg", "magic the gathering")),
    ("juego_tcg_yugioh", ("yu gi oh", "yugioh", "ygo")),
    ("juego_tcg_pokemon", ("pokemon cartas", "pokemon tcg", "pokemon booster")),
    ("juego_tcg_generico", ("tcg", "card game", "carta", "cartas", "booster", "deck", "sobre")),
    ("juego_mesa", ("juego de mesa", "juegos de mesa", "boardgame", "board game", "puzzle", "rompecabezas")),
    ("juego_rol", ("juego de rol", "juegos de rol", "rpg", "dnd", "pathfinder")),
    ("merch_funko", ("funko", "funko pop", "pop vinyl")),
    ("merch_peluches", ("peluche", "peluches", "plush")),
    ("merch_ropa_remeras", ("remera", "remeras", "camiseta", "camisetas")),
    ("merch_ropa_buzos", ("buzo", "buzos", "hoodie")),
    ("merch_figuras", ("figura", "figuras", "figurita", "estatua")),
    ("merch_otros", ("poster", "posters", "taza", "llavero", "mochila", "sticker", "stickers")),
    ("mangas", ("manga", "mangas", "tomo", "tomos", "volumen", "shonen", "seinen", "shojo", "manhwa")),
    ("comics", ("comic", "comics", "grapa", "tpb", "marvel", "dc comics")),
    ("libros", ("libro", "libros", "novela", "novelas", "artbook")),
    ("tarot_y_magia", ("tarot", "oraculo", "grimorio")),
    ("juego", ("juego", "juegos")),
    ("merch", ("merch", "merchandising")),
)

CATEGORY_LABELS = {
    "mangas": "mangas",
    "comics": "comics",
    "libros": "libros",
    "tarot_y_magia": "tarot y magia",
}
DEFAULT_TYPE_OPTIONS = ["mangas/comics", "figuras y coleccionables", "ropa/accesorios"]

VOLUME_SIGNAL_PATTERN = re.compile(r"\b(?:tomo|tomos|vol|volumen|volumenes|nro|numero|num|#)\s*(\d{1,3})\b")
LATEST_SIGNAL_PATTERN = re.compile(r"\b(?:ultim[oa]s?|recientes|nuev[oa]s?|lanzamientos?)\b")
START_SIGNAL_PATTERN = re.compile(r"\b(?:desde\s+el\s+inicio|arrancar|empezar|principio|primer\s+tomo|tomo\s*1)\b")


@dataclass(frozen=True)
class VolumeSignals:
    has_volume_signal: bool
    volume_number: Optional[int]
    wants_latest: bool
    wants_start: bool


@dataclass(frozen=True)
class DisambiguationDecision:
    needs_disambiguation: bool
    reason: Optional[str]  # franchise_scope, volume_scope
    franchise: Optional[str]
    suggested_types: List[str] = field(default_factory=list)
    total_candidates: int = 0


def levenshtein_distance(a: str, b: str) -> int:
    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            cost = 0 if char_a == char_b else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def _fuzzy_franchise(token: str) -> Optional[str]:
    if len(token) < FUZZY_MIN_TOKEN_LENGTH:
        return None
    best_key, best_distance = None, None
    for key, terms in FRANCHISE_TERMS.items():
        for term in terms:
            if len(term) < FUZZY_MIN_TOKEN_LENGTH or abs(len(term) - len(token)) > FUZZY_MAX_DISTANCE:
                continue
            distance = levenshtein_distance(token, term)
            if distance <= FUZZY_MAX_DISTANCE and (best_distance is None or distance < best_distance):
                best_key, best_distance = key, distance
    return best_key


def detect_franchises(text: str, entities: Sequence[str] = ()) -> List[str]:
    """Franchise keys mentioned in text or entities, best scored first.

    Exact alias matches are scored by how many aliases appear; when nothing
    matches exactly, a single typo-tolerant match is attempted.
    """
    candidates = [normalize_for_search(value) for value in [text, *entities] if isinstance(value, str)]
    candidates = [candidate for candidate in candidates if candidate]
    if not candidates:
        return []

    scored = []
    for key, terms in FRANCHISE_TERMS.items():
        score = sum(1 for candidate in candidates for term in terms if contains_term(candidate, term))
        if score > 0:
            scored.append((key, score))
    if scored:
        scored.sort(key=lambda entry: (-entry[1], entry[0]))
        return [key for key, _ in scored]

    tokens = []
    for candidate in candidates:
        tokens.extend(token for token in candidate.split() if len(token) >= FUZZY_MIN_TOKEN_LENGTH)
        if len(candidate) >= FUZZY_MIN_TOKEN_LENGTH:
            tokens.append(candidate)
    for token in dict.fromkeys(tokens):
        key = _fuzzy_franchise(token)
        if key:
            return [key]
    return []


def detect_recommendation_type(text: str) -> Optional[str]:
    normalized = normalize_for_search(text)
    if not normalized:
        return None
    for type_key, terms in RECOMMENDATION_TYPE_TERMS:
        if any(contains_term(normalized, normalize_for_search(term)) for term in terms):
            return type_key
    return None


def detect_recommendation_types(text: str, entities: Sequence[str] = ()) -> List[str]:
    found = {detect_recommendation_type(value) for value in [text, *entities] if isinstance(value, str)}
    found.discard(None)
    return [type_key for type_key, _ in RECOMMENDATION_TYPE_TERMS if type_key in found]


def resolve_volume_signals(text: str) -> VolumeSignals:
    normalized = normalize_for_token(text)
    volume_match = VOLUME_SIGNAL_PATTERN.search(normalized)
    wants_latest = bool(LATEST_SIGNAL_PATTERN.search(normalized))
    wants_start = bool(START_SIGNAL_PATTERN.search(normalized))
    return VolumeSignals(
        has_volume_signal=bool(volume_match) or wants_latest or wants_start,
        volume_number=int(volume_match.group(1)) if volume_match else None,
        wants_latest=wants_latest,
        wants_start=wants_start,
    )


def resolve_recommendation_disambiguation(
    *,
    text: str,
    franchise: Optional[str],
    suggested_types: Sequence[str],
    total_candidates: int,
    preferred_types: Sequence[str],
    franchise_threshold: int,
    volume_threshold: int,
) -> DisambiguationDecision:
    volume_signals = resolve_volume_signals(text)
    selected_types = list(dict.fromkeys(t for t in [*preferred_types, *suggested_types] if t))

    if (
        franchise
        and total_candidates >= franchise_threshold
        and not preferred_types
        and not volume_signals.has_volume_signal
    ):
        return DisambiguationDecision(True, "franchise_scope", franchise, selected_types, total_candidates)

    if (
        franchise
        and total_candidates >= volume_threshold
        and any(t in ("mangas", "comics") for t in selected_types)
        and not volume_signals.has_volume_signal
    ):
        return DisambiguationDecision(True, "volume_scope", franchise, selected_types, total_candidates)

    return DisambiguationDecision(False, None, franchise, selected_types, total_candidates)


def format_category_label(type_key: Optional[str]) -> str:
    if not type_key:
        return "productos"
    if type_key in CATEGORY_LABELS:
        return CATEGORY_LABELS[type_key]
    if type_key.startswith("merch_ropa"):
        return "ropa y accesorios"
    if type_key in ("merch_figuras", "merch_funko", "merch_peluches"):
        return "figuras y coleccionables"
    if type_key.startswith("juego"):
        return "juegos"
    return "productos"


def franchise_query(key: str) -> str:
    return FRANCHISE_QUERIES.get(key, key.replace("_", " "))


def franchise_label(key: str) -> str:
    return " ".join(part.capitalize() for part in franchise_query(key).split())


def suggested_type_options(types: Sequence[str]) -> List[str]:
    labels = list(dict.fromkeys(format_category_label(t) for t in types))
    return labels or list(DEFAULT_TYPE_OPTIONS)
