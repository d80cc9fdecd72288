"""
Relationship Inference Engine - Join Discovery Between Synced Tables
====================================================================

Proposes and validates join edges between independently synced tables so a
user never has to know SQL to connect them.

Two stages:
1. NAMING (cheap, always runs)
   - Primary-key-like: id, {table}_id, {table}_uuid (singular/plural variants)
   - Foreign-key-like: any other *_id / *_uuid column
   - orders.customer_id -> customers.id is n-1 with STRONG evidence
   - Two foreign keys with the same name that reference neither table
     (tenant_id <-> tenant_id) are the shared-dimension trap: n-n, never
     auto-accepted
   - Generic attributes (name, email, status, type, timestamps...) never join
2. PROFILING (expensive, same-engine postgres pairs only)
   - ColumnProfile per column, OverlapProfile per pair (bounded distinct sets)
   - Profile cardinality replaces WEAK / absent naming evidence
   - STRONG naming evidence is never overridden by profiling alone
   - Zero overlap rejects the pair outright

Scores are clamped to [0, 99]. Strong naming evidence needs less statistical
corroboration to surface than weak evidence, and n-n needs the most.

Suggestions are deterministic for a fixed catalog: ties break on the
canonical key, never on iteration order.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy.exc import SQLAlchemyError

from column_profiler import (
    OverlapProfile,
    ProfileCache,
    SQLColumnProfiler,
    profile_column_cached,
    profile_overlap_cached,
)
from errors import InvalidRequestError
from model_catalog import (
    INVALID,
    POSTGRES_ENGINE,
    VALID,
    Catalog,
    ModelColumn,
    ModelRelationship,
    ModelTable,
    canonical_relationship_key,
)

logger = logging.getLogger(__name__)

# ============================================================================
# TUNABLE CONSTANTS
# ============================================================================
# Only the relative ordering of these values is load-bearing.

STRONG = "strong"
WEAK = "weak"
NONE = "none"
STRENGTH_RANK = {STRONG: 2, WEAK: 1, NONE: 0}

TYPE_PREFERENCE = {"n-1": 0, "1-n": 0, "1-1": 1, "n-n": 2}

TYPE_MATCH_POINTS = 20
REASON_POINTS = {
    "same_column_name": 20,
    "foreign_key_pattern": 15,
    "primary_key_pattern": 10,
    "table_reference_pattern": 25,
}
PROFILE_PLAUSIBLE_POINTS = 10
PROFILE_CONFLICT_PENALTY = 15
OVERLAP_STRONG_BONUS = 15
OVERLAP_MODERATE_BONUS = 8
OVERLAP_LOW_PENALTY = 15
GENERIC_NAME_PENALTY = 20
DIRECTIONAL_BONUS = 10
ONE_TO_ONE_BONUS = 5

OVERLAP_STRONG_RATIO = 0.90
OVERLAP_MODERATE_RATIO = 0.60
OVERLAP_LOW_RATIO = 0.30

MIN_SCORE_STRONG_NAMING = 55
MIN_SCORE_WEAK_NAMING = 72
MIN_SCORE_MANY_TO_MANY = 86

MAX_SCORE = 99

NN_NOT_EXECUTABLE = "n-n relationship is not executable by semantic planner"
CROSS_SOURCE_REASON = "Cross-source relationship cannot be executed at runtime"
MISSING_RUNTIME_REASON = "One or more tables do not have runtime references"
TYPE_MISMATCH_REASON = "Column datatype mismatch"
ZERO_OVERLAP_REASON = "No overlapping values between columns"

# Attribute columns that never identify a row in another table
GENERIC_COLUMN_NAMES = {
    "name", "full_name", "first_name", "last_name", "display_name",
    "email", "phone", "address", "city", "country", "url",
    "status", "state", "type", "kind", "category", "title", "label",
    "description", "notes", "comment", "value", "amount", "total",
    "price", "quantity", "count", "active", "is_active", "enabled",
    "created", "updated", "timestamp", "date", "time",
}

# Id-shaped but shared across many tables: weak evidence of a direct join
LOW_SIGNAL_KEY_NAMES = {
    "tenant_id", "workspace_id", "org_id", "organization_id", "account_id",
    "company_id", "owner_id", "parent_id", "created_by", "updated_by",
    "external_id", "source_id", "code", "key",
}

TIMESTAMP_NAME_SUFFIXES = ("_ts", "_at", "_date", "_time", "_on")


# ============================================================================
# NAME ANALYSIS
# ============================================================================

def normalize_identifier(value: Optional[str]) -> str:
    """Strip quoting and lowercase: `Orders` / "Orders" / [Orders] -> orders."""
    cleaned = str(value or "").strip()
    for opener, closer in (("`", "`"), ('"', '"'), ("[", "]")):
        if cleaned.startswith(opener) and cleaned.endswith(closer) and len(cleaned) >= 2:
            cleaned = cleaned[1:-1]
    return cleaned.strip().lower()


def normalize_type(raw_type: Optional[str]) -> str:
    """Collapse declared column types into boolean / date / number / string."""
    t = str(raw_type or "").strip().upper()
    if not t:
        return "string"
    if "BOOL" in t:
        return "boolean"
    if "DATE" in t or "TIME" in t:
        return "date"
    numeric_markers = ("INT", "NUMERIC", "DECIMAL", "FLOAT", "DOUBLE", "REAL", "NUMBER", "SERIAL")
    if any(marker in t for marker in numeric_markers):
        return "number"
    return "string"


def table_name_variants(table_name: str) -> Set[str]:
    """Singular/plural spellings of a table name: categories -> {categories, category}."""
    base = normalize_identifier(table_name).split(".")[-1]
    variants = {base}
    if not base:
        return variants

    if base.endswith("ies") and len(base) > 3:
        variants.add(base[:-3] + "y")
    if base.endswith(("ses", "xes", "zes", "ches", "shes")):
        variants.add(base[:-2])

    if base.endswith(("ss", "us")):
        # address, status: singular already
        variants.add(base + "es")
    elif base.endswith("s"):
        variants.add(base[:-1])
    elif base.endswith("y") and base[-2:-1] not in "aeiou":
        variants.add(base[:-1] + "ies")
    elif base.endswith(("x", "z", "ch", "sh")):
        variants.add(base + "es")
    else:
        variants.add(base + "s")
    return variants


def is_id_shaped(column: str) -> bool:
    col = normalize_identifier(column)
    return col in ("id", "uuid") or col.endswith("_id") or col.endswith("_uuid")


def references_table(column: str, table_name: str) -> bool:
    """True if column is {table}_id / {table}_uuid for any spelling of table_name."""
    col = normalize_identifier(column)
    for variant in table_name_variants(table_name):
        if col in (f"{variant}_id", f"{variant}_uuid"):
            return True
    return False


def is_primary_key_like(column: str, table_name: str) -> bool:
    col = normalize_identifier(column)
    return col in ("id", "uuid") or references_table(col, table_name)


def is_foreign_key_like(column: str, table_name: str) -> bool:
    return is_id_shaped(column) and not is_primary_key_like(column, table_name)


def is_timestamp_column(column: str, column_type: str) -> bool:
    col = normalize_identifier(column)
    if is_id_shaped(col):
        return False
    if normalize_type(column_type) == "date":
        return True
    if "timestamp" in col:
        return True
    return col.endswith(TIMESTAMP_NAME_SUFFIXES)


def is_generic_column(column: str, column_type: str) -> bool:
    """Generic attributes are excluded from join consideration unless id-shaped."""
    col = normalize_identifier(column)
    if is_id_shaped(col):
        return False
    if col in GENERIC_COLUMN_NAMES:
        return True
    if normalize_type(column_type) == "boolean":
        return True
    return is_timestamp_column(col, column_type)


def is_low_signal_key(column: str) -> bool:
    return normalize_identifier(column) in LOW_SIGNAL_KEY_NAMES


@dataclass
class NamingEvidence:
    """Naming verdict for an ordered (from, to) column pair"""
    relationship_type: Optional[str]
    strength: str
    reasons: List[str] = field(default_factory=list)


def analyze_naming(from_table: ModelTable, from_column: str,
                   to_table: ModelTable, to_column: str) -> Optional[NamingEvidence]:
    """
    Classify an ordered column pair from names alone.

    Returns None when the names give no reason to consider the pair at all.
    relationship_type is relative to the given order (n-1: many rows of
    from_table per row of to_table).
    """
    a = normalize_identifier(from_column)
    b = normalize_identifier(to_column)
    ta = from_table.table_name
    tb = to_table.table_name

    same_name = a == b
    a_pk = is_primary_key_like(a, ta)
    b_pk = is_primary_key_like(b, tb)
    a_refs_b = references_table(a, tb)
    b_refs_a = references_table(b, ta)

    base = ["same_column_name"] if same_name else []

    # Strong: explicit reference to the other table's key
    if a_refs_b and b_pk:
        return NamingEvidence("n-1", STRONG, base + ["foreign_key_pattern", "table_reference_pattern", "primary_key_pattern"])
    if b_refs_a and a_pk:
        return NamingEvidence("1-n", STRONG, base + ["foreign_key_pattern", "table_reference_pattern", "primary_key_pattern"])

    if a_pk and b_pk:
        if not same_name:
            return None
        if a in ("id", "uuid"):
            # surrogate keys share a name by convention, not by meaning
            return NamingEvidence("1-1", WEAK, ["primary_key_pattern"])
        return NamingEvidence("1-1", STRONG, base + ["primary_key_pattern"])

    # Weak: reference to the other table but its target is not key-shaped
    if a_refs_b and is_id_shaped(b):
        return NamingEvidence("n-1", WEAK, base + ["foreign_key_pattern", "table_reference_pattern"])
    if b_refs_a and is_id_shaped(a):
        return NamingEvidence("1-n", WEAK, base + ["foreign_key_pattern", "table_reference_pattern"])

    if same_name:
        if is_foreign_key_like(a, ta) and is_foreign_key_like(b, tb):
            # two foreign keys to a third dimension
            return NamingEvidence("n-n", WEAK, base + ["foreign_key_pattern", "shared_foreign_key"])
        return NamingEvidence(None, NONE, base)

    return None


# ============================================================================
# SCORING
# ============================================================================

def profile_cardinality(from_unique: bool, to_unique: bool) -> str:
    if from_unique and to_unique:
        return "1-1"
    if from_unique:
        return "1-n"
    if to_unique:
        return "n-1"
    return "n-n"


def relevant_coverage(relationship_type: Optional[str], overlap: OverlapProfile) -> float:
    """Coverage measured on the many side, where every value should find a match."""
    if relationship_type == "n-1":
        return overlap.left_coverage
    if relationship_type == "1-n":
        return overlap.right_coverage
    if relationship_type == "1-1":
        return min(overlap.left_coverage, overlap.right_coverage)
    return max(overlap.left_coverage, overlap.right_coverage)


def calculate_suggestion_score(
    type_match: bool,
    naming: NamingEvidence,
    relationship_type: Optional[str],
    profile_agrees: Optional[bool] = None,
    coverage: Optional[float] = None,
    generic: bool = False,
) -> int:
    """
    Combine naming, profiling and overlap evidence into a 0..99 confidence.

    Args:
        type_match: normalized column types are equal (mismatch scores 0)
        naming: naming evidence for the pair
        relationship_type: final cardinality after profiling
        profile_agrees: True/False when profiled, None when not profiled
        coverage: overlap coverage ratio when profiled
        generic: column is a low-signal shared key
    """
    if not type_match:
        return 0

    score = TYPE_MATCH_POINTS
    for reason in naming.reasons:
        score += REASON_POINTS.get(reason, 0)

    if profile_agrees is True:
        score += PROFILE_PLAUSIBLE_POINTS
    elif profile_agrees is False:
        score -= PROFILE_CONFLICT_PENALTY

    if coverage is not None:
        if coverage >= OVERLAP_STRONG_RATIO:
            score += OVERLAP_STRONG_BONUS
        elif coverage >= OVERLAP_MODERATE_RATIO:
            score += OVERLAP_MODERATE_BONUS
        elif coverage < OVERLAP_LOW_RATIO:
            score -= OVERLAP_LOW_PENALTY

    if generic:
        score -= GENERIC_NAME_PENALTY

    if relationship_type in ("n-1", "1-n"):
        score += DIRECTIONAL_BONUS
    elif relationship_type == "1-1":
        score += ONE_TO_ONE_BONUS

    return max(0, min(score, MAX_SCORE))


def minimum_score(relationship_type: Optional[str], strength: str) -> int:
    if relationship_type == "n-n" or relationship_type is None:
        return MIN_SCORE_MANY_TO_MANY
    if strength == STRONG:
        return MIN_SCORE_STRONG_NAMING
    return MIN_SCORE_WEAK_NAMING


# ============================================================================
# RESULTS
# ============================================================================

@dataclass
class PairInference:
    """Inference outcome for one ordered column pair"""
    relationship_type: Optional[str]
    strength: str
    confidence: int
    reasons: List[str]
    rejected_reason: Optional[str] = None
    overlap: Optional[OverlapProfile] = None

    @property
    def rejected(self) -> bool:
        return self.rejected_reason is not None


@dataclass
class RelationshipSuggestion:
    """Non-persisted candidate edge, recomputed on every auto-detect call"""
    id: str
    data_model_id: str
    from_table_id: str
    from_table: str
    from_column: str
    to_table_id: str
    to_table: str
    to_column: str
    relationship_type: str
    confidence: int
    validation_status: str
    reasons: List[str]
    strength: str = NONE
    invalid_reason: Optional[str] = None
    cross_filter_direction: str = "single"

    def rank_key(self) -> Tuple:
        return (
            -self.confidence,
            0 if self.validation_status == VALID else 1,
            -STRENGTH_RANK.get(self.strength, 0),
            TYPE_PREFERENCE.get(self.relationship_type, 3),
            self.id,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "dataModelId": self.data_model_id,
            "fromTableId": self.from_table_id,
            "fromTable": self.from_table,
            "fromColumn": self.from_column,
            "toTableId": self.to_table_id,
            "toTable": self.to_table,
            "toColumn": self.to_column,
            "relationshipType": self.relationship_type,
            "crossFilterDirection": self.cross_filter_direction,
            "confidence": self.confidence,
            "validationStatus": self.validation_status,
            "invalidReason": self.invalid_reason,
            "reasons": list(self.reasons),
        }


@dataclass
class RelationshipEvaluation:
    """Cardinality and validity decided for an explicit create"""
    relationship_type: str
    validation_status: str
    invalid_reason: Optional[str]
    confidence: int
    reasons: List[str]


def runtime_invalid_reason(from_table: ModelTable, to_table: ModelTable) -> Optional[str]:
    if from_table.runtime_engine != to_table.runtime_engine:
        return CROSS_SOURCE_REASON
    if not from_table.runtime_ref or not to_table.runtime_ref:
        return MISSING_RUNTIME_REASON
    return None


# ============================================================================
# ENGINE
# ============================================================================

class RelationshipInferenceEngine:
    """
    Runs naming + profiling inference over a catalog snapshot.

    profiler is optional; without it every pair is judged on naming alone.
    """

    def __init__(self, profiler: Optional[SQLColumnProfiler] = None):
        self.profiler = profiler

    def _can_profile(self, from_table: ModelTable, to_table: ModelTable) -> bool:
        return (
            self.profiler is not None
            and from_table.runtime_engine == POSTGRES_ENGINE
            and to_table.runtime_engine == POSTGRES_ENGINE
            and bool(from_table.runtime_ref)
            and bool(to_table.runtime_ref)
        )

    def infer_pair(
        self,
        from_table: ModelTable,
        from_col: ModelColumn,
        to_table: ModelTable,
        to_col: ModelColumn,
        cache: ProfileCache,
        naming_required: bool = True,
    ) -> Optional[PairInference]:
        """
        Infer cardinality and confidence for an ordered column pair.

        Returns None when naming_required and the names give no signal.
        """
        naming = analyze_naming(from_table, from_col.name, to_table, to_col.name)
        if naming is None:
            if naming_required:
                return None
            naming = NamingEvidence(None, NONE, [])

        reasons = list(naming.reasons)
        type_match = normalize_type(from_col.type) == normalize_type(to_col.type)
        if not type_match:
            return PairInference(naming.relationship_type, naming.strength, 0, reasons,
                                 rejected_reason=TYPE_MISMATCH_REASON)
        reasons.append("same_datatype")

        relationship_type = naming.relationship_type
        profile_agrees = None
        coverage = None
        overlap = None

        if self._can_profile(from_table, to_table):
            try:
                from_profile = profile_column_cached(self.profiler, cache, from_table, from_col.name)
                to_profile = profile_column_cached(self.profiler, cache, to_table, to_col.name)
                overlap = profile_overlap_cached(self.profiler, cache, from_table, from_col.name,
                                                 to_table, to_col.name)
            except SQLAlchemyError as e:
                # profiling only refines naming evidence
                logger.warning(
                    f"[WARN] Profiling failed for {from_table.table_name}.{from_col.name} -> "
                    f"{to_table.table_name}.{to_col.name}: {e}"
                )
            else:
                if overlap.overlap_distinct == 0:
                    return PairInference(relationship_type, naming.strength, 0, reasons,
                                         rejected_reason=ZERO_OVERLAP_REASON, overlap=overlap)

                profiled = profile_cardinality(from_profile.unique, to_profile.unique)
                if naming.strength == STRONG:
                    profile_agrees = profiled == relationship_type or profiled == "1-1"
                    if not profile_agrees:
                        reasons.append("profile_conflict")
                else:
                    relationship_type = profiled
                    profile_agrees = profiled != "n-n"
                reasons.append(f"profile_{profiled}")

                coverage = relevant_coverage(relationship_type, overlap)
                reasons.append(f"overlap_{int(round(coverage * 100))}pct")

        generic = naming.strength != STRONG and (
            is_low_signal_key(from_col.name) or is_low_signal_key(to_col.name)
        )
        if generic:
            reasons.append("generic_column_name")

        confidence = calculate_suggestion_score(
            type_match=True,
            naming=naming,
            relationship_type=relationship_type,
            profile_agrees=profile_agrees,
            coverage=coverage,
            generic=generic,
        )
        return PairInference(relationship_type, naming.strength, confidence, reasons, overlap=overlap)

    # ------------------------------------------------------------ auto-detect

    def suggest_relationships(self, catalog: Catalog, table_ids: Optional[Iterable[str]] = None) -> List[RelationshipSuggestion]:
        """
        Rank candidate relationships between catalog tables.

        At most one suggestion per table pair; persisted relationships and
        duplicate canonical keys never appear.
        """
        include = set(table_ids or [])
        tables = [
            t for t in catalog.tables
            if not include or t.id in include or t.synced_table_id in include
        ]
        existing = catalog.relationship_keys()
        cache = ProfileCache()

        try:
            best_by_pair: Dict[Tuple[str, str], RelationshipSuggestion] = {}
            for i, table_a in enumerate(tables):
                for table_b in tables[i + 1:]:
                    best = self._best_for_pair(catalog, table_a, table_b, existing, cache)
                    if best is not None:
                        best_by_pair[tuple(sorted((table_a.id, table_b.id)))] = best

            suggestions = sorted(best_by_pair.values(), key=lambda s: (-s.confidence, s.id))
            logger.info(
                f"[OK] Auto-detect: {len(suggestions)} suggestions across {len(tables)} tables "
                f"(profile cache hits={cache.hits}, misses={cache.misses})"
            )
            return suggestions
        finally:
            cache.clear()

    def _best_for_pair(self, catalog: Catalog, table_a: ModelTable, table_b: ModelTable,
                       existing: Set[str], cache: ProfileCache) -> Optional[RelationshipSuggestion]:
        by_key: Dict[str, RelationshipSuggestion] = {}

        for col_a in table_a.columns:
            if is_generic_column(col_a.name, col_a.type):
                continue
            for col_b in table_b.columns:
                if is_generic_column(col_b.name, col_b.type):
                    continue

                inference = self.infer_pair(table_a, col_a, table_b, col_b, cache)
                if inference is None or inference.rejected:
                    continue
                if inference.confidence < minimum_score(inference.relationship_type, inference.strength):
                    logger.debug(
                        f"  Below threshold: {table_a.table_name}.{col_a.name} <-> "
                        f"{table_b.table_name}.{col_b.name} ({inference.confidence})"
                    )
                    continue

                suggestion = self._to_suggestion(catalog, table_a, col_a, table_b, col_b, inference)
                if suggestion.id in existing:
                    continue
                current = by_key.get(suggestion.id)
                if current is None or suggestion.rank_key() < current.rank_key():
                    by_key[suggestion.id] = suggestion

        if not by_key:
            return None
        return min(by_key.values(), key=lambda s: s.rank_key())

    def _to_suggestion(self, catalog: Catalog, table_a: ModelTable, col_a: ModelColumn,
                       table_b: ModelTable, col_b: ModelColumn, inference: PairInference) -> RelationshipSuggestion:
        relationship_type = inference.relationship_type
        from_table, from_col, to_table, to_col = table_a, col_a, table_b, col_b
        if relationship_type == "1-n":
            # present the many side as "from"
            from_table, from_col, to_table, to_col = table_b, col_b, table_a, col_a
            relationship_type = "n-1"

        invalid_reason = NN_NOT_EXECUTABLE if relationship_type == "n-n" else runtime_invalid_reason(from_table, to_table)

        return RelationshipSuggestion(
            id=canonical_relationship_key(from_table.id, from_col.name, to_table.id, to_col.name),
            data_model_id=catalog.model.id,
            from_table_id=from_table.id,
            from_table=from_table.table_name,
            from_column=from_col.name,
            to_table_id=to_table.id,
            to_table=to_table.table_name,
            to_column=to_col.name,
            relationship_type=relationship_type,
            confidence=inference.confidence,
            validation_status=INVALID if invalid_reason else VALID,
            invalid_reason=invalid_reason,
            reasons=inference.reasons,
            strength=inference.strength,
        )

    # --------------------------------------------------------- explicit create

    def evaluate_relationship(
        self,
        from_table: ModelTable,
        from_column: str,
        to_table: ModelTable,
        to_column: str,
        requested_type: Optional[str] = None,
    ) -> RelationshipEvaluation:
        """
        Decide cardinality and validity for a relationship the user is creating.

        The stored cardinality reflects current evidence, not the requested
        type, unless the caller forces n-n.
        """
        from_col = from_table.find_column(from_column)
        to_col = to_table.find_column(to_column)
        if from_col is None or to_col is None:
            raise InvalidRequestError("Column does not exist in selected table schema")

        if requested_type == "n-n":
            return RelationshipEvaluation("n-n", INVALID, NN_NOT_EXECUTABLE, 0, ["forced_n-n"])

        cache = ProfileCache()
        try:
            inference = self.infer_pair(from_table, from_col, to_table, to_col, cache, naming_required=False)
        finally:
            cache.clear()

        relationship_type = inference.relationship_type or requested_type or "n-1"
        invalid_reason = inference.rejected_reason
        if invalid_reason is None and relationship_type == "n-n":
            invalid_reason = NN_NOT_EXECUTABLE
        if invalid_reason is None:
            invalid_reason = runtime_invalid_reason(from_table, to_table)

        return RelationshipEvaluation(
            relationship_type=relationship_type,
            validation_status=INVALID if invalid_reason else VALID,
            invalid_reason=invalid_reason,
            confidence=inference.confidence,
            reasons=inference.reasons,
        )

    # ----------------------------------------------------------- read checks

    def revalidate_relationship(self, relationship: ModelRelationship, catalog: Catalog) -> ModelRelationship:
        """Re-check a stored cardinality against current naming analysis (not persisted)."""
        if relationship.relationship_type == "n-n":
            return relationship

        from_table = catalog.resolve_table(relationship.from_table_id)
        to_table = catalog.resolve_table(relationship.to_table_id)
        if from_table is None or to_table is None:
            return relationship

        naming = analyze_naming(from_table, relationship.from_column, to_table, relationship.to_column)
        if naming is None or naming.strength != STRONG or naming.relationship_type == relationship.relationship_type:
            return relationship

        logger.info(
            f"[WARN] Stored cardinality {relationship.relationship_type} for "
            f"{relationship.from_table}.{relationship.from_column} -> {relationship.to_table}.{relationship.to_column} "
            f"disagrees with naming ({naming.relationship_type})"
        )
        corrected = replace(relationship, relationship_type=naming.relationship_type)
        if naming.relationship_type == "n-n":
            corrected = replace(corrected, validation_status=INVALID, invalid_reason=NN_NOT_EXECUTABLE)
        return corrected
