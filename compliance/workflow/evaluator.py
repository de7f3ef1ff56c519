"""
Risk/Compliance Evaluator - EUDR Article 10 screening

Pure, deterministic scoring of a plot's geospatial evidence, its supporting
documents and the commodity quality grade. No I/O and no randomness: the
same inputs always produce the same verdict, so the orchestrator can treat
the output as authoritative routing input.

Scoring (0-100, higher is better):
- Forest protection (50%): tree cover loss after the Dec 31, 2020 cutoff
    < 0.5 ha   -> 100 (noise level, compliant)
    0.5-2.0 ha -> 50  (manual review required)
    > 2.0 ha   -> 0   (EUDR violation)
- Documentation (30%): share of required documents present
- Quality (20%): grade A 100, B 85, C 65, D 40

Risk: score >= 90 low, >= 70 medium, else high.
Verdict: low -> pass, medium -> review, high -> reject.
"""

from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence

from compliance.errors import ValidationError


MINOR_LOSS_HECTARES = 0.5
MAJOR_LOSS_HECTARES = 2.0

REQUIRED_DOCUMENTS = ("land_title", "farmer_id", "harvest_declaration")

GRADE_POINTS = {"A": 100, "B": 85, "C": 65, "D": 40}

FOREST_WEIGHT = 0.5
DOCUMENT_WEIGHT = 0.3
QUALITY_WEIGHT = 0.2

LOW_RISK_SCORE = 90
MEDIUM_RISK_SCORE = 70

_VERDICT_RANK = {"pass": 0, "review": 1, "reject": 2}
_RISK_FOR_VERDICT = {"pass": "low", "review": "medium", "reject": "high"}


@dataclass(frozen=True)
class GeospatialEvidence:
    """Plot geometry and satellite screening results"""
    plot_polygon: Optional[Sequence[Sequence[float]]]
    tree_cover_loss_hectares: float = 0.0  # loss after the EUDR cutoff
    protected_area_overlap: bool = False


@dataclass(frozen=True)
class DocumentationEvidence:
    documents: frozenset = frozenset()

    @classmethod
    def from_names(cls, names: Iterable[str]) -> "DocumentationEvidence":
        return cls(documents=frozenset(str(n).strip().lower() for n in names))

    @property
    def missing(self) -> List[str]:
        return [doc for doc in REQUIRED_DOCUMENTS if doc not in self.documents]


@dataclass(frozen=True)
class EvaluationResult:
    risk_level: str  # low, medium, high
    verdict: str     # pass, review, reject
    score: int       # 0..100
    factors: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "risk_level": self.risk_level,
            "verdict": self.verdict,
            "score": self.score,
            "factors": list(self.factors),
        }


def is_valid_polygon(polygon) -> bool:
    """At least three [lat, lon] vertices inside coordinate bounds."""
    if not isinstance(polygon, (list, tuple)) or len(polygon) < 3:
        return False
    for vertex in polygon:
        if not isinstance(vertex, (list, tuple)) or len(vertex) != 2:
            return False
        lat, lon = vertex
        if not isinstance(lat, (int, float)) or not isinstance(lon, (int, float)):
            return False
        if not (-90 <= lat <= 90 and -180 <= lon <= 180):
            return False
    return True


def normalize_grade(grade: str) -> str:
    normalized = str(grade).strip().upper()
    if normalized.startswith("GRADE "):
        normalized = normalized[len("GRADE "):]
    if normalized not in GRADE_POINTS:
        raise ValidationError(f"Unknown quality grade '{grade}' (expected one of {', '.join(GRADE_POINTS)})")
    return normalized


def _forest_points(geospatial: GeospatialEvidence, factors: List[str]) -> int:
    loss = geospatial.tree_cover_loss_hectares
    if loss < MINOR_LOSS_HECTARES:
        return 100
    if loss <= MAJOR_LOSS_HECTARES:
        factors.append(f"tree_cover_loss_{loss:.2f}ha_requires_review")
        return 50
    factors.append(f"tree_cover_loss_{loss:.2f}ha_exceeds_{MAJOR_LOSS_HECTARES}ha")
    return 0


def _escalate(verdict: str, floor: str) -> str:
    return verdict if _VERDICT_RANK[verdict] >= _VERDICT_RANK[floor] else floor


def evaluate(
    geospatial: GeospatialEvidence,
    documentation: DocumentationEvidence,
    quality_grade: str,
) -> EvaluationResult:
    """Classify risk and return a pass/review/reject verdict."""
    if geospatial.tree_cover_loss_hectares < 0:
        raise ValidationError("tree_cover_loss_hectares cannot be negative")

    grade = normalize_grade(quality_grade)
    factors: List[str] = []

    has_polygon = is_valid_polygon(geospatial.plot_polygon)
    if has_polygon:
        forest = _forest_points(geospatial, factors)
    else:
        forest = 0
        factors.append("no_plot_geometry")

    missing = documentation.missing
    present = len(REQUIRED_DOCUMENTS) - len(missing)
    documentation_points = round(100 * present / len(REQUIRED_DOCUMENTS))
    factors.extend(f"missing_document_{doc}" for doc in missing)

    quality = GRADE_POINTS[grade]
    if grade == "D":
        factors.append("low_quality_grade")

    score = round(FOREST_WEIGHT * forest + DOCUMENT_WEIGHT * documentation_points + QUALITY_WEIGHT * quality)

    if score >= LOW_RISK_SCORE:
        verdict = "pass"
    elif score >= MEDIUM_RISK_SCORE:
        verdict = "review"
    else:
        verdict = "reject"

    if missing:
        verdict = _escalate(verdict, "review")
    if geospatial.protected_area_overlap:
        factors.append("protected_area_overlap")
        verdict = "reject"
    if not has_polygon or geospatial.tree_cover_loss_hectares > MAJOR_LOSS_HECTARES:
        verdict = "reject"

    return EvaluationResult(
        risk_level=_RISK_FOR_VERDICT[verdict],
        verdict=verdict,
        score=score,
        factors=factors,
    )
