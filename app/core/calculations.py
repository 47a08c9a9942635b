"""
Core math engine for meat : bone : organ corrections.

For a pivot component P (whose weighed amount is taken as correct) and
another component Q:

    correction(P, Q) = (weight_P / pct_P) * pct_Q - weight_Q

Positive means add that much of Q, negative means remove abs(value).
"""

from dataclasses import dataclass, field
from typing import Iterable, Optional

from app.core.config import settings
from app.core.ratios import COMPONENTS, CUSTOM_LABEL, Ratio


# Hand-picked imbalanced samples for the presets (grams)
PRESET_DEMO_SAMPLES = {
    "80:10:10": (85.0, 8.0, 7.0),
    "75:15:10": (80.0, 12.0, 8.0),
}

# (meat, bone, organ) skew applied to an ideal sample
CUSTOM_DEMO_SKEW = (1.2, 0.8, 1.0)
OTHER_DEMO_SKEW = (1.1, 0.9, 1.0)


@dataclass(frozen=True)
class WeightSample:
    """Weighed amounts of meat, bone and organ in one batch."""
    meat: float = 0
    bone: float = 0
    organ: float = 0

    def __post_init__(self):
        for name in COMPONENTS:
            if getattr(self, name) < 0:
                raise ValueError(f"{name} weight must not be negative")

    @property
    def total(self) -> float:
        return self.meat + self.bone + self.organ

    @property
    def is_empty(self) -> bool:
        return self.meat == 0 and self.bone == 0 and self.organ == 0

    def weight(self, component: str) -> float:
        if component not in COMPONENTS:
            raise KeyError(component)
        return getattr(self, component)


@dataclass
class PivotCorrection:
    """Corrections for the two other components, using one pivot."""
    pivot: str
    deltas: dict[str, float] = field(default_factory=dict)
    evaluated: bool = False


@dataclass
class CorrectorSet:
    """Corrections for all three pivots."""
    meat: PivotCorrection
    bone: PivotCorrection
    organ: PivotCorrection
    demo: bool = False

    def for_pivot(self, pivot: str) -> PivotCorrection:
        if pivot not in COMPONENTS:
            raise KeyError(pivot)
        return getattr(self, pivot)

    def as_dict(self) -> dict:
        return {name: dict(self.for_pivot(name).deltas) for name in COMPONENTS}


def _other_components(pivot: str) -> tuple[str, str]:
    return tuple(c for c in COMPONENTS if c != pivot)


def calculate_correction(
    pivot_weight: float,
    pivot_pct: float,
    other_pct: float,
    other_weight: float,
) -> float:
    """
    Calculate how much of one component to add (or remove).

    Formula: correction = (pivot_weight / pivot_pct) * other_pct - other_weight

    Args:
        pivot_weight: Weighed amount of the pivot component
        pivot_pct: Target percentage of the pivot component
        other_pct: Target percentage of the component being corrected
        other_weight: Weighed amount of the component being corrected

    Returns:
        Signed delta for the corrected component
    """
    if pivot_pct <= 0:
        raise ValueError("pivot_pct must be positive")
    return (pivot_weight / pivot_pct) * other_pct - other_weight


def _pivot_correction(sample: WeightSample, ratio: Ratio, pivot: str) -> PivotCorrection:
    others = _other_components(pivot)
    result = PivotCorrection(pivot=pivot, deltas={name: 0.0 for name in others})

    pivot_weight = sample.weight(pivot)
    pivot_pct = ratio.percentage(pivot)
    # No reference weight or an undefined scale: nothing actionable
    if pivot_weight <= 0 or pivot_pct <= 0:
        return result

    for name in others:
        result.deltas[name] = calculate_correction(
            pivot_weight, pivot_pct, ratio.percentage(name), sample.weight(name)
        )
    result.evaluated = True
    return result


def calculate_correctors(sample: WeightSample, ratio: Ratio) -> CorrectorSet:
    """
    Calculate corrections for every pivot from real weights.

    A pivot with zero weight or a zero target percentage is skipped and
    its deltas stay at 0.

    Args:
        sample: Weighed meat, bone and organ
        ratio: Target ratio

    Returns:
        CorrectorSet with one PivotCorrection per component
    """
    return CorrectorSet(
        meat=_pivot_correction(sample, ratio, "meat"),
        bone=_pivot_correction(sample, ratio, "bone"),
        organ=_pivot_correction(sample, ratio, "organ"),
        demo=False,
    )


def demo_sample(ratio: Ratio, sample_weight: Optional[float] = None) -> WeightSample:
    """
    Build a deliberately imbalanced sample for demonstration mode.

    Presets use fixed samples. Custom ratios scale an ideal batch of
    sample_weight grams by +20% meat and -20% bone; any other label by
    +10% meat and -10% bone.
    """
    if sample_weight is None:
        sample_weight = settings.DEMO_SAMPLE_WEIGHT

    if ratio.label in PRESET_DEMO_SAMPLES:
        return WeightSample(*PRESET_DEMO_SAMPLES[ratio.label])

    skew = CUSTOM_DEMO_SKEW if ratio.label == CUSTOM_LABEL else OTHER_DEMO_SKEW
    return WeightSample(*(
        sample_weight * pct / 100 * factor
        for pct, factor in zip(ratio.triple, skew)
    ))


def calculate_demo_correctors(ratio: Ratio, sample_weight: Optional[float] = None) -> CorrectorSet:
    """Calculate corrections for the demonstration sample of a ratio."""
    correctors = calculate_correctors(demo_sample(ratio, sample_weight), ratio)
    correctors.demo = True
    return correctors


def compute_correctors(sample: WeightSample, ratio: Ratio) -> CorrectorSet:
    """
    Pick the calculation mode for a sample.

    Demonstration mode is used only when all three weights are zero; a
    sample with one or two zero components runs on the real weights.
    """
    if sample.is_empty:
        return calculate_demo_correctors(ratio)
    return calculate_correctors(sample, ratio)


def aggregate_weights(ingredients: Iterable[dict]) -> WeightSample:
    """
    Sum meat, bone and organ weights over an ingredient list.

    Args:
        ingredients: Dicts with 'meat_weight', 'bone_weight', 'organ_weight'

    Returns:
        WeightSample with the totals
    """
    meat = bone = organ = 0.0
    for ing in ingredients:
        meat += ing.get("meat_weight", 0)
        bone += ing.get("bone_weight", 0)
        organ += ing.get("organ_weight", 0)
    return WeightSample(meat=meat, bone=bone, organ=organ)


def weight_breakdown(sample: WeightSample) -> dict[str, float]:
    """
    Actual percentage split of a sample.

    Returns:
        Dict of component -> percentage of total weight (0 for an empty sample)
    """
    total = sample.total
    if total <= 0:
        return {name: 0.0 for name in COMPONENTS}
    return {name: sample.weight(name) / total * 100 for name in COMPONENTS}
