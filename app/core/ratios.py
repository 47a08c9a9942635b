"""
Meat : bone : organ ratio model.

A ratio is the target percentage split of a raw meal. Two presets exist:
80:10:10 for adult animals and 75:15:10 for kittens and nursing mothers.
Anything else is a custom ratio, accepted when its total is within the
configured tolerance of 100.
"""

import enum
import math
from dataclasses import dataclass, field, replace
from typing import Optional

from app.core.config import settings


CUSTOM_LABEL = "custom"

# label -> (meat, bone, organ)
PRESETS = {
    "80:10:10": (80.0, 10.0, 10.0),  # Adult
    "75:15:10": (75.0, 15.0, 10.0),  # Kitten / pregnant / nursing
}

DEFAULT_LABEL = "80:10:10"

COMPONENTS = ("meat", "bone", "organ")


class RatioOrigin(str, enum.Enum):
    """Where the active ratio came from."""
    MANUAL = "manual"
    NAVIGATION = "navigation"
    RECIPE = "recipe"
    GLOBAL_CUSTOM = "global_custom"
    PERSISTED = "persisted"
    DEFAULT = "default"


# Origins that count as a user selection for the current session
USER_SELECTED_ORIGINS = frozenset({RatioOrigin.MANUAL, RatioOrigin.NAVIGATION})


class RatioValidationError(ValueError):
    """A proposed ratio failed the sum/tolerance check."""


@dataclass(frozen=True)
class Ratio:
    """Target percentage split between meat, bone and organ."""
    meat_pct: float
    bone_pct: float
    organ_pct: float
    label: str
    is_custom: bool = False
    is_user_defined: bool = False
    # Provenance only; not part of equality
    origin: RatioOrigin = field(default=RatioOrigin.DEFAULT, compare=False)

    @property
    def total(self) -> float:
        return self.meat_pct + self.bone_pct + self.organ_pct

    @property
    def triple(self) -> tuple[float, float, float]:
        return (self.meat_pct, self.bone_pct, self.organ_pct)

    def percentage(self, component: str) -> float:
        """Target percentage for 'meat', 'bone' or 'organ'."""
        if component not in COMPONENTS:
            raise KeyError(component)
        return getattr(self, f"{component}_pct")

    def with_origin(self, origin: RatioOrigin) -> "Ratio":
        return replace(self, origin=origin)


def is_within_tolerance(total: float, tolerance: Optional[float] = None) -> bool:
    """Check a ratio total is positive and within tolerance of 100."""
    if tolerance is None:
        tolerance = settings.RATIO_TOLERANCE
    return total > 0 and abs(total - 100) <= tolerance


def is_preset_label(label: str) -> bool:
    return label in PRESETS


def match_preset(meat: float, bone: float, organ: float) -> Optional[str]:
    """
    Find the preset whose signature matches the given values.

    Values are rounded to whole percentages first, so a recipe stored as
    80.0/10.0/10.0 or 79.8/10.1/10.1 still normalizes to "80:10:10".

    Returns:
        The preset label, or None when no preset matches
    """
    signature = (round(meat), round(bone), round(organ))
    for label, values in PRESETS.items():
        if signature == tuple(round(v) for v in values):
            return label
    return None


def preset_ratio(label: str, origin: RatioOrigin = RatioOrigin.DEFAULT) -> Ratio:
    """Build the canonical ratio for a preset label."""
    if label not in PRESETS:
        raise RatioValidationError(f"Unknown preset '{label}'")
    meat, bone, organ = PRESETS[label]
    return Ratio(meat, bone, organ, label=label, origin=origin)


def custom_ratio(
    meat: float,
    bone: float,
    organ: float,
    origin: RatioOrigin = RatioOrigin.MANUAL,
    is_user_defined: bool = True,
) -> Ratio:
    return Ratio(
        float(meat),
        float(bone),
        float(organ),
        label=CUSTOM_LABEL,
        is_custom=True,
        is_user_defined=is_user_defined,
        origin=origin,
    )


def default_ratio() -> Ratio:
    return preset_ratio(DEFAULT_LABEL, RatioOrigin.DEFAULT)


def build_ratio(
    meat: float,
    bone: float,
    organ: float,
    label: str,
    origin: RatioOrigin,
    is_user_defined: bool = False,
) -> Ratio:
    """Build a ratio for any label: preset, custom, or a recipe's own label."""
    if label == CUSTOM_LABEL:
        return custom_ratio(meat, bone, organ, origin=origin, is_user_defined=is_user_defined)
    return Ratio(
        float(meat),
        float(bone),
        float(organ),
        label=label,
        is_custom=False,
        is_user_defined=is_user_defined,
        origin=origin,
    )


def validate_ratio(ratio: Ratio, tolerance: Optional[float] = None) -> Ratio:
    """
    Validate a ratio before it may become active.

    Preset labels must carry exactly the preset values (which sum to 100).
    Every other label needs non-negative values whose total is within
    tolerance of 100.

    Raises:
        RatioValidationError: if the ratio is not acceptable
    """
    if any(v < 0 for v in ratio.triple):
        raise RatioValidationError(
            f"Ratio percentages must not be negative ({_fmt(ratio)})"
        )

    if is_preset_label(ratio.label):
        if ratio.triple != PRESETS[ratio.label]:
            raise RatioValidationError(
                f"Preset {ratio.label} does not match its values ({_fmt(ratio)})"
            )
        return ratio

    if not is_within_tolerance(ratio.total, tolerance):
        raise RatioValidationError(
            f"Ratio must sum to about 100% (currently {ratio.total:.1f}%)"
        )
    return ratio


def is_valid_ratio(ratio: Ratio, tolerance: Optional[float] = None) -> bool:
    try:
        validate_ratio(ratio, tolerance)
    except RatioValidationError:
        return False
    return True


def format_percentage(value: float) -> str:
    """Render a percentage the way it is stored: '80', '72.5'."""
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


def parse_percentage(raw: Optional[str]) -> Optional[float]:
    """Parse a stored numeric string, returning None for missing or junk values."""
    if raw is None or raw == "":
        return None
    try:
        value = float(raw)
    except ValueError:
        return None
    return value if math.isfinite(value) else None


def _fmt(ratio: Ratio) -> str:
    return ":".join(format_percentage(v) for v in ratio.triple)
