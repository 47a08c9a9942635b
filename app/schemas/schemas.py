"""Pydantic schemas for request/response validation."""

from typing import Optional
from pydantic import BaseModel, Field
from enum import Enum


class TriggerEvent(str, Enum):
    MOUNT = "mount"
    FOCUS = "focus"
    PARAMS = "params"


class RatioOrigin(str, Enum):
    MANUAL = "manual"
    NAVIGATION = "navigation"
    RECIPE = "recipe"
    GLOBAL_CUSTOM = "global_custom"
    PERSISTED = "persisted"
    DEFAULT = "default"


# Input schemas
class WeightSampleInput(BaseModel):
    meat: float = Field(0, ge=0)
    bone: float = Field(0, ge=0)
    organ: float = Field(0, ge=0)


class IngredientWeights(BaseModel):
    """One ingredient from the input list, split into its components."""
    name: str = Field(..., min_length=1, max_length=200)
    meat_weight: float = Field(0, ge=0)
    bone_weight: float = Field(0, ge=0)
    organ_weight: float = Field(0, ge=0)


class RatioSelection(BaseModel):
    meat: float = Field(..., ge=0, le=100)
    bone: float = Field(..., ge=0, le=100)
    organ: float = Field(..., ge=0, le=100)


class SetRatioRequest(RatioSelection):
    label: str = Field(..., description="'80:10:10', '75:15:10' or 'custom'")


class NavigationRatioInput(BaseModel):
    meat: float = Field(..., ge=0, allow_inf_nan=False)
    bone: float = Field(..., ge=0, allow_inf_nan=False)
    organ: float = Field(..., ge=0, allow_inf_nan=False)
    selectedRatio: str
    isUserDefined: bool = False


class TriggerRequest(BaseModel):
    event: TriggerEvent = TriggerEvent.FOCUS
    weights: Optional[WeightSampleInput] = None
    ingredients: Optional[list[IngredientWeights]] = Field(
        None, description="Used instead of weights when given"
    )
    ratio: Optional[NavigationRatioInput] = Field(
        None, description="Ratio carried by navigation parameters"
    )
    custom_ratio: Optional[RatioSelection] = Field(
        None, description="Last custom ratio used outside any recipe"
    )


class CorrectorRequest(BaseModel):
    weights: WeightSampleInput
    ratio: SetRatioRequest


# Output schemas
class RatioResponse(BaseModel):
    meat: float
    bone: float
    organ: float
    label: str
    is_custom: bool
    is_user_defined: bool
    origin: RatioOrigin


class PivotCorrectionResponse(BaseModel):
    pivot: str
    deltas: dict[str, float]
    evaluated: bool


class CorrectorSetResponse(BaseModel):
    meat: PivotCorrectionResponse
    bone: PivotCorrectionResponse
    organ: PivotCorrectionResponse
    demo: bool


class WeightBreakdownResponse(BaseModel):
    meat: float
    bone: float
    organ: float
    total: float
    meat_pct: float
    bone_pct: float
    organ_pct: float


class CalculatorStateResponse(BaseModel):
    ratio: RatioResponse
    correctors: CorrectorSetResponse
    weights: WeightBreakdownResponse
    trigger: str
    user_selected: bool


# Recipe schemas
class EmbeddedRatio(BaseModel):
    meat: float = Field(..., ge=0, allow_inf_nan=False)
    bone: float = Field(..., ge=0, allow_inf_nan=False)
    organ: float = Field(..., ge=0, allow_inf_nan=False)
    selectedRatio: str
    isUserDefined: bool = False


class SavedCustomRatio(BaseModel):
    meat: float = Field(..., ge=0, allow_inf_nan=False)
    bone: float = Field(..., ge=0, allow_inf_nan=False)
    organ: float = Field(..., ge=0, allow_inf_nan=False)


class RecipeCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    ratio: Optional[EmbeddedRatio] = None
    savedCustomRatio: Optional[SavedCustomRatio] = None


class RecipeResponse(BaseModel):
    id: int
    name: str
    ratio: Optional[EmbeddedRatio] = None
    savedCustomRatio: Optional[SavedCustomRatio] = None


class SelectedRecipeResponse(BaseModel):
    recipe_id: Optional[int]
    name: str
    ratio: Optional[EmbeddedRatio] = None
    savedCustomRatio: Optional[SavedCustomRatio] = None
