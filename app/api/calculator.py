"""Calculator API endpoints."""

from fastapi import APIRouter, Depends, HTTPException, Request

from app.core.calculations import (
    CorrectorSet,
    WeightSample,
    aggregate_weights,
    compute_correctors,
    weight_breakdown,
)
from app.core.ratios import (
    CUSTOM_LABEL,
    Ratio,
    RatioOrigin,
    RatioValidationError,
    build_ratio,
    is_preset_label,
    validate_ratio,
)
from app.services.ratio_engine import (
    CalculatorState,
    NavigationRatio,
    RatioResolutionEngine,
    ResolutionSources,
    TriggerEvent,
)
from app.services import ratio_engine
from app.schemas.schemas import (
    CalculatorStateResponse,
    CorrectorRequest,
    CorrectorSetResponse,
    PivotCorrectionResponse,
    RatioResponse,
    RatioSelection,
    SetRatioRequest,
    TriggerRequest,
    WeightBreakdownResponse,
)

router = APIRouter(prefix="/calculator", tags=["calculator"])


def get_ratio_engine(request: Request) -> RatioResolutionEngine:
    """The engine created at startup; one logical calculator session."""
    return request.app.state.ratio_engine


@router.post("/trigger", response_model=CalculatorStateResponse)
async def trigger(
    data: TriggerRequest,
    engine: RatioResolutionEngine = Depends(get_ratio_engine),
):
    """
    Resolve the active ratio for a mount, focus or parameter change.

    Weights come from `ingredients` when given, otherwise from `weights`.
    Omitting both keeps the previous weight sample.
    """
    if data.ingredients is not None:
        weights = aggregate_weights(ing.model_dump() for ing in data.ingredients)
    elif data.weights is not None:
        weights = WeightSample(**data.weights.model_dump())
    else:
        weights = None

    navigation = None
    if data.ratio is not None:
        navigation = NavigationRatio(
            meat=data.ratio.meat,
            bone=data.ratio.bone,
            organ=data.ratio.organ,
            selected_ratio=data.ratio.selectedRatio,
            is_user_defined=data.ratio.isUserDefined,
        )

    global_custom = None
    if data.custom_ratio is not None:
        global_custom = ratio_engine.RatioSelection(**data.custom_ratio.model_dump())

    state = await engine.on_trigger(
        TriggerEvent(data.event.value),
        ResolutionSources(
            weights=weights,
            navigation_ratio=navigation,
            global_custom_ratio=global_custom,
        ),
    )
    return _state_to_response(state)


@router.get("/state", response_model=CalculatorStateResponse)
def get_state(engine: RatioResolutionEngine = Depends(get_ratio_engine)):
    """Current ratio and correctors, without resolving again."""
    return _state_to_response(engine.state())


@router.post("/ratio", response_model=CalculatorStateResponse)
async def set_ratio(
    data: SetRatioRequest,
    engine: RatioResolutionEngine = Depends(get_ratio_engine),
):
    """Apply a ratio the user picked (preset button or custom values)."""
    try:
        state = await engine.set_ratio(data.meat, data.bone, data.organ, data.label)
    except RatioValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _state_to_response(state)


@router.post("/custom-ratio", response_model=CalculatorStateResponse)
async def set_custom_ratio(
    data: RatioSelection,
    engine: RatioResolutionEngine = Depends(get_ratio_engine),
):
    """Apply values coming back from the custom ratio editor."""
    try:
        state = await engine.select_custom_ratio(
            ratio_engine.RatioSelection(**data.model_dump())
        )
    except RatioValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _state_to_response(state)


@router.get("/custom-ratio/seed", response_model=RatioSelection)
async def get_custom_ratio_seed(engine: RatioResolutionEngine = Depends(get_ratio_engine)):
    """Values to prefill the custom ratio editor with."""
    seed = await engine.custom_ratio_seed()
    return RatioSelection(meat=seed.meat, bone=seed.bone, organ=seed.organ)


@router.delete("/selection", status_code=204)
async def clear_user_selection(engine: RatioResolutionEngine = Depends(get_ratio_engine)):
    """Re-enable automatic ratio resolution on the next trigger."""
    await engine.clear_user_selection()
    return None


@router.post("/reset", response_model=CalculatorStateResponse)
async def reset(engine: RatioResolutionEngine = Depends(get_ratio_engine)):
    """Forget every saved ratio and fall back to the default."""
    state = await engine.reset()
    return _state_to_response(state)


@router.post("/correctors", response_model=CorrectorSetResponse)
def calculate(data: CorrectorRequest):
    """Stateless corrector calculation for a weight sample and a ratio."""
    label = data.ratio.label
    if label != CUSTOM_LABEL and not is_preset_label(label):
        raise HTTPException(status_code=400, detail=f"Unknown ratio '{label}'")
    try:
        ratio = validate_ratio(build_ratio(
            data.ratio.meat, data.ratio.bone, data.ratio.organ, label, RatioOrigin.MANUAL
        ))
    except RatioValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    correctors = compute_correctors(WeightSample(**data.weights.model_dump()), ratio)
    return _correctors_to_response(correctors)


def _ratio_to_response(ratio: Ratio) -> RatioResponse:
    return RatioResponse(
        meat=ratio.meat_pct,
        bone=ratio.bone_pct,
        organ=ratio.organ_pct,
        label=ratio.label,
        is_custom=ratio.is_custom,
        is_user_defined=ratio.is_user_defined,
        origin=ratio.origin.value,
    )


def _correctors_to_response(correctors: CorrectorSet) -> CorrectorSetResponse:
    pivots = {}
    for name in ("meat", "bone", "organ"):
        pivot = correctors.for_pivot(name)
        pivots[name] = PivotCorrectionResponse(
            pivot=pivot.pivot,
            deltas=dict(pivot.deltas),
            evaluated=pivot.evaluated,
        )
    return CorrectorSetResponse(**pivots, demo=correctors.demo)


def _state_to_response(state: CalculatorState) -> CalculatorStateResponse:
    breakdown = weight_breakdown(state.weights)
    return CalculatorStateResponse(
        ratio=_ratio_to_response(state.ratio),
        correctors=_correctors_to_response(state.correctors),
        weights=WeightBreakdownResponse(
            meat=state.weights.meat,
            bone=state.weights.bone,
            organ=state.weights.organ,
            total=state.weights.total,
            meat_pct=breakdown["meat"],
            bone_pct=breakdown["bone"],
            organ_pct=breakdown["organ"],
        ),
        trigger=state.trigger.value,
        user_selected=state.user_selected,
    )
