"""Recipe API endpoints."""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from app.api.calculator import get_ratio_engine
from app.core.database import get_db
from app.models.models import Recipe, SelectedRecipe
from app.schemas.schemas import RecipeCreate, RecipeResponse, SelectedRecipeResponse
from app.services.ratio_engine import RatioResolutionEngine
from app.services.recipe_bridge import RecipeNotFoundError, RecipeRatio

router = APIRouter(prefix="/recipe", tags=["recipes"])


@router.post("", response_model=RecipeResponse, status_code=201)
def create_recipe(recipe: RecipeCreate, db: Session = Depends(get_db)):
    """Create a new recipe, optionally with an embedded ratio."""
    db_recipe = Recipe(
        name=recipe.name,
        ratio=recipe.ratio.model_dump() if recipe.ratio else None,
        saved_custom_ratio=(
            recipe.savedCustomRatio.model_dump() if recipe.savedCustomRatio else None
        ),
    )
    db.add(db_recipe)
    db.commit()
    db.refresh(db_recipe)
    return _recipe_to_response(db_recipe)


@router.get("", response_model=list[RecipeResponse])
def list_recipes(db: Session = Depends(get_db)):
    """List all recipes."""
    return [_recipe_to_response(r) for r in db.query(Recipe).order_by(Recipe.id).all()]


@router.get("/selected", response_model=SelectedRecipeResponse)
async def get_selected_recipe(engine: RatioResolutionEngine = Depends(get_ratio_engine)):
    """Get the recipe currently loaded into the calculator."""
    selected = await engine.bridge.load_selected()
    if selected is None:
        raise HTTPException(status_code=404, detail="No recipe selected")
    return _selected_to_response(selected)


@router.delete("/selected", status_code=204)
async def clear_selected_recipe(engine: RatioResolutionEngine = Depends(get_ratio_engine)):
    """Unload the selected recipe."""
    await engine.bridge.clear_selection()
    return None


@router.get("/{recipe_id}", response_model=RecipeResponse)
def get_recipe(recipe_id: int, db: Session = Depends(get_db)):
    """Get a recipe by ID."""
    recipe = db.query(Recipe).filter(Recipe.id == recipe_id).first()
    if not recipe:
        raise HTTPException(status_code=404, detail="Recipe not found")
    return _recipe_to_response(recipe)


@router.post("/{recipe_id}/select", response_model=SelectedRecipeResponse)
async def select_recipe(
    recipe_id: int,
    engine: RatioResolutionEngine = Depends(get_ratio_engine),
):
    """
    Load a recipe into the calculator.

    Loading a recipe leaves any manual override context, so the next
    trigger resolves the recipe's own ratio.
    """
    try:
        selected = await engine.bridge.select_recipe(recipe_id)
    except RecipeNotFoundError:
        raise HTTPException(status_code=404, detail="Recipe not found")
    await engine.clear_user_selection()
    return _selected_to_response(selected)


@router.delete("/{recipe_id}", status_code=204)
def delete_recipe(recipe_id: int, db: Session = Depends(get_db)):
    """Delete a recipe."""
    recipe = db.query(Recipe).filter(Recipe.id == recipe_id).first()
    if not recipe:
        raise HTTPException(status_code=404, detail="Recipe not found")

    # The selected snapshot survives, detached from the collection
    db.query(SelectedRecipe).filter(SelectedRecipe.recipe_id == recipe_id).update(
        {SelectedRecipe.recipe_id: None}, synchronize_session=False
    )
    db.delete(recipe)
    db.commit()
    return None


def _recipe_to_response(recipe: Recipe) -> RecipeResponse:
    """Convert Recipe model to response schema."""
    return RecipeResponse(
        id=recipe.id,
        name=recipe.name,
        ratio=recipe.ratio,
        savedCustomRatio=recipe.saved_custom_ratio,
    )


def _selected_to_response(selected: RecipeRatio) -> SelectedRecipeResponse:
    return SelectedRecipeResponse(
        recipe_id=selected.recipe_id,
        name=selected.name,
        ratio=selected.ratio,
        savedCustomRatio=selected.saved_custom_ratio,
    )
