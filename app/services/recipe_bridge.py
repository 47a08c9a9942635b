"""
Recipe ratio bridge.

Keeps the ratio embedded in the selected recipe (and in its entry of the
recipe collection) in step with the calculator, while remembering the
recipe's last custom ratio across preset round-trips.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from fastapi.concurrency import run_in_threadpool
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.database import SessionLocal
from app.core.ratios import CUSTOM_LABEL, Ratio
from app.models.models import Recipe, SelectedRecipe
from app.services.storage import StorageError

logger = logging.getLogger(__name__)

SELECTED_RECIPE_ROW_ID = 1


class RecipeNotFoundError(LookupError):
    """No recipe with the requested id exists."""


@dataclass(frozen=True)
class RecipeRatio:
    """Ratio information carried by a recipe."""
    recipe_id: Optional[int]
    name: str
    # {"meat", "bone", "organ", "selectedRatio", "isUserDefined"}
    ratio: Optional[dict] = None
    # {"meat", "bone", "organ"}
    saved_custom_ratio: Optional[dict] = None


def embed_ratio(ratio: Ratio) -> dict:
    """Embedded form of a ratio written by the calculator."""
    return {
        "meat": ratio.meat_pct,
        "bone": ratio.bone_pct,
        "organ": ratio.organ_pct,
        "selectedRatio": ratio.label,
        "isUserDefined": True,
    }


def embed_custom(ratio: Ratio) -> dict:
    return {"meat": ratio.meat_pct, "bone": ratio.bone_pct, "organ": ratio.organ_pct}


def _apply_to_row(row, ratio: Ratio) -> None:
    row.ratio = embed_ratio(ratio)
    if ratio.label == CUSTOM_LABEL:
        row.saved_custom_ratio = embed_custom(ratio)


def _snapshot(row: SelectedRecipe) -> RecipeRatio:
    return RecipeRatio(
        recipe_id=row.recipe_id,
        name=row.name,
        ratio=dict(row.ratio) if row.ratio else None,
        saved_custom_ratio=dict(row.saved_custom_ratio) if row.saved_custom_ratio else None,
    )


class RecipeRatioBridge:
    """Reads and writes the ratio of the currently selected recipe."""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self._session_factory = session_factory

    async def load_selected(self) -> Optional[RecipeRatio]:
        return await run_in_threadpool(self._load_selected)

    async def apply_ratio(self, ratio: Ratio) -> bool:
        """
        Write a ratio into the selected recipe and its collection entry.

        The embedded ratio is always overwritten. savedCustomRatio is only
        overwritten for custom ratios, so presets leave it alone.

        Returns:
            True if a recipe was selected and updated
        """
        return await run_in_threadpool(self._apply_ratio, ratio)

    async def select_recipe(self, recipe_id: int) -> RecipeRatio:
        return await run_in_threadpool(self._select_recipe, recipe_id)

    async def clear_selection(self) -> None:
        await run_in_threadpool(self._clear_selection)

    def _load_selected(self) -> Optional[RecipeRatio]:
        try:
            with self._session_factory() as db:
                row = db.get(SelectedRecipe, SELECTED_RECIPE_ROW_ID)
                return _snapshot(row) if row else None
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to read selected recipe: {e}") from e

    def _apply_ratio(self, ratio: Ratio) -> bool:
        with self._session_factory() as db:
            try:
                selected = db.get(SelectedRecipe, SELECTED_RECIPE_ROW_ID)
                if selected is None:
                    return False

                name = selected.name
                _apply_to_row(selected, ratio)
                if selected.recipe_id is not None:
                    recipe = db.get(Recipe, selected.recipe_id)
                    if recipe is not None:
                        _apply_to_row(recipe, ratio)
                    else:
                        logger.warning(
                            "Selected recipe %s missing from collection", selected.recipe_id
                        )
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                raise StorageError(f"Failed to update recipe ratio: {e}") from e

        logger.info("Updated ratio %s for recipe '%s'", ratio.label, name)
        return True

    def _select_recipe(self, recipe_id: int) -> RecipeRatio:
        with self._session_factory() as db:
            recipe = db.get(Recipe, recipe_id)
            if recipe is None:
                raise RecipeNotFoundError(recipe_id)
            try:
                row = db.get(SelectedRecipe, SELECTED_RECIPE_ROW_ID)
                if row is None:
                    row = SelectedRecipe(id=SELECTED_RECIPE_ROW_ID, name=recipe.name)
                    db.add(row)
                row.recipe_id = recipe.id
                row.name = recipe.name
                row.ratio = dict(recipe.ratio) if recipe.ratio else None
                row.saved_custom_ratio = (
                    dict(recipe.saved_custom_ratio) if recipe.saved_custom_ratio else None
                )
                db.commit()
                db.refresh(row)
                return _snapshot(row)
            except SQLAlchemyError as e:
                db.rollback()
                raise StorageError(f"Failed to select recipe {recipe_id}: {e}") from e

    def _clear_selection(self) -> None:
        with self._session_factory() as db:
            try:
                db.query(SelectedRecipe).delete()
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                raise StorageError(f"Failed to clear selected recipe: {e}") from e
