"""Tests for the ratio resolution engine."""

import asyncio

import pytest

from app.core.calculations import WeightSample
from app.core.ratios import RatioOrigin, RatioValidationError, custom_ratio
from app.models.models import Recipe
from app.services.ratio_engine import (
    NavigationRatio,
    RatioResolutionEngine,
    RatioSelection,
    ResolutionSources,
    TriggerEvent,
)
from app.services.recipe_bridge import RecipeRatioBridge
from app.services.storage import KeyValueStore, StorageError


NAV_CUSTOM = NavigationRatio(
    meat=70, bone=20, organ=10, selected_ratio="custom", is_user_defined=True
)


def add_recipe(db, ratio=None, saved_custom_ratio=None):
    recipe = Recipe(name="Duck & Quail", ratio=ratio, saved_custom_ratio=saved_custom_ratio)
    db.add(recipe)
    db.commit()
    db.refresh(recipe)
    return recipe


class FlakyStore(KeyValueStore):
    """Store whose reads and writes can be switched off."""

    def __init__(self, session_factory):
        super().__init__(session_factory)
        self.fail = False

    async def multi_get(self, keys):
        if self.fail:
            raise StorageError("store offline")
        return await super().multi_get(keys)

    async def multi_set(self, pairs):
        if self.fail:
            raise StorageError("store offline")
        await super().multi_set(pairs)


class FlakyBridge(RecipeRatioBridge):
    """Bridge whose recipe writes can be switched off."""

    def __init__(self, session_factory):
        super().__init__(session_factory)
        self.fail = False

    async def apply_ratio(self, ratio):
        if self.fail:
            raise StorageError("recipe table locked")
        return await super().apply_ratio(ratio)


class TestDefaults:
    """Tests for first launch and the persisted default."""

    @pytest.mark.asyncio
    async def test_first_launch_uses_and_persists_default(self, ratio_engine, store):
        """Test an empty store resolves to 80:10:10 and saves it."""
        ratio = await ratio_engine.resolve(TriggerEvent.MOUNT)
        assert ratio.triple == (80, 10, 10)
        assert ratio.origin == RatioOrigin.DEFAULT
        assert await store.multi_get(["selectedRatio", "meatRatio", "boneRatio", "organRatio"]) == {
            "selectedRatio": "80:10:10",
            "meatRatio": "80",
            "boneRatio": "10",
            "organRatio": "10",
        }

    @pytest.mark.asyncio
    async def test_persisted_preset(self, ratio_engine, store):
        """Test a saved preset is restored."""
        await store.multi_set([
            ("selectedRatio", "75:15:10"),
            ("meatRatio", "75"), ("boneRatio", "15"), ("organRatio", "10"),
        ])
        ratio = await ratio_engine.resolve(TriggerEvent.MOUNT)
        assert ratio.label == "75:15:10"
        assert ratio.origin == RatioOrigin.PERSISTED

    @pytest.mark.asyncio
    async def test_persisted_custom(self, ratio_engine, store):
        """Test a saved custom ratio is restored."""
        await store.multi_set([
            ("selectedRatio", "custom"),
            ("meatRatio", "72.5"), ("boneRatio", "17.5"), ("organRatio", "10"),
        ])
        ratio = await ratio_engine.resolve(TriggerEvent.FOCUS)
        assert ratio == custom_ratio(72.5, 17.5, 10)

    @pytest.mark.asyncio
    async def test_invalid_persisted_custom_falls_back(self, ratio_engine, store):
        """Test a saved custom ratio outside tolerance is replaced by the default."""
        await store.multi_set([
            ("selectedRatio", "custom"),
            ("meatRatio", "0"), ("boneRatio", "0"), ("organRatio", "0"),
        ])
        ratio = await ratio_engine.resolve(TriggerEvent.FOCUS)
        assert ratio.label == "80:10:10"
        assert await store.get("selectedRatio") == "80:10:10"
        assert await store.get("meatRatio") == "80"

    @pytest.mark.asyncio
    async def test_resolve_is_idempotent(self, ratio_engine, store):
        """Test resolving twice gives the same ratio and the same store."""
        first = await ratio_engine.resolve(TriggerEvent.MOUNT)
        keys = ["selectedRatio", "meatRatio", "boneRatio", "organRatio", "userSelectedRatio"]
        stored_first = await store.multi_get(keys)

        second = await ratio_engine.resolve(TriggerEvent.FOCUS)
        assert second == first
        assert await store.multi_get(keys) == stored_first


class TestPrecedence:
    """Tests for the order in which ratio sources win."""

    @pytest.mark.asyncio
    async def test_navigation_custom_beats_persisted(self, ratio_engine, store):
        """Test a user-defined navigation ratio overrides the saved default."""
        await ratio_engine.resolve(TriggerEvent.MOUNT)

        ratio = await ratio_engine.resolve(
            TriggerEvent.PARAMS, ResolutionSources(navigation_ratio=NAV_CUSTOM)
        )
        assert ratio == custom_ratio(70, 20, 10)
        assert ratio_engine.user_selected is True
        assert await store.get("selectedRatio") == "custom"
        assert await store.get("customMeatRatio") == "70"

    @pytest.mark.asyncio
    async def test_navigation_never_beats_manual(self, ratio_engine):
        """Test a navigation ratio does not override a manual selection."""
        await ratio_engine.set_ratio(75, 15, 10, "75:15:10")

        ratio = await ratio_engine.resolve(
            TriggerEvent.PARAMS, ResolutionSources(navigation_ratio=NAV_CUSTOM)
        )
        assert ratio.label == "75:15:10"
        assert ratio.origin == RatioOrigin.MANUAL

    @pytest.mark.asyncio
    async def test_accepted_navigation_is_not_reapplied(self, ratio_engine):
        """Test a later navigation ratio is ignored once one was accepted."""
        await ratio_engine.resolve(TriggerEvent.PARAMS, ResolutionSources(navigation_ratio=NAV_CUSTOM))
        other = NavigationRatio(60, 30, 10, selected_ratio="custom", is_user_defined=True)

        ratio = await ratio_engine.resolve(TriggerEvent.PARAMS, ResolutionSources(navigation_ratio=other))
        assert ratio == custom_ratio(70, 20, 10)

    @pytest.mark.parametrize("nav", [
        NavigationRatio(70, 20, 10, selected_ratio="custom", is_user_defined=False),
        NavigationRatio(70, 20, 10, selected_ratio="80:10:10", is_user_defined=True),
        NavigationRatio(90, 10, 0, selected_ratio="custom", is_user_defined=True),
        NavigationRatio(80, 30, 20, selected_ratio="custom", is_user_defined=True),
    ])
    @pytest.mark.asyncio
    async def test_navigation_ratio_rejected(self, ratio_engine, nav):
        """Test navigation ratios that are not well-formed custom ratios are skipped."""
        ratio = await ratio_engine.resolve(TriggerEvent.PARAMS, ResolutionSources(navigation_ratio=nav))
        assert ratio.label == "80:10:10"
        assert ratio_engine.user_selected is False

    @pytest.mark.asyncio
    async def test_recipe_custom_ratio(self, ratio_engine, bridge, db_session, store):
        """Test a user-defined custom recipe ratio is applied as custom."""
        recipe = add_recipe(db_session, ratio={
            "meat": 70, "bone": 20, "organ": 10, "selectedRatio": "custom", "isUserDefined": True,
        })
        await bridge.select_recipe(recipe.id)

        ratio = await ratio_engine.resolve(TriggerEvent.FOCUS)
        assert ratio == custom_ratio(70, 20, 10)
        assert ratio.origin == RatioOrigin.RECIPE
        assert await store.get("customBoneRatio") == "20"

    @pytest.mark.asyncio
    async def test_recipe_preset_signature_normalized(self, ratio_engine, bridge, db_session):
        """Test a recipe ratio close to a preset takes the preset label."""
        recipe = add_recipe(db_session, ratio={
            "meat": 75.2, "bone": 14.9, "organ": 9.9, "selectedRatio": "Kitten mix", "isUserDefined": False,
        })
        await bridge.select_recipe(recipe.id)

        ratio = await ratio_engine.resolve(TriggerEvent.FOCUS)
        assert ratio.label == "75:15:10"
        assert ratio.triple == (75, 15, 10)

    @pytest.mark.asyncio
    async def test_recipe_own_label(self, ratio_engine, bridge, db_session, store):
        """Test other recipe ratios keep their raw values and label."""
        recipe = add_recipe(db_session, ratio={
            "meat": 85, "bone": 10, "organ": 5, "selectedRatio": "Senior", "isUserDefined": False,
        })
        await bridge.select_recipe(recipe.id)

        ratio = await ratio_engine.resolve(TriggerEvent.FOCUS)
        assert ratio.label == "Senior"
        assert ratio.triple == (85, 10, 5)
        assert await store.get("selectedRatio") == "Senior"

    @pytest.mark.asyncio
    async def test_recipe_beats_global_custom(self, ratio_engine, bridge, db_session):
        """Test the recipe ratio wins over the global custom ratio."""
        recipe = add_recipe(db_session, ratio={
            "meat": 80, "bone": 10, "organ": 10, "selectedRatio": "80:10:10", "isUserDefined": True,
        })
        await bridge.select_recipe(recipe.id)

        ratio = await ratio_engine.resolve(
            TriggerEvent.FOCUS,
            ResolutionSources(global_custom_ratio=RatioSelection(70, 20, 10)),
        )
        assert ratio.label == "80:10:10"

    @pytest.mark.asyncio
    async def test_global_custom_beats_persisted(self, ratio_engine, store):
        """Test a valid global custom ratio overrides the saved selection."""
        await store.multi_set([
            ("selectedRatio", "75:15:10"),
            ("meatRatio", "75"), ("boneRatio", "15"), ("organRatio", "10"),
        ])
        ratio = await ratio_engine.resolve(
            TriggerEvent.FOCUS,
            ResolutionSources(global_custom_ratio=RatioSelection(70, 20, 12)),
        )
        assert ratio == custom_ratio(70, 20, 12)
        assert ratio.origin == RatioOrigin.GLOBAL_CUSTOM
        # Applied automatically, so the session is still free to follow other sources
        assert ratio_engine.user_selected is False

    @pytest.mark.parametrize("bad_value", [float("inf"), float("nan")])
    @pytest.mark.asyncio
    async def test_recipe_non_finite_ratio_skipped(self, ratio_engine, bridge, db_session, bad_value):
        """Test a recipe ratio with a non-finite value falls through to the default."""
        recipe = add_recipe(db_session, ratio={
            "meat": bad_value, "bone": 10, "organ": 10, "selectedRatio": "80:10:10", "isUserDefined": False,
        })
        await bridge.select_recipe(recipe.id)

        ratio = await ratio_engine.resolve(TriggerEvent.FOCUS)
        assert ratio.label == "80:10:10"
        assert ratio.origin == RatioOrigin.DEFAULT

    @pytest.mark.asyncio
    async def test_invalid_global_custom_discarded(self, ratio_engine, store):
        """Test a global custom ratio outside tolerance falls through to the store."""
        await store.multi_set([
            ("selectedRatio", "75:15:10"),
            ("meatRatio", "75"), ("boneRatio", "15"), ("organRatio", "10"),
        ])
        ratio = await ratio_engine.resolve(
            TriggerEvent.FOCUS,
            ResolutionSources(global_custom_ratio=RatioSelection(50, 20, 10)),
        )
        assert ratio.label == "75:15:10"


class TestSetRatio:
    """Tests for explicit user selections."""

    @pytest.mark.asyncio
    async def test_set_preset(self, ratio_engine, store):
        """Test a preset selection is persisted and marked user-selected."""
        state = await ratio_engine.set_ratio(75, 15, 10, "75:15:10")
        assert state.ratio.label == "75:15:10"
        assert state.user_selected is True
        assert await store.multi_get(["selectedRatio", "userSelectedRatio"]) == {
            "selectedRatio": "75:15:10",
            "userSelectedRatio": "true",
        }

    @pytest.mark.asyncio
    async def test_set_custom_stores_custom_triple(self, ratio_engine, store):
        """Test a custom selection also saves the last custom triple."""
        await ratio_engine.set_ratio(70, 20, 10, "custom")
        await ratio_engine.set_ratio(80, 10, 10, "80:10:10")
        assert await store.multi_get(["customMeatRatio", "customBoneRatio", "customOrganRatio"]) == {
            "customMeatRatio": "70",
            "customBoneRatio": "20",
            "customOrganRatio": "10",
        }

    @pytest.mark.parametrize("values", [
        (80, 20, 20, "custom"),
        (82, 9, 9, "80:10:10"),
        (70, 20, 10, "70:20:10"),
    ])
    @pytest.mark.asyncio
    async def test_invalid_selection_rejected(self, ratio_engine, values):
        """Test invalid selections raise and leave the active ratio alone."""
        with pytest.raises(RatioValidationError):
            await ratio_engine.set_ratio(*values)
        assert ratio_engine.active_ratio.label == "80:10:10"
        assert ratio_engine.user_selected is False

    @pytest.mark.asyncio
    async def test_set_ratio_recalculates_with_current_weights(self, ratio_engine):
        """Test correctors follow the new ratio with the last weight sample."""
        await ratio_engine.on_trigger(
            TriggerEvent.FOCUS, ResolutionSources(weights=WeightSample(85, 8, 7))
        )
        state = await ratio_engine.set_ratio(75, 15, 10, "75:15:10")
        assert state.correctors.demo is False
        # (85 / 75) * 15 - 8 = 9
        assert state.correctors.meat.deltas["bone"] == pytest.approx(9)

    @pytest.mark.asyncio
    async def test_select_custom_ratio(self, ratio_engine):
        """Test values from the ratio editor become a custom selection."""
        state = await ratio_engine.select_custom_ratio(RatioSelection(70, 20, 10))
        assert state.ratio == custom_ratio(70, 20, 10)

    @pytest.mark.asyncio
    async def test_custom_round_trip_through_recipe(self, ratio_engine, bridge, db_session):
        """Test custom -> preset -> custom restores 70/20/10 from the recipe."""
        recipe = add_recipe(db_session)
        await bridge.select_recipe(recipe.id)

        await ratio_engine.set_ratio(70, 20, 10, "custom")
        await ratio_engine.set_ratio(80, 10, 10, "80:10:10")

        seed = await ratio_engine.custom_ratio_seed()
        assert seed == RatioSelection(70, 20, 10)

        state = await ratio_engine.select_custom_ratio(seed)
        assert state.ratio.triple == (70, 20, 10)

    @pytest.mark.asyncio
    async def test_clear_user_selection(self, ratio_engine, store):
        """Test clearing lets the navigation ratio apply again."""
        await ratio_engine.set_ratio(75, 15, 10, "75:15:10")
        await ratio_engine.clear_user_selection()
        assert ratio_engine.user_selected is False
        assert await store.get("userSelectedRatio") == "false"

        ratio = await ratio_engine.resolve(
            TriggerEvent.PARAMS, ResolutionSources(navigation_ratio=NAV_CUSTOM)
        )
        assert ratio == custom_ratio(70, 20, 10)

    @pytest.mark.asyncio
    async def test_user_selection_not_restored_after_restart(self, store, bridge):
        """Test a new session starts without a user selection."""
        first = RatioResolutionEngine(store=store, bridge=bridge)
        await first.set_ratio(75, 15, 10, "75:15:10")

        second = RatioResolutionEngine(store=store, bridge=bridge)
        ratio = await second.resolve(
            TriggerEvent.MOUNT, ResolutionSources(navigation_ratio=NAV_CUSTOM)
        )
        assert ratio == custom_ratio(70, 20, 10)


class TestCustomRatioSeed:
    """Tests for prefilling the custom ratio editor."""

    @pytest.mark.asyncio
    async def test_seed_starts_from_zero(self, ratio_engine):
        assert await ratio_engine.custom_ratio_seed() == RatioSelection(0, 0, 0)

    @pytest.mark.asyncio
    async def test_seed_from_stored_custom(self, ratio_engine, store):
        await store.multi_set([
            ("customMeatRatio", "65"), ("customBoneRatio", "25"), ("customOrganRatio", "10"),
        ])
        assert await ratio_engine.custom_ratio_seed() == RatioSelection(65, 25, 10)

    @pytest.mark.asyncio
    async def test_seed_from_recipe_current_custom(self, ratio_engine, bridge, db_session):
        recipe = add_recipe(db_session, ratio={
            "meat": 78, "bone": 12, "organ": 10, "selectedRatio": "custom", "isUserDefined": True,
        })
        await bridge.select_recipe(recipe.id)
        assert await ratio_engine.custom_ratio_seed() == RatioSelection(78, 12, 10)


class TestResilience:
    """Tests for storage faults, reset and serialization."""

    @pytest.mark.asyncio
    async def test_storage_failure_keeps_last_ratio(self, session_factory, bridge):
        """Test a failed resolution keeps the last known good ratio."""
        store = FlakyStore(session_factory)
        engine = RatioResolutionEngine(store=store, bridge=bridge)
        await engine.set_ratio(75, 15, 10, "75:15:10")
        await engine.clear_user_selection()

        store.fail = True
        state = await engine.on_trigger(
            TriggerEvent.FOCUS, ResolutionSources(navigation_ratio=NAV_CUSTOM)
        )
        assert state.ratio.label == "75:15:10"

    @pytest.mark.asyncio
    async def test_storage_failure_on_first_launch(self, session_factory, bridge):
        """Test the active ratio is never undefined when the store is down."""
        store = FlakyStore(session_factory)
        store.fail = True
        engine = RatioResolutionEngine(store=store, bridge=bridge)

        state = await engine.on_trigger(TriggerEvent.MOUNT)
        assert state.ratio.label == "80:10:10"
        assert state.correctors.demo is True

    @pytest.mark.asyncio
    async def test_manual_selection_survives_write_failure(self, session_factory, bridge):
        """Test an explicit selection is kept in memory when it cannot be saved."""
        store = FlakyStore(session_factory)
        store.fail = True
        engine = RatioResolutionEngine(store=store, bridge=bridge)

        state = await engine.set_ratio(70, 20, 10, "custom")
        assert state.ratio == custom_ratio(70, 20, 10)

    @pytest.mark.asyncio
    async def test_recipe_write_failure_restores_store(self, session_factory, store):
        """Test the store is rolled back when the recipe write fails."""
        bridge = FlakyBridge(session_factory)
        engine = RatioResolutionEngine(store=store, bridge=bridge)
        await engine.resolve(TriggerEvent.MOUNT)

        bridge.fail = True
        ratio = await engine.resolve(
            TriggerEvent.PARAMS, ResolutionSources(navigation_ratio=NAV_CUSTOM)
        )
        assert ratio.label == "80:10:10"
        assert engine.user_selected is False
        stored = await store.multi_get(["selectedRatio", "meatRatio", "customMeatRatio", "userSelectedRatio"])
        assert stored == {
            "selectedRatio": "80:10:10",
            "meatRatio": "80",
            "customMeatRatio": None,
            "userSelectedRatio": "false",
        }

    @pytest.mark.asyncio
    async def test_reset(self, ratio_engine, store):
        """Test reset forgets every saved value and returns to the default."""
        await ratio_engine.set_ratio(70, 20, 10, "custom")
        state = await ratio_engine.reset()
        assert state.ratio.label == "80:10:10"
        assert state.user_selected is False
        assert await store.get("customMeatRatio") is None
        assert await store.get("selectedRatio") == "80:10:10"

    @pytest.mark.asyncio
    async def test_concurrent_triggers_are_serialized(self, ratio_engine, store):
        """Test overlapping triggers end in a consistent store."""
        await asyncio.gather(
            ratio_engine.on_trigger(TriggerEvent.FOCUS),
            ratio_engine.set_ratio(70, 20, 10, "custom"),
            ratio_engine.on_trigger(
                TriggerEvent.PARAMS, ResolutionSources(navigation_ratio=NAV_CUSTOM)
            ),
            ratio_engine.on_trigger(TriggerEvent.FOCUS),
        )
        stored = await store.multi_get(["selectedRatio", "meatRatio", "boneRatio", "organRatio"])
        active = ratio_engine.active_ratio
        assert stored == {
            "selectedRatio": active.label,
            "meatRatio": "70",
            "boneRatio": "20",
            "organRatio": "10",
        }

    @pytest.mark.asyncio
    async def test_on_trigger_keeps_previous_weights(self, ratio_engine):
        """Test a trigger without weights reuses the last sample."""
        await ratio_engine.on_trigger(
            TriggerEvent.FOCUS, ResolutionSources(weights=WeightSample(85, 8, 7))
        )
        state = await ratio_engine.on_trigger(TriggerEvent.FOCUS)
        assert state.weights == WeightSample(85, 8, 7)
        assert state.correctors.meat.deltas["bone"] == pytest.approx(2.625)
