"""
Ratio resolution engine.

Every trigger (mount, focus, parameter change) runs one resolve() pass over
an ordered list of ratio sources. The first source that proposes a valid
ratio wins; the winner is persisted and the correctors are recalculated.

Precedence, highest first:

1. The session's own selection (set manually, or an accepted navigation ratio)
2. A user-defined custom ratio carried by navigation parameters
3. The ratio embedded in the selected recipe
4. The last custom ratio used globally
5. The persisted selection
6. The 80:10:10 default

Operations are serialized by a single-flight lock so two triggers never
interleave their reads and writes.
"""

import asyncio
import enum
import logging
import math
from dataclasses import dataclass, field
from typing import Optional, Sequence

from app.core.calculations import CorrectorSet, WeightSample, compute_correctors
from app.core.ratios import (
    CUSTOM_LABEL,
    USER_SELECTED_ORIGINS,
    Ratio,
    RatioOrigin,
    RatioValidationError,
    build_ratio,
    custom_ratio,
    default_ratio,
    format_percentage,
    is_preset_label,
    is_within_tolerance,
    match_preset,
    parse_percentage,
    preset_ratio,
    validate_ratio,
)
from app.services import storage
from app.services.recipe_bridge import RecipeRatio, RecipeRatioBridge
from app.services.storage import KeyValueStore, StorageError

logger = logging.getLogger(__name__)


class TriggerEvent(str, enum.Enum):
    MOUNT = "mount"
    FOCUS = "focus"
    PARAMS = "params"
    MANUAL = "manual"
    RESET = "reset"


@dataclass(frozen=True)
class RatioSelection:
    """Custom values entered in the ratio editor."""
    meat: float
    bone: float
    organ: float


@dataclass(frozen=True)
class NavigationRatio:
    """Ratio carried by inbound navigation parameters."""
    meat: float
    bone: float
    organ: float
    selected_ratio: str
    is_user_defined: bool = False


@dataclass(frozen=True)
class ResolutionSources:
    """External inputs for one trigger."""
    weights: Optional[WeightSample] = None
    navigation_ratio: Optional[NavigationRatio] = None
    global_custom_ratio: Optional[RatioSelection] = None


@dataclass
class ResolutionContext:
    """Everything a ratio source may look at during one resolve() pass."""
    sources: ResolutionSources
    active: Ratio
    recipe: Optional[RecipeRatio] = None
    stored: dict = field(default_factory=dict)


@dataclass
class CalculatorState:
    """Resolved ratio and correctors exposed to the display layer."""
    ratio: Ratio
    correctors: CorrectorSet
    weights: WeightSample
    trigger: TriggerEvent
    user_selected: bool


class RatioSource:
    """One provider of candidate ratios."""

    name = "source"

    def propose(self, context: ResolutionContext) -> Optional[Ratio]:
        """Return a candidate ratio, or None to defer to the next source."""
        raise NotImplementedError


class SessionSelectionSource(RatioSource):
    """Keeps a ratio the user picked in this session."""

    name = "session"

    def propose(self, context):
        if context.active.origin in USER_SELECTED_ORIGINS:
            return context.active
        return None


class NavigationRatioSource(RatioSource):
    """Applies a well-formed, user-defined custom ratio from navigation."""

    name = "navigation"

    def propose(self, context):
        nav = context.sources.navigation_ratio
        if nav is None:
            return None
        if not nav.is_user_defined or nav.selected_ratio != CUSTOM_LABEL:
            return None
        if nav.meat <= 0 or nav.bone <= 0 or nav.organ <= 0:
            logger.debug("Ignoring navigation ratio with empty components: %s", nav)
            return None
        return custom_ratio(nav.meat, nav.bone, nav.organ, origin=RatioOrigin.NAVIGATION)


class RecipeRatioSource(RatioSource):
    """Applies the ratio embedded in the selected recipe."""

    name = "recipe"

    def propose(self, context):
        recipe = context.recipe
        if recipe is None or not recipe.ratio:
            return None

        embedded = recipe.ratio
        try:
            meat = float(embedded["meat"])
            bone = float(embedded["bone"])
            organ = float(embedded["organ"])
        except (KeyError, TypeError, ValueError):
            logger.warning("Recipe '%s' has a malformed ratio: %s", recipe.name, embedded)
            return None
        if not all(math.isfinite(v) for v in (meat, bone, organ)):
            logger.warning("Recipe '%s' has a non-finite ratio: %s", recipe.name, embedded)
            return None
        label = embedded.get("selectedRatio") or CUSTOM_LABEL
        is_user_defined = bool(embedded.get("isUserDefined"))

        if is_user_defined and label == CUSTOM_LABEL:
            return custom_ratio(meat, bone, organ, origin=RatioOrigin.RECIPE)

        preset = match_preset(meat, bone, organ)
        if preset is not None:
            return preset_ratio(preset, RatioOrigin.RECIPE)

        return build_ratio(
            meat, bone, organ, label, RatioOrigin.RECIPE, is_user_defined=is_user_defined
        )


class GlobalCustomRatioSource(RatioSource):
    """Applies the last custom ratio used outside any recipe."""

    name = "global_custom"

    def propose(self, context):
        selection = context.sources.global_custom_ratio
        if selection is None:
            return None
        total = selection.meat + selection.bone + selection.organ
        if not is_within_tolerance(total):
            logger.warning(
                "Discarding global custom ratio %s (total %.1f%%)", selection, total
            )
            return None
        return custom_ratio(
            selection.meat, selection.bone, selection.organ, origin=RatioOrigin.GLOBAL_CUSTOM
        )


class PersistedRatioSource(RatioSource):
    """Applies the selection saved in the key/value store."""

    name = "persisted"

    def propose(self, context):
        label = context.stored.get(storage.SELECTED_RATIO)
        if not label:
            return None
        if is_preset_label(label):
            return preset_ratio(label, RatioOrigin.PERSISTED)

        values = [
            parse_percentage(context.stored.get(key))
            for key in (storage.MEAT_RATIO, storage.BONE_RATIO, storage.ORGAN_RATIO)
        ]
        if any(v is None for v in values):
            logger.warning("Persisted ratio '%s' is missing its values", label)
            return None
        return build_ratio(
            *values,
            label=label,
            origin=RatioOrigin.PERSISTED,
            is_user_defined=label == CUSTOM_LABEL,
        )


DEFAULT_SOURCES: tuple[RatioSource, ...] = (
    SessionSelectionSource(),
    NavigationRatioSource(),
    RecipeRatioSource(),
    GlobalCustomRatioSource(),
    PersistedRatioSource(),
)


def ratio_store_pairs(ratio: Ratio) -> list[tuple[str, str]]:
    """Key/value pairs that persist a ratio as the active selection."""
    meat, bone, organ = (format_percentage(v) for v in ratio.triple)
    pairs = [
        (storage.SELECTED_RATIO, ratio.label),
        (storage.MEAT_RATIO, meat),
        (storage.BONE_RATIO, bone),
        (storage.ORGAN_RATIO, organ),
        (storage.USER_SELECTED_RATIO, _flag(ratio.origin in USER_SELECTED_ORIGINS)),
    ]
    if ratio.label == CUSTOM_LABEL:
        pairs += [
            (storage.CUSTOM_MEAT_RATIO, meat),
            (storage.CUSTOM_BONE_RATIO, bone),
            (storage.CUSTOM_ORGAN_RATIO, organ),
        ]
    return pairs


def _flag(value: bool) -> str:
    return "true" if value else "false"


class RatioResolutionEngine:
    """Decides the active ratio for one calculator session."""

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        bridge: Optional[RecipeRatioBridge] = None,
        sources: Optional[Sequence[RatioSource]] = None,
    ):
        self.store = store or KeyValueStore()
        self.bridge = bridge or RecipeRatioBridge()
        self.sources = tuple(sources) if sources is not None else DEFAULT_SOURCES
        self._lock = asyncio.Lock()
        self._active = default_ratio()
        self._weights = WeightSample()
        self._correctors = compute_correctors(self._weights, self._active)
        self._last_trigger = TriggerEvent.MOUNT

    @property
    def active_ratio(self) -> Ratio:
        return self._active

    @property
    def user_selected(self) -> bool:
        return self._active.origin in USER_SELECTED_ORIGINS

    def state(self) -> CalculatorState:
        return CalculatorState(
            ratio=self._active,
            correctors=self._correctors,
            weights=self._weights,
            trigger=self._last_trigger,
            user_selected=self.user_selected,
        )

    async def on_trigger(
        self,
        event: TriggerEvent,
        sources: Optional[ResolutionSources] = None,
    ) -> CalculatorState:
        """
        Single entry point for the host shell.

        Resolves the ratio, takes the new weight sample (if one was given)
        and recalculates the correctors.
        """
        sources = sources or ResolutionSources()
        async with self._lock:
            await self._resolve(event, sources)
            if sources.weights is not None:
                self._weights = sources.weights
            self._recalculate()
            return self.state()

    async def resolve(
        self,
        trigger: TriggerEvent,
        sources: Optional[ResolutionSources] = None,
    ) -> Ratio:
        async with self._lock:
            return await self._resolve(trigger, sources or ResolutionSources())

    async def set_ratio(
        self,
        meat: float,
        bone: float,
        organ: float,
        label: str,
    ) -> CalculatorState:
        """
        Apply a ratio the user picked explicitly.

        Raises:
            RatioValidationError: if the label is unknown or the values fail
                validation
        """
        if label != CUSTOM_LABEL and not is_preset_label(label):
            raise RatioValidationError(f"Unknown ratio '{label}'")
        ratio = validate_ratio(
            build_ratio(meat, bone, organ, label, RatioOrigin.MANUAL, is_user_defined=True)
        )

        async with self._lock:
            self._active = ratio
            self._last_trigger = TriggerEvent.MANUAL
            logger.info("User selected ratio %s (%s)", ratio.label, ratio.triple)
            try:
                await self._persist(ratio)
            except StorageError:
                logger.exception("Failed to persist ratio selection %s", ratio.label)
            self._recalculate()
            return self.state()

    async def select_custom_ratio(self, selection: RatioSelection) -> CalculatorState:
        """Route values from the ratio editor through set_ratio()."""
        return await self.set_ratio(selection.meat, selection.bone, selection.organ, CUSTOM_LABEL)

    async def clear_user_selection(self) -> None:
        """Let the next trigger resolve from the automatic sources again."""
        async with self._lock:
            if self.user_selected:
                self._active = self._active.with_origin(RatioOrigin.PERSISTED)
            try:
                await self.store.set(storage.USER_SELECTED_RATIO, _flag(False))
            except StorageError:
                logger.exception("Failed to clear user selection flag")

    async def custom_ratio_seed(self) -> RatioSelection:
        """
        Values to prefill the custom ratio editor with.

        Looks at the selected recipe's saved custom ratio, then its current
        custom ratio, then the active custom ratio, then the stored custom
        triple, and starts from zeros when none exists.
        """
        async with self._lock:
            try:
                recipe = await self.bridge.load_selected()
            except StorageError:
                logger.exception("Failed to load selected recipe for custom ratio")
                recipe = None

            if recipe is not None:
                if recipe.saved_custom_ratio:
                    return _selection(recipe.saved_custom_ratio)
                if recipe.ratio and recipe.ratio.get("selectedRatio") == CUSTOM_LABEL:
                    return _selection(recipe.ratio)

            if self._active.label == CUSTOM_LABEL:
                return RatioSelection(*self._active.triple)

            try:
                stored = await self.store.multi_get(storage.CUSTOM_RATIO_KEYS)
            except StorageError:
                logger.exception("Failed to load stored custom ratio")
                stored = {}
            values = [parse_percentage(stored.get(key)) for key in storage.CUSTOM_RATIO_KEYS]
            if all(v is not None for v in values):
                return RatioSelection(*values)
            return RatioSelection(0, 0, 0)

    async def reset(self) -> CalculatorState:
        """Forget every persisted ratio and resolve again from scratch."""
        async with self._lock:
            try:
                await self.store.multi_remove(storage.ALL_RATIO_KEYS)
            except StorageError:
                logger.exception("Failed to reset persisted ratio state")
            else:
                self._active = default_ratio()
                logger.info("Persisted ratio state reset")
            await self._resolve(TriggerEvent.RESET, ResolutionSources())
            self._recalculate()
            return self.state()

    async def _resolve(self, trigger: TriggerEvent, sources: ResolutionSources) -> Ratio:
        self._last_trigger = trigger
        try:
            recipe = await self.bridge.load_selected()
            stored = await self.store.multi_get(storage.ALL_RATIO_KEYS)
        except StorageError:
            logger.exception("Ratio resolution on %s failed, keeping %s", trigger.value, self._active.label)
            return self._active

        context = ResolutionContext(
            sources=sources, active=self._active, recipe=recipe, stored=stored
        )
        chosen = self._choose(context)

        try:
            await self._persist(chosen, rollback=stored)
        except StorageError:
            logger.exception("Failed to persist ratio %s, keeping %s", chosen.label, self._active.label)
            return self._active

        self._active = chosen
        return chosen

    def _choose(self, context: ResolutionContext) -> Ratio:
        for source in self.sources:
            candidate = source.propose(context)
            if candidate is None:
                continue
            try:
                validate_ratio(candidate)
            except RatioValidationError as e:
                logger.warning("Rejected %s ratio: %s", source.name, e)
                continue
            logger.debug("Ratio %s taken from %s", candidate.label, source.name)
            return candidate

        logger.info("No saved ratio found, defaulting to %s", default_ratio().label)
        return default_ratio()

    async def _persist(self, ratio: Ratio, rollback: Optional[dict] = None) -> None:
        """
        Write the ratio to the store, then into the selected recipe.

        When the recipe write fails and a rollback snapshot is given, the
        store is put back to the snapshot before the error propagates.
        """
        await self.store.multi_set(ratio_store_pairs(ratio))
        if ratio.origin not in USER_SELECTED_ORIGINS:
            return
        try:
            await self.bridge.apply_ratio(ratio)
        except StorageError:
            if rollback is not None:
                await self._restore(rollback)
            raise

    async def _restore(self, snapshot: dict) -> None:
        kept = [(key, value) for key, value in snapshot.items() if value is not None]
        missing = [key for key, value in snapshot.items() if value is None]
        try:
            if kept:
                await self.store.multi_set(kept)
            if missing:
                await self.store.multi_remove(missing)
        except StorageError:
            logger.exception("Failed to roll back persisted ratio state")

    def _recalculate(self) -> None:
        self._correctors = compute_correctors(self._weights, self._active)


def _selection(values: dict) -> RatioSelection:
    return RatioSelection(
        meat=float(values.get("meat", 0)),
        bone=float(values.get("bone", 0)),
        organ=float(values.get("organ", 0)),
    )
