from sqlalchemy import Column, Integer, String, JSON

from app.core.database import Base


class KeyValueEntry(Base):
    """One persisted key of the calculator's ratio state."""
    __tablename__ = "kv_entries"

    key = Column(String, primary_key=True)
    value = Column(String, nullable=False)


class Recipe(Base):
    __tablename__ = "recipes"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    # {"meat", "bone", "organ", "selectedRatio", "isUserDefined"}
    ratio = Column(JSON, nullable=True)
    # {"meat", "bone", "organ"}; kept while a preset is active
    saved_custom_ratio = Column(JSON, nullable=True)


class SelectedRecipe(Base):
    """Snapshot of the recipe currently loaded into the calculator."""
    __tablename__ = "selected_recipe"

    id = Column(Integer, primary_key=True)
    # Matches Recipe.id; cleared when that recipe is deleted
    recipe_id = Column(Integer, nullable=True)
    name = Column(String, nullable=False)
    ratio = Column(JSON, nullable=True)
    saved_custom_ratio = Column(JSON, nullable=True)
