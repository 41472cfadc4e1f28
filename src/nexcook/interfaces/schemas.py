from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class CustomizationIn(BaseModel):
    salt: int = Field(50, ge=0, le=100)
    spice: int = Field(50, ge=0, le=100)
    water: int = Field(50, ge=0, le=100)
    oil: int = Field(50, ge=0, le=100)
    temperature: int = Field(50, ge=0, le=100)
    grinding: int = Field(50, ge=0, le=100)
    chopping: int = Field(50, ge=0, le=100)


class RecipeRef(BaseModel):
    """Only the id travels to the device; the rest of the recipe is accepted and ignored."""

    model_config = ConfigDict(extra="allow")

    id: str = Field(..., min_length=1)


class CookingStartRequest(BaseModel):
    recipe: RecipeRef
    customization: Optional[CustomizationIn] = None


class ClearCommandsRequest(BaseModel):
    commandIds: Optional[List[str]] = Field(
        None, description="Command ids (or timestamps) to mark processed; omit for all"
    )


class ModuleDeltaIn(BaseModel):
    moduleId: str = Field(..., min_length=1)
    change: int = Field(..., description="Signed level delta, negative = consumption")


class ModuleDeltasRequest(BaseModel):
    deltas: List[ModuleDeltaIn] = Field(..., min_length=1)


class EnqueueRequest(BaseModel):
    recipeId: str = Field(..., min_length=1)
    quantity: int = Field(1, ge=1)
    customization: Optional[CustomizationIn] = None
