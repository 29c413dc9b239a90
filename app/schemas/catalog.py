# schemas/catalog.py - Recommendation Preference Schemas
# ============================================================================
from pydantic import BaseModel, Field
from typing import List, Optional


class UserPreferences(BaseModel):
    business_type: Optional[str] = Field(None, alias="businessType", max_length=100)
    team_size: Optional[str] = Field(None, alias="teamSize", max_length=50)
    industry: Optional[str] = Field(None, max_length=100)
    max_price: Optional[int] = Field(None, alias="maxPrice", ge=0)  # minor units
    preferred_categories: List[str] = Field(default_factory=list, alias="preferredCategories", max_length=20)
    workflows: List[str] = Field(default_factory=list, max_length=20)
    integrations: List[str] = Field(default_factory=list, max_length=20)

    class Config:
        populate_by_name = True


class PreferencesRequest(BaseModel):
    preferences: UserPreferences
