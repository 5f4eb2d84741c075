"""Interaction profile schema and post-parse normalization."""

from __future__ import annotations

import json
from datetime import date
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class InteractionCapability(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    operation: Literal["discover", "query", "execute"]
    method: str = Field(min_length=1)
    endpoint: str = Field(min_length=1)
    auth_required: bool = Field(alias="authRequired", strict=True)
    description: str = Field(min_length=1)


class Capabilities(BaseModel):
    discover: InteractionCapability
    query: InteractionCapability
    execute: InteractionCapability


class InteractionProfile(BaseModel):
    platform: str = Field(min_length=1)
    version: str = Field(min_length=1)
    generated: str = Field(min_length=1)
    method: Literal["manual", "ai-generated"]
    capabilities: Capabilities

    def to_json(self) -> str:
        return json.dumps(self.model_dump(by_alias=True), indent=2) + "\n"


def normalize_interaction_profile(raw_profile: str, platform_slug: str, today: date | None = None) -> str:
    """Validate the model's profile JSON and stamp the fields it is never trusted with.

    Raises ``ValueError`` for malformed JSON and pydantic's ``ValidationError``
    (also a ``ValueError``) for schema violations.
    """
    profile = InteractionProfile.model_validate(json.loads(raw_profile))
    stamped = profile.model_copy(update={
        "platform": platform_slug,
        "method": "ai-generated",
        "generated": (today or date.today()).isoformat(),
    })
    return stamped.to_json()
