from typing import Any, Literal

from pydantic import BaseModel, Field

MatchLevelName = Literal["auto-match", "potential-match", "no-match"]


class ProcessOut(BaseModel):
    success: bool = True
    uid: str
    action: Literal["created", "updated"]
    match_level: MatchLevelName
    matched_id: str | None = None
    match_score: float | None = None
    resources_created: int = 0
    response: dict[str, Any] = Field(default_factory=dict)
