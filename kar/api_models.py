from __future__ import annotations

from pydantic import BaseModel, Field


class ReconcileAllRequest(BaseModel):
    namespace: str | None = Field(None, description="Namespace to sweep; omit for the configured scope, '*' for all")
    selector: dict[str, str | None] | None = Field(
        None, description="Extra label terms for spec sources; a null value means 'label exists'"
    )
