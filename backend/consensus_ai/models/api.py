"""
Request models for the HTTP API.

Field names follow the public camelCase contract; validation failures are
mapped to 400 by the application's exception handlers.
"""
from pydantic import BaseModel, ConfigDict, Field

from consensus_ai.models.domain import ConsensusInput, ConsensusOptions


class GenerateRequest(ConsensusInput):
    model_config = ConfigDict(extra="forbid")

    options: ConsensusOptions = Field(default_factory=ConsensusOptions)

    def to_input(self) -> ConsensusInput:
        return ConsensusInput(topic=self.topic, sources=self.sources)


class EstimateRequest(GenerateRequest):
    pass


class UsageCheckRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    estimated_tokens: int = Field(..., gt=0, alias="estimatedTokens")
