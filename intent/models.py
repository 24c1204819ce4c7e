"""
Data models for the Intent Classification Microservice

Contains the classification result type used inside the service and the
Pydantic request/response models of the HTTP API (camelCase on the wire).
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ============================================================================
# Core result types
# ============================================================================

class ClassificationSource(str, Enum):
    """Cascade stage that produced a result"""
    CACHE = "cache"
    NEAREST_NEIGHBOR = "nearest_neighbor"
    COMPLETION = "completion"
    RULE = "rule"


@dataclass
class ClassificationResult:
    intent: str
    confidence: float
    slots: Dict[str, Any]
    source: ClassificationSource
    needs_confirmation: bool
    llm_fallback: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be between 0.0 and 1.0, got {self.confidence}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "intent": self.intent,
            "confidence": self.confidence,
            "slots": dict(self.slots),
            "source": self.source.value,
            "needs_confirmation": self.needs_confirmation,
            "llm_fallback": self.llm_fallback,
            "metadata": dict(self.metadata),
        }


# ============================================================================
# API models
# ============================================================================

class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ClassifyRequest(CamelModel):
    """Request model for intent classification"""
    text: str = Field(..., min_length=1, description="User utterance to classify")
    context: Optional[Dict[str, Any]] = Field(None, description="Optional conversation context")
    expected_intent: Optional[str] = Field(
        None, alias="expectedIntent", description="Ground-truth label (evaluation mode)"
    )

    @field_validator("text")
    @classmethod
    def text_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("text must not be blank")
        return value

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "text": "Schedule a team meeting tomorrow at 3pm",
                "context": {"timezone": "Europe/Berlin"},
            }
        },
    )


class ClassifyResponse(CamelModel):
    """Response model for intent classification"""
    success: bool = True
    intent: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    slots: Dict[str, Any] = Field(default_factory=dict)
    llm_fallback: bool = Field(False, alias="llmFallback")
    needs_confirmation: bool = Field(False, alias="needsConfirmation")
    source: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class CorrectionRequest(CamelModel):
    """Request model for a user correction"""
    original_text: str = Field(..., min_length=1, alias="originalText")
    predicted_intent: str = Field(..., alias="predictedIntent")
    corrected_intent: str = Field(..., min_length=1, alias="correctedIntent")
    predicted_slots: Dict[str, Any] = Field(default_factory=dict, alias="predictedSlots")
    corrected_slots: Dict[str, Any] = Field(default_factory=dict, alias="correctedSlots")
    user_id: Optional[str] = Field(None, alias="userId")
    predicted_confidence: Optional[float] = Field(None, ge=0.0, le=1.0, alias="predictedConfidence")


class CorrectionResponse(CamelModel):
    """Response model for a user correction"""
    success: bool
    message: str
    persisted: bool = False
    correction_type: Optional[str] = Field(None, alias="correctionType")


class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    service: str = "intent"
    redis: Dict[str, Any]
    backends: Dict[str, Any]
    index_size: int
    healthy_backends: List[str]


class ClearCacheResponse(BaseModel):
    """Cache clear response"""
    status: str
    classification_entries_cleared: int
    completion_entries_cleared: int
