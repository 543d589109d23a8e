from pydantic import BaseModel, Field
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from eventpulse.schemas.analytics import DateRangePreset

Visualization = Literal["line", "bar", "table"]


class AIQueryContext(BaseModel):
    date_range: DateRangePreset = "30d"
    filters: Dict[str, Any] = Field(default_factory=dict)


class AIQueryRequest(BaseModel):
    """Natural-language question; bounds are enforced by the query service"""
    question: str
    context: AIQueryContext = Field(default_factory=AIQueryContext)


class AIQueryResponse(BaseModel):
    question: str
    query: str
    data: List[Dict[str, Any]]
    insights: List[str]
    visualization: Visualization
    warnings: List[str] = Field(default_factory=list)
    execution_time_ms: int
    generated_at: datetime


class QueryHistoryItem(BaseModel):
    id: str
    question: str
    generated_query: Optional[str] = None
    execution_time_ms: int
    result_count: int
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime


class QueryHistoryResponse(BaseModel):
    history: List[QueryHistoryItem]
    count: int


class SuggestionsResponse(BaseModel):
    suggestions: List[str]
    generated_at: datetime


class QueryCheckRequest(BaseModel):
    query: str = Field(..., min_length=1)


class QueryCheckResponse(BaseModel):
    query: str
    is_valid: bool
    errors: List[str]
    warnings: List[str]


class ExplainResponse(BaseModel):
    query: str
    explanation: str
    generated_at: datetime
