from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class ApiError(BaseModel):
	model_config = ConfigDict(extra="forbid")

	code: str
	message: str
	evidence: List[str] = Field(default_factory=list)


class ApiEnvelope(BaseModel):
	model_config = ConfigDict(extra="allow")

	ok: bool
	generated_at: str
	request_id: Optional[str] = None
	data: Optional[Dict[str, Any]] = None
	error: Optional[ApiError] = None


class HistoryMessage(BaseModel):
	model_config = ConfigDict(extra="ignore")

	role: str = ""
	content: str = ""


class ContextRow(BaseModel):
	model_config = ConfigDict(extra="ignore")

	type_id: int = 0
	type_name: str = ""
	station_name: str = ""
	cts: float = 0.0
	margin_percent: float = 0.0
	daily_profit: float = 0.0
	daily_volume: float = 0.0
	s2b_bfs_ratio: float = 0.0
	action: str = ""
	reason: str = ""
	confidence: str = ""
	high_risk: bool = False
	extreme_price: bool = False


class ContextSummary(BaseModel):
	model_config = ConfigDict(extra="ignore")

	total_rows: int = 0
	visible_rows: int = 0
	high_risk_rows: int = 0
	extreme_rows: int = 0
	avg_cts: float = 0.0
	avg_margin: float = 0.0
	avg_daily_profit: float = 0.0
	avg_daily_volume: float = 0.0
	actionable_rows: int = 0


class ContextPayload(BaseModel):
	model_config = ConfigDict(extra="ignore")

	tab_id: str = ""
	tab_title: str = ""
	system_name: str = ""
	station_scope: str = ""
	region_id: Optional[int] = None
	station_id: Optional[int] = None
	radius: Optional[float] = None
	min_margin: Optional[float] = None
	min_daily_volume: Optional[float] = None
	min_item_profit: Optional[float] = None
	scan_snapshot: Dict[str, Any] = Field(default_factory=dict)
	summary: ContextSummary = Field(default_factory=ContextSummary)
	rows: List[ContextRow] = Field(default_factory=list)
	runtime: Optional[Dict[str, Any]] = Field(
		default=None,
		description="Server-owned; any client-supplied value is discarded.",
	)


class ChatRequest(BaseModel):
	model_config = ConfigDict(extra="forbid", str_strip_whitespace=True, populate_by_name=True)

	provider: str = Field(default="")
	api_key: str = Field(default="")
	model: str = Field(default="")
	planner_model: str = Field(default="")
	temperature: Optional[float] = None
	max_tokens: Optional[int] = None
	assistant_name: str = Field(default="")
	locale: str = Field(default="en")
	user_message: str = Field(default="", description="Primary user message.")
	enable_wiki: bool = Field(
		default=True,
		validation_alias=AliasChoices("enable_wiki", "enable_wiki_context"),
	)
	enable_web: bool = Field(
		default=False,
		validation_alias=AliasChoices("enable_web", "enable_web_research"),
	)
	enable_planner: bool = Field(default=True)
	wiki_repo: str = Field(default="")
	history: List[HistoryMessage] = Field(default_factory=list)
	context: ContextPayload = Field(default_factory=ContextPayload)


class ChatResponse(BaseModel):
	model_config = ConfigDict(extra="forbid")

	answer: str
	provider: str
	model: str
	assistant: str
	intent: Literal["smalltalk", "trading_analysis", "product_help", "debug_support", "web_research", "general"]
	pipeline: Dict[str, Any] = Field(default_factory=dict)
	warnings: List[str] = Field(default_factory=list)
	provider_id: str = ""
	provider_usage: Dict[str, Any] = Field(default_factory=dict)
