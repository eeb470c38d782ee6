from __future__ import annotations

import threading
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, ContextManager, Dict, Iterator, List, Literal, Protocol, Tuple

from station_ai.backend.errors import RequestCanceledError
from station_ai.backend.schemas import ContextPayload, HistoryMessage


Intent = Literal["smalltalk", "trading_analysis", "product_help", "debug_support", "web_research", "general"]
ContextLevel = Literal["none", "summary", "full"]
ResponseMode = Literal["short", "structured", "diagnostic", "qa"]
PreflightStatus = Literal["pass", "partial", "fail"]
SourceLabel = Literal["WIKI", "README", "WEB"]
StageStatus = Literal["pass", "adjusted", "fallback", "blocked", "skipped"]

INTENTS: Tuple[str, ...] = (
	"smalltalk",
	"trading_analysis",
	"product_help",
	"debug_support",
	"web_research",
	"general",
)
CONTEXT_LEVELS: Tuple[str, ...] = ("none", "summary", "full")
RESPONSE_MODES: Tuple[str, ...] = ("short", "structured", "diagnostic", "qa")


class Agent(str, Enum):
	INTENT_ROUTER = "intent_router"
	SCAN_ANALYZER = "scan_analyzer"
	RISK_CHECKER = "risk_checker"
	WIKI_RETRIEVER = "wiki_retriever"
	WEB_RETRIEVER = "web_retriever"
	DEBUG_HELPER = "debug_helper"

	@classmethod
	def parse(cls, value: Any) -> "Agent | None":
		if isinstance(value, cls):
			return value
		if not isinstance(value, str):
			return None
		try:
			return cls(value.strip().lower())
		except ValueError:
			return None


@dataclass(frozen=True)
class PlannerPlan:
	intent: Intent
	context_level: ContextLevel
	response_mode: ResponseMode
	need_wiki: bool = False
	need_web: bool = False
	ask_clarification: bool = False
	clarification: str = ""
	agents: Tuple[Agent, ...] = ()

	@property
	def wants_clarification(self) -> bool:
		return self.ask_clarification and bool(self.clarification.strip())

	def as_dict(self) -> Dict[str, Any]:
		return {
			"intent": self.intent,
			"context_level": self.context_level,
			"response_mode": self.response_mode,
			"need_wiki": self.need_wiki,
			"need_web": self.need_web,
			"ask_clarification": self.ask_clarification,
			"clarification": self.clarification,
			"agents": [agent.value for agent in self.agents],
		}


@dataclass
class PreflightResult:
	status: PreflightStatus
	missing: List[str] = field(default_factory=list)
	caveats: List[str] = field(default_factory=list)

	def as_dict(self) -> Dict[str, Any]:
		return {"status": self.status, "missing": list(self.missing), "caveats": list(self.caveats)}


@dataclass
class KnowledgeSnippet:
	source_label: SourceLabel
	title: str
	content: str
	page: str = ""
	section: str = ""
	locale: str = ""
	url: str = ""
	score: float = 0.0

	def as_dict(self) -> Dict[str, Any]:
		return asdict(self)


@dataclass
class ProviderReply:
	answer: str
	model: str
	provider_message_id: str = ""
	usage: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RuntimeContext:
	available: bool = False
	character_id: int | None = None
	wallet_balance: float | None = None
	orders: Dict[str, Any] | None = None
	trade_flow: Dict[str, Any] | None = None
	risk: Dict[str, Any] | None = None
	notes: List[str] = field(default_factory=list)

	def as_dict(self) -> Dict[str, Any]:
		return asdict(self)


@dataclass
class StageEvent:
	stage: str
	status: StageStatus
	detail: str
	timestamp: str

	def as_dict(self) -> Dict[str, str]:
		return {
			"stage": self.stage,
			"status": self.status,
			"detail": self.detail,
			"timestamp": self.timestamp,
		}


@dataclass
class PipelineRequest:
	provider: str
	api_key: str
	model: str
	planner_model: str
	temperature: float
	max_tokens: int
	assistant_name: str
	locale: str
	user_message: str
	enable_wiki: bool
	enable_web: bool
	enable_planner: bool
	wiki_repo: str
	history: List[HistoryMessage]
	context: ContextPayload
	cancel_event: threading.Event = field(default_factory=threading.Event)

	def raise_if_canceled(self) -> None:
		if self.cancel_event.is_set():
			raise RequestCanceledError("request canceled")


@dataclass
class PipelineState:
	request: PipelineRequest
	heuristic_intent: Intent = "general"
	plan: PlannerPlan | None = None
	scoped_context: ContextPayload | None = None
	runtime_requested: bool = False
	runtime: RuntimeContext | None = None
	preflight: PreflightResult | None = None
	wiki_snippets: List[KnowledgeSnippet] = field(default_factory=list)
	web_snippets: List[KnowledgeSnippet] = field(default_factory=list)
	system_prompt: str = ""
	user_prompt: str = ""
	messages: List[Dict[str, str]] = field(default_factory=list)
	short_circuit_answer: str | None = None
	reply: ProviderReply | None = None
	answer: str = ""
	attempts: int = 0
	warnings: List[str] = field(default_factory=list)
	trace: List[StageEvent] = field(default_factory=list)

	@property
	def intent(self) -> Intent:
		if self.plan is not None:
			return self.plan.intent
		return self.heuristic_intent

	def warn(self, message: str) -> None:
		text = " ".join(message.split()).strip()
		if text and text not in self.warnings:
			self.warnings.append(text)


class ChatCompletionClient(Protocol):
	provider: str

	def complete(
		self,
		messages: List[Dict[str, str]],
		*,
		model: str,
		temperature: float,
		max_tokens: int,
		timeout: float,
	) -> ProviderReply:
		...

	def stream_lines(
		self,
		messages: List[Dict[str, str]],
		*,
		model: str,
		temperature: float,
		max_tokens: int,
		timeout: float,
	) -> ContextManager[Iterator[str]]:
		...
