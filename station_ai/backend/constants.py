APP_NAME = "Station AI Advisory Service"
APP_VERSION = "1.0.0"
DEFAULT_CORS_ALLOW_ORIGINS = [
	"http://localhost",
	"http://127.0.0.1",
	"http://localhost:3000",
	"http://localhost:5173",
]
DEFAULT_TRUSTED_HOSTS = [
	"127.0.0.1",
	"localhost",
	"testserver",
]

DEFAULT_PROVIDER = "openrouter"
DEFAULT_ASSISTANT_NAME = "Station AI"
DEFAULT_TEMPERATURE = 0.2
DEFAULT_MAX_TOKENS = 1200
MAX_TOKENS_LIMIT = 1_000_000
SUPPORTED_LOCALES = ("en", "ru")

PROVIDER_BASE_URLS = {
	"openrouter": "https://openrouter.ai/api/v1",
	"openai": "https://api.openai.com/v1",
}

MAX_HISTORY_MESSAGES = 16
MAX_HISTORY_CONTENT_RUNES = 4000
MAX_PROMPT_HISTORY_RUNES = 2000
MAX_CONTEXT_ROWS = 100
GENERAL_CONTEXT_ROWS = 12

PLANNER_MAX_TOKENS = 220
PLANNER_HISTORY_TURNS = 6
PLANNER_HISTORY_RUNES = 220
MAX_CLARIFICATION_RUNES = 280
MAX_PLAN_AGENTS = 6

WIKI_TOP_K = 6
WIKI_FALLBACK_PAGES = 4
WIKI_PAGE_TTL_S = 30 * 60
WIKI_ERROR_TTL_S = 90
DEFAULT_WIKI_REPO = "ilyaux/Eve-flipper"
WIKI_PAGE_SLUGS = (
	"Home",
	"Getting-Started",
	"Station-Trading",
	"Execution-Plan",
	"Radius-Scan",
	"Region-Arbitrage",
	"Route-Trading",
	"Contract-Scanner",
	"Industry-Chain-Optimizer",
	"PLEX-Dashboard",
	"War-Tracker",
	"API-Reference",
)

WEB_MAX_QUERIES = 3
WEB_MAX_SNIPPETS = 4
WEB_DOMAIN_HINT = "EVE Online"

TRANSACTIONS_TTL_S = 2 * 60
TRADE_FLOW_WINDOW_DAYS = 30
TRADE_FLOW_TOP_ITEMS = 5

MIN_TRADING_ANSWER_RUNES = 60
STREAM_CHARS_PER_TOKEN = 3.6
