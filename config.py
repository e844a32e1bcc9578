import os
from functools import lru_cache
from pathlib import Path

DEFAULT_GLOBAL_CATEGORIES = (
    "Salary,Food,Housing,Transport,Utilities,Entertainment,Health,Other"
)


class Settings:
    def __init__(
        self,
        database_url: str,
        log_level: str,
        llm_base_url: str,
        llm_api_key: str,
        llm_model: str,
        llm_timeout_secs: float,
        llm_temperature: float,
        llm_max_tokens: int,
        insight_transaction_limit: int,
        global_categories: list[str],
    ) -> None:
        self.database_url = database_url
        self.log_level = log_level
        self.llm_base_url = llm_base_url
        self.llm_api_key = llm_api_key
        self.llm_model = llm_model
        self.llm_timeout_secs = llm_timeout_secs
        self.llm_temperature = llm_temperature
        self.llm_max_tokens = llm_max_tokens
        self.insight_transaction_limit = insight_transaction_limit
        self.global_categories = global_categories


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("BUDGET_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _split_names(raw: str) -> list[str]:
    return [name.strip() for name in raw.split(",") if name.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "budget.db"
    database_url = os.getenv("BUDGET_DATABASE_URL", f"sqlite:///{default_db}")
    log_level = os.getenv("BUDGET_LOG_LEVEL", "INFO").upper()
    llm_base_url = os.getenv("BUDGET_LLM_BASE_URL", "https://api.deepseek.com/v1")
    llm_api_key = os.getenv("BUDGET_LLM_API_KEY", "")
    llm_model = os.getenv("BUDGET_LLM_MODEL", "deepseek-chat")
    llm_timeout_secs = float(os.getenv("BUDGET_LLM_TIMEOUT_SECS", "10"))
    llm_temperature = float(os.getenv("BUDGET_LLM_TEMPERATURE", "0.7"))
    llm_max_tokens = int(os.getenv("BUDGET_LLM_MAX_TOKENS", "1000"))
    insight_transaction_limit = int(os.getenv("BUDGET_INSIGHT_TRANSACTIONS", "50"))
    global_categories = _split_names(
        os.getenv("BUDGET_GLOBAL_CATEGORIES", DEFAULT_GLOBAL_CATEGORIES)
    )
    return Settings(
        database_url=database_url,
        log_level=log_level,
        llm_base_url=llm_base_url.rstrip("/"),
        llm_api_key=llm_api_key,
        llm_model=llm_model,
        llm_timeout_secs=llm_timeout_secs,
        llm_temperature=llm_temperature,
        llm_max_tokens=llm_max_tokens,
        insight_transaction_limit=insight_transaction_limit,
        global_categories=global_categories,
    )
