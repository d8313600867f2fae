# paygate/core/config.py
from functools import lru_cache
from typing import Literal, Optional

from pydantic_settings import BaseSettings
from pydantic import AnyHttpUrl # AnyHttpUrl stays in pydantic core
from dotenv import load_dotenv

# Load .env file if it exists
load_dotenv()

class Settings(BaseSettings):
    PROJECT_NAME: str = "Paygate API Wrapper"
    API_V1_STR: str = "/api/v1"
    # "development" exposes error details in response envelopes
    ENVIRONMENT: str = "production"

    DATABASE_URL: str = "sqlite:///./paygate.db"

    # Stacks ledger indexer used to resolve validator transactions
    STACKS_NETWORK: Literal["testnet", "mainnet"] = "testnet"
    STACKS_API_URL_TESTNET: AnyHttpUrl = "https://api.testnet.hiro.so"
    STACKS_API_URL_MAINNET: AnyHttpUrl = "https://api.mainnet.hiro.so"
    REGISTRY_CONTRACT_ID: str = "ST3AW560S3EET4NNSC3NG9N6CPNMPGASTMKWX11KG.api-registry"
    REGISTRY_TIMEOUT_SECONDS: float = 10.0

    # Require x-agent-* headers and a validator transaction on wrapper calls
    AGENT_VALIDATION_ENABLED: bool = True

    PROXY_TIMEOUT_SECONDS: float = 30.0

    # x402 payment settings
    X402_DEFAULT_FACILITATOR_URL: AnyHttpUrl = "https://x402.org/facilitator"
    X402_MAX_TIMEOUT_SECONDS: int = 300

    # Audit log (JSON lines)
    AUDIT_LOG_ENABLED: bool = True
    AUDIT_LOG_PATH: str = "logs/paygate_audit.jsonl"

    # Owner key for the analytics API; analytics is closed while unset
    API_KEY: Optional[str] = None
    API_KEY_NAME: str = "X-API-Key"

    # Price bounds applied when an endpoint leaves min/max unset
    DEFAULT_MIN_PRICE: float = 1.0
    DEFAULT_MAX_PRICE: float = 1000.0

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra fields from .env

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT.lower() == "development"

    def stacks_api_url(self, network: Optional[str] = None) -> str:
        """Indexer base URL for the given (or configured) Stacks network."""
        network = network or self.STACKS_NETWORK
        base = self.STACKS_API_URL_MAINNET if network == "mainnet" else self.STACKS_API_URL_TESTNET
        return str(base).rstrip("/")

@lru_cache() # Cache the settings object for performance
def get_settings() -> Settings:
    return Settings()

settings = get_settings()
