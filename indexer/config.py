#!/usr/bin/env python3
"""
Configuration management for the auction mirror.
Environment-driven settings plus the contract variant catalogue.
"""

import os
import json
import logging
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Dict, List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import field_validator
from pydantic_settings import BaseSettings

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
CONTRACTS_FILE = os.path.join(os.path.dirname(__file__), "contracts.yaml")


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid"""


class Settings(BaseSettings):
    """Application settings with environment-based configuration"""

    # Chain settings
    rpc_url: str = "http://127.0.0.1:8545"
    contract_address: Optional[str] = None
    contract_variant: str = "simple"

    # API settings
    api_host: str = "0.0.0.0"
    port: int = 3001
    cors_origins: str = "http://localhost:3000,http://localhost:5173,http://127.0.0.1:3000,http://127.0.0.1:5173"

    # Database settings
    db_path: str = "analytics.db"
    database_url: Optional[str] = None

    # Metadata gateway
    ipfs_gateway: str = "https://ipfs.io/ipfs"
    metadata_timeout: float = 5.0

    # Write-proxy key (only needed for the transaction endpoints)
    private_key: Optional[str] = None
    tx_timeout: int = 120

    # Indexer tuning
    backfill_delay: float = 0.1
    backfill_concurrency: int = 1
    poll_interval: float = 2.0
    max_reconnect_attempts: int = 5
    reconnect_backoff: float = 2.0
    log_span: int = 2000

    # Paging and push channel
    default_page_limit: int = 50
    max_page_limit: int = 100
    sse_heartbeat: float = 15.0

    log_level: str = "INFO"

    @field_validator('contract_address', 'private_key', 'database_url', mode='before')
    @classmethod
    def empty_as_none(cls, v):
        """Treat empty strings from .env files as unset"""
        if v is None or (isinstance(v, str) and not v.strip()):
            return None
        return v.strip() if isinstance(v, str) else v

    @field_validator('backfill_concurrency', 'max_page_limit', 'default_page_limit', 'log_span')
    @classmethod
    def at_least_one(cls, v):
        if v < 1:
            raise ValueError("must be >= 1")
        return v

    def get_effective_database_url(self) -> str:
        """Get the async SQLAlchemy URL, falling back to the SQLite file path"""
        url = self.database_url or f"sqlite:///{self.db_path}"
        if url.startswith("postgresql://"):
            return url.replace("postgresql://", "postgresql+asyncpg://", 1)
        if url.startswith("sqlite://") and not url.startswith("sqlite+"):
            return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
        return url

    def get_cors_origins(self) -> List[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "case_sensitive": False, "extra": "ignore"}


@lru_cache()
def get_settings() -> Settings:
    """Get application settings"""
    return Settings()


@dataclass
class ContractVariant:
    """One contract surface: ABI, read shape and the events it emits"""

    name: str
    abi: List[Dict]
    state_reader: str
    events: List[str] = field(default_factory=list)
    bid_events: List[str] = field(default_factory=list)

    def has_function(self, fn_name: str) -> bool:
        return any(
            item.get('type') == 'function' and item.get('name') == fn_name
            for item in self.abi
        )

    def event_abi(self, event_name: str) -> Dict:
        for item in self.abi:
            if item.get('type') == 'event' and item.get('name') == event_name:
                return item
        raise ConfigurationError(f"Event {event_name} not in ABI for variant {self.name}")


def _load_abi(path: str) -> List[Dict]:
    """Load a contract ABI, accepting raw arrays or artifact files with an 'abi' key"""
    full_path = os.path.join(os.path.dirname(CONTRACTS_FILE), path)
    with open(full_path, 'r') as f:
        data = json.load(f)

    if isinstance(data, dict) and 'abi' in data:
        return data['abi']
    if isinstance(data, list):
        return data
    raise ConfigurationError(f"Invalid ABI format in {full_path}")


def load_contract_variants(config_path: str = CONTRACTS_FILE) -> Dict[str, ContractVariant]:
    """Load and expand environment variables in the variant catalogue"""
    with open(config_path, 'r') as f:
        config_content = os.path.expandvars(f.read())

    config = yaml.safe_load(config_content) or {}
    variants = {}
    for name, entry in (config.get('variants') or {}).items():
        if entry.get('state_reader') not in ('single', 'composite'):
            raise ConfigurationError(f"Variant {name}: state_reader must be 'single' or 'composite'")
        variants[name] = ContractVariant(
            name=name,
            abi=_load_abi(entry['abi']),
            state_reader=entry['state_reader'],
            events=list(entry.get('events') or []),
            bid_events=list(entry.get('bid_events') or []),
        )
    logger.debug(f"Loaded {len(variants)} contract variants from {config_path}")
    return variants


def get_contract_variant(name: str, config_path: str = CONTRACTS_FILE) -> ContractVariant:
    variants = load_contract_variants(config_path)
    if name not in variants:
        raise ConfigurationError(
            f"Unknown contract variant '{name}' (known: {', '.join(sorted(variants))})"
        )
    return variants[name]


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging the same way for every entry point"""
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT
    )
