from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
import os
import tomllib

from dotenv import load_dotenv


DEFAULT_SUPPORTED_CONTRACT_TYPES: tuple[str, ...] = ("CH", "CHNM", "PCH", "PCHNM", "BSSNL")
DEFAULT_PROVIDER_CONTRACT_TYPES: tuple[str, ...] = ("CH", "CHNM", "PCH", "PCHNM")


@dataclass(frozen=True)
class ImportConfig:
    batch_size: int = 100
    error_log_limit: int = 100
    outcome_error_limit: int = 20
    default_term: int = 36
    default_annual_mileage: int = 10000
    retry_failed_batches_by_row: bool = False


@dataclass(frozen=True)
class ProvidersConfig:
    supported_contract_types: tuple[str, ...] = DEFAULT_SUPPORTED_CONTRACT_TYPES
    default_contract_types: tuple[str, ...] = DEFAULT_PROVIDER_CONTRACT_TYPES


@dataclass(frozen=True)
class OpenAIConfig:
    api_key: str | None = None
    model: str = "gpt-4o-mini"
    temperature: float = 0.1


@dataclass(frozen=True)
class DatabaseConfig:
    url: str | None = None
    connect_timeout: int = 8


@dataclass(frozen=True)
class AppConfig:
    imports: ImportConfig = field(default_factory=ImportConfig)
    providers: ProvidersConfig = field(default_factory=ProvidersConfig)
    openai: OpenAIConfig = field(default_factory=OpenAIConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)


def load_app_config(config_path: Path | None = None) -> AppConfig:
    raw: dict = {}
    if config_path is not None:
        config_path = config_path.resolve()
        env_path = config_path.parent / ".env"
        if env_path.exists():
            load_dotenv(env_path)
        if config_path.exists():
            with config_path.open("rb") as f:
                raw = tomllib.load(f)
    else:
        load_dotenv()

    imports_raw = raw.get("import", {})
    providers_raw = raw.get("providers", {})
    openai_raw = raw.get("openai", {})
    database_raw = raw.get("database", {})

    return AppConfig(
        imports=ImportConfig(
            batch_size=max(1, int(imports_raw.get("batch_size", 100))),
            error_log_limit=int(imports_raw.get("error_log_limit", 100)),
            outcome_error_limit=int(imports_raw.get("outcome_error_limit", 20)),
            default_term=int(imports_raw.get("default_term", 36)),
            default_annual_mileage=int(imports_raw.get("default_annual_mileage", 10000)),
            retry_failed_batches_by_row=bool(imports_raw.get("retry_failed_batches_by_row", False)),
        ),
        providers=ProvidersConfig(
            supported_contract_types=tuple(
                str(x).upper() for x in providers_raw.get("supported_contract_types", DEFAULT_SUPPORTED_CONTRACT_TYPES)
            ),
            default_contract_types=tuple(
                str(x).upper() for x in providers_raw.get("default_contract_types", DEFAULT_PROVIDER_CONTRACT_TYPES)
            ),
        ),
        openai=OpenAIConfig(
            api_key=os.getenv("OPENAI_API_KEY") or None,
            model=str(openai_raw.get("model", "gpt-4o-mini")),
            temperature=float(openai_raw.get("temperature", 0.1)),
        ),
        database=DatabaseConfig(
            url=os.getenv("DATABASE_URL") or database_raw.get("url") or None,
            connect_timeout=int(database_raw.get("connect_timeout", 8)),
        ),
    )
