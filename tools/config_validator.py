"""
Configuration Validation Module

Validates app.yaml and policy.yaml against Pydantic schemas.
Ensures config files are correct before system startup.

Usage:
    from tools.config_validator import validate_all_configs

    errors = validate_all_configs("config")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)
"""
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

logger = logging.getLogger(__name__)

KNOWN_UPSTREAMS = ("coingecko", "binance", "coinbase")
CAPABILITIES = ("price", "candles", "order_book", "markets")
CACHE_CATEGORIES = ("price", "candles", "market_meta", "news")


# ===== App Schema =====
class LoggingConfig(BaseModel):
    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    file: str = Field(default="logs/coinsim.log", min_length=1)


class LoopConfig(BaseModel):
    monitor_interval_seconds: float = Field(default=60, gt=0, description="Seconds between monitor cycles")
    discovery_interval_seconds: float = Field(default=3600, gt=0, description="Seconds between discovery runs")
    discovery_universe_size: int = Field(default=50, gt=0, le=1000, description="Top-N markets screened")
    jitter_pct: float = Field(default=0.0, ge=0, le=20, description="Random extra sleep, % of interval")
    shutdown_timeout_seconds: float = Field(default=30, gt=0, description="Max wait for a running task on shutdown")


class PersistenceConfig(BaseModel):
    db_path: str = Field(default="data/coinsim.db", min_length=1)


class MetricsConfig(BaseModel):
    enabled: bool = False
    port: int = Field(default=9100, gt=0, le=65535)


class RateLimitQuota(BaseModel):
    max_requests: int = Field(gt=0)
    interval_seconds: float = Field(gt=0)
    max_wait_seconds: Optional[float] = Field(default=None, ge=0)


class MarketDataConfig(BaseModel):
    providers: Dict[str, List[str]] = Field(default_factory=dict, description="Ordered providers per capability")
    order_book_depth: int = Field(default=100, gt=0, le=1000)

    @field_validator("providers")
    @classmethod
    def validate_providers(cls, v: Dict[str, List[str]]) -> Dict[str, List[str]]:
        for capability, names in v.items():
            if capability not in CAPABILITIES:
                raise ValueError(f"Unknown capability {capability!r} (expected one of {CAPABILITIES})")
            if not names:
                raise ValueError(f"Capability {capability!r} needs at least one provider")
            unknown = [n for n in names if n not in KNOWN_UPSTREAMS]
            if unknown:
                raise ValueError(f"Unknown providers for {capability}: {unknown}")
            if len(set(names)) != len(names):
                raise ValueError(f"Duplicate providers for {capability}: {names}")
        return v


class UpstreamConfig(BaseModel):
    enabled: bool = True
    base_url: Optional[str] = None
    api_key: Optional[str] = None
    pair_overrides: Dict[str, str] = Field(default_factory=dict, description="instrument_id -> venue pair")
    excluded_symbols: Optional[List[str]] = None


class UpstreamsConfig(BaseModel):
    timeout_seconds: float = Field(default=10.0, gt=0)
    max_retries: int = Field(default=3, ge=1, le=10)
    backoff_seconds: float = Field(default=1.0, ge=0)
    coingecko: UpstreamConfig = Field(default_factory=UpstreamConfig)
    binance: UpstreamConfig = Field(default_factory=UpstreamConfig)
    coinbase: UpstreamConfig = Field(default_factory=UpstreamConfig)


class AppSchema(BaseModel):
    """Complete app configuration schema"""
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    loop: LoopConfig = Field(default_factory=LoopConfig)
    persistence: PersistenceConfig = Field(default_factory=PersistenceConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    rate_limits: Dict[str, RateLimitQuota] = Field(default_factory=dict)
    cache_ttl_seconds: Dict[str, float] = Field(default_factory=dict)
    market_data: MarketDataConfig = Field(default_factory=MarketDataConfig)
    upstreams: UpstreamsConfig = Field(default_factory=UpstreamsConfig)

    @field_validator("cache_ttl_seconds")
    @classmethod
    def validate_ttls(cls, v: Dict[str, float]) -> Dict[str, float]:
        for category, ttl in v.items():
            if category not in CACHE_CATEGORIES:
                raise ValueError(f"Unknown cache category {category!r}")
            if ttl < 0:
                raise ValueError(f"TTL for {category} must be >= 0, got {ttl}")
        return v


# ===== Policy Schema =====
class RiskConfig(BaseModel):
    """Portfolio risk parameters (fractions, 0.05 = 5%)"""
    starting_capital: float = Field(gt=0, description="Initial simulated cash USD")
    max_position_size_pct: float = Field(gt=0, le=1, description="Max notional per position vs portfolio value")
    max_daily_loss_pct: float = Field(gt=0, le=1, description="Daily net realized loss limit vs portfolio value")
    max_open_positions: int = Field(gt=0, description="Max concurrently open positions")
    fee_rate: float = Field(default=0.001, ge=0, le=0.1, description="Fee per fill, fraction of notional")
    max_slippage: float = Field(default=0.003, ge=0, le=0.1, description="Slippage assumed for an empty book side")
    default_slippage: float = Field(default=0.002, ge=0, le=0.1, description="Slippage when the book is unavailable")
    daily_reset_hour_utc: int = Field(default=0, ge=0, le=23)


class DiscoveryWeights(BaseModel):
    volume: float = Field(default=0.4, ge=0, le=1)
    momentum: float = Field(default=0.35, ge=0, le=1)
    sentiment: float = Field(default=0.25, ge=0, le=1)

    @model_validator(mode="after")
    def weights_sum_to_one(self) -> "DiscoveryWeights":
        total = self.volume + self.momentum + self.sentiment
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"Discovery weights must sum to 1.0, got {total:.3f}")
        return self


class DiscoveryConfig(BaseModel):
    min_market_cap: Optional[float] = Field(default=10_000_000, ge=0)
    max_market_cap: Optional[float] = Field(default=None, gt=0)
    min_volume_24h: Optional[float] = Field(default=1_000_000, ge=0)
    min_composite_score: float = Field(default=60, ge=0, le=100)
    weights: DiscoveryWeights = Field(default_factory=DiscoveryWeights)


class ResolverConfig(BaseModel):
    mapping_ttl_hours: float = Field(default=24, gt=0)


class PolicySchema(BaseModel):
    """Complete policy configuration schema"""
    risk: RiskConfig
    discovery: DiscoveryConfig = Field(default_factory=DiscoveryConfig)
    resolver: ResolverConfig = Field(default_factory=ResolverConfig)


# ===== Validation Functions =====
def _format_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Return enriched message with line/column context for YAML errors."""

    message = f"Malformed YAML in {file_path}: {error}"
    mark = getattr(error, "problem_mark", None)
    if mark is None:
        return message

    line = getattr(mark, "line", None)
    column = getattr(mark, "column", None)
    if line is None or column is None:
        return message

    problem = getattr(error, "problem", str(error))
    return f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}: {problem}"


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(file_path, 'r') as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise yaml.YAMLError(_format_yaml_error(file_path, e))


def _validate_file(config_dir: Path, filename: str, schema) -> List[str]:
    errors = []
    try:
        config = load_yaml_file(config_dir / filename)
        schema(**config)
        logger.info(f"✅ {filename} validation passed")
    except FileNotFoundError as e:
        errors.append(f"{filename}: {e}")
    except yaml.YAMLError as e:
        errors.append(f"{filename}: Invalid YAML - {e}")
    except ValidationError as e:
        for error in e.errors():
            field = " -> ".join(str(loc) for loc in error['loc'])
            errors.append(f"{filename}: {field}: {error['msg']}")
    except TypeError as e:
        errors.append(f"{filename}: top level must be a mapping ({e})")
    return errors


def validate_app(config_dir: Path) -> List[str]:
    """Validate app.yaml against schema."""
    return _validate_file(config_dir, "app.yaml", AppSchema)


def validate_policy(config_dir: Path) -> List[str]:
    """Validate policy.yaml against schema."""
    return _validate_file(config_dir, "policy.yaml", PolicySchema)


def validate_sanity_checks(config_dir: Path) -> List[str]:
    """
    Cross-field checks that schemas cannot express.

    - every provider named in market_data.providers must be enabled
    - discovery market cap floor must be below the ceiling
    - default slippage must not exceed the max slippage
    """
    errors = []
    app = AppSchema(**load_yaml_file(config_dir / "app.yaml"))
    policy = PolicySchema(**load_yaml_file(config_dir / "policy.yaml"))

    disabled = {name for name in KNOWN_UPSTREAMS if not getattr(app.upstreams, name).enabled}
    for capability, names in app.market_data.providers.items():
        off = [n for n in names if n in disabled]
        if off:
            errors.append(f"app.yaml: market_data.providers.{capability} references disabled upstreams {off}")
        if len(off) == len(names):
            errors.append(f"app.yaml: no enabled provider left for {capability}")

    if app.upstreams.coingecko.enabled is False:
        errors.append("app.yaml: upstreams.coingecko must be enabled (instrument search)")

    d = policy.discovery
    if d.min_market_cap is not None and d.max_market_cap is not None and d.min_market_cap >= d.max_market_cap:
        errors.append(
            f"policy.yaml: discovery.min_market_cap ({d.min_market_cap}) must be below "
            f"max_market_cap ({d.max_market_cap})"
        )

    if policy.risk.default_slippage > policy.risk.max_slippage:
        errors.append(
            f"policy.yaml: risk.default_slippage ({policy.risk.default_slippage}) exceeds "
            f"max_slippage ({policy.risk.max_slippage})"
        )
    return errors


def validate_all_configs(config_dir: str = "config") -> List[str]:
    """
    Validate all configuration files.

    Performs:
    1. Schema validation (Pydantic type checks)
    2. Sanity checks (logical consistency)

    Returns:
        List of all error messages (empty if all valid)
    """
    config_path = Path(config_dir)

    all_errors = []
    all_errors.extend(validate_app(config_path))
    all_errors.extend(validate_policy(config_path))

    # Sanity checks (only if schema validation passed)
    if not all_errors:
        all_errors.extend(validate_sanity_checks(config_path))

    if not all_errors:
        logger.info("✅ All config files validated successfully")
    else:
        logger.error(f"❌ {len(all_errors)} validation error(s) found")

    return all_errors


if __name__ == "__main__":
    """Run validation from command line"""
    import sys

    logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')

    config_dir = sys.argv[1] if len(sys.argv) > 1 else "config"

    errors = validate_all_configs(config_dir)

    if errors:
        print("\n❌ Configuration Validation Failed:\n")
        for error in errors:
            print(f"  • {error}")
        print()
        sys.exit(1)
    else:
        print("\n✅ All configuration files are valid!\n")
        sys.exit(0)
