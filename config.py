"""
config.py
==========
Central configuration for the flash-loan DEX arbitrage engine.

Monetary thresholds are in USD unless the key ends in ``_asset`` (units of
the borrowed token) or ``_native`` (units of the chain's gas token).
Rates are decimals (0.003 = 0.3%) unless the key ends in ``_pct``.

Every tunable threshold can be overridden through an environment variable;
the variable name is given next to the key.
"""

from __future__ import annotations

import logging
import logging.config
import os
from typing import Any, Dict, List

from eth_utils import to_checksum_address

from models import ConfigError, Token


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from exc


def _env_int(name: str, default: int) -> int:
    return int(_env_float(name, default))


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# ─────────────────────────────────────────────────────────────────────────────
# PATHS
# ─────────────────────────────────────────────────────────────────────────────

DATA_DIR: str = os.environ.get("DATA_DIR", os.path.join(os.path.dirname(__file__), "data"))
LOG_FILE: str = os.path.join(DATA_DIR, "engine.log")
PID_FILE: str = os.path.join(DATA_DIR, "runner.pid")

# ─────────────────────────────────────────────────────────────────────────────
# NETWORK / ACCOUNT
# ─────────────────────────────────────────────────────────────────────────────

NETWORK: Dict[str, Any] = {
    "rpc_url":          os.environ.get("RPC_URL", "https://eth.llamarpc.com"),    # RPC_URL
    "chain_id":         _env_int("CHAIN_ID", 1),                                 # CHAIN_ID
    "native_symbol":    "ETH",
    "native_decimals":  18,
    "account_address":  os.environ.get("ACCOUNT_ADDRESS", ""),                   # ACCOUNT_ADDRESS
    "private_key":      os.environ.get("PRIVATE_KEY", ""),                       # PRIVATE_KEY
    "contract_address": os.environ.get("CONTRACT_ADDRESS", ""),                  # CONTRACT_ADDRESS
    "dry_run":          _env_bool("DRY_RUN", True),                              # DRY_RUN
    "rpc_timeout":      _env_float("RPC_TIMEOUT_S", 8.0),                        # RPC_TIMEOUT_S
}

# Chains that price gas with base fee + priority fee.
FEE_MARKET_CHAINS: List[int] = [1, 137, 42161, 10]

ZERO_ADDRESS: str = "0x0000000000000000000000000000000000000000"

# ─────────────────────────────────────────────────────────────────────────────
# TOKENS  (Ethereum mainnet)
# ─────────────────────────────────────────────────────────────────────────────

TOKENS: Dict[str, Dict[str, Any]] = {
    "WETH": {"address": "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2", "decimals": 18},
    "USDC": {"address": "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48", "decimals": 6},
    "USDT": {"address": "0xdAC17F958D2ee523a2206206994597C13D831ec7", "decimals": 6},
    "DAI":  {"address": "0x6B175474E89094C44Da98b954EedeAC495271d0F", "decimals": 18},
    "WBTC": {"address": "0x2260FAC5E5542a773Aa44fBCfeDf7C193bc2C599", "decimals": 8},
}

# Pairs scanned every cycle: (borrowed asset, counter asset, borrow amount in asset units)
PAIRS: List[Dict[str, Any]] = [
    {"token_a": "WETH", "token_b": "USDC", "amount_asset": 1.0},
    {"token_a": "WETH", "token_b": "DAI",  "amount_asset": 1.0},
    {"token_a": "WETH", "token_b": "USDT", "amount_asset": 1.0},
    {"token_a": "WBTC", "token_b": "WETH", "amount_asset": 0.05},
]

# ─────────────────────────────────────────────────────────────────────────────
# VENUES
# ─────────────────────────────────────────────────────────────────────────────
# type: constant_product | concentrated_liquidity | vault | call_data

VENUES: Dict[str, Dict[str, Any]] = {
    "uniswap_v2": {
        "type": "constant_product",
        "router": "0x7a250d5630B4cF539739dF2C5dAcb4c659F2488D",
        "fee_rate": 0.003,
        "enabled": True,
    },
    "sushiswap": {
        "type": "constant_product",
        "router": "0xd9e1cE17f2641f24aE83637ab66a2cca9C378B9F",
        "fee_rate": 0.003,
        "enabled": True,
    },
    "uniswap_v3": {
        "type": "concentrated_liquidity",
        "router": "0xE592427A0AEce92De3Edee1F18E0157C05861564",
        "quoter": "0xb27308f9F90D607463bb33eA1BeBb41C27CE5AB6",
        "fee_rate": 0.003,
        "default_fee_tier": 3000,
        "fee_tiers": [500, 3000, 10000],
        "enabled": True,
    },
    "balancer_weth_usdc": {
        "type": "vault",
        "router": "0xBA12222222228d8Ba445958a75a0704d566BF2C8",
        "pool_id": "0x96646936b91d6b9d7d0c47c496afbf3d6ec7b6f8000200000000000000000019",
        "fee_rate": 0.003,
        "enabled": False,
    },
    "aggregator": {
        "type": "call_data",
        "router": "0x111111125421cA6dc452d289314280a0f8842A65",
        "api_url": "https://api.1inch.dev/swap/v6.0/1",
        "fee_rate": 0.0,
        "enabled": bool(os.environ.get("AGGREGATOR_API_KEY")),
    },
}

AGGREGATOR_API_KEY: str = os.environ.get("AGGREGATOR_API_KEY", "")       # AGGREGATOR_API_KEY

# ─────────────────────────────────────────────────────────────────────────────
# QUOTES / OPPORTUNITY DETECTION
# ─────────────────────────────────────────────────────────────────────────────

QUOTES: Dict[str, Any] = {
    "cache_ttl_s":           5.0,
    "min_liquidity_asset":   0.5,     # native-asset value; both reserves below = no quote
    "timeout_s":             6.0,
}

OPPORTUNITY: Dict[str, Any] = {
    "min_spread_pct":        0.5,     # spread must exceed this to emit a candidate
    "max_oracle_deviation":  0.05,    # venue rate may deviate 5% from oracle cross-rate
    "use_oracle_validation": True,
}

# ─────────────────────────────────────────────────────────────────────────────
# PROFITABILITY
# ─────────────────────────────────────────────────────────────────────────────

PROFIT: Dict[str, Any] = {
    "flash_loan_premium":  0.0009,                                   # Aave V3 0.09%
    "min_profit_usd":      _env_float("MIN_PROFIT_USD", 5.0),        # MIN_PROFIT_USD
    "max_risk_score":      _env_int("MAX_RISK_SCORE", 70),           # MAX_RISK_SCORE
    "min_margin_pct":      0.5,
    "optimal_size_steps":  20,
}

# ─────────────────────────────────────────────────────────────────────────────
# GAS
# ─────────────────────────────────────────────────────────────────────────────

GAS: Dict[str, Any] = {
    "units": {
        "flash_loan_base":  150000,
        "token_transfer":   21000,
        "transfers":        2,
        "buffer":           50000,
        "swap": {
            "constant_product":       120000,
            "concentrated_liquidity": 150000,
            "vault":                  180000,
            "call_data":              200000,
        },
    },
    "priority_multipliers": {"slow": 1.0, "standard": 1.2, "fast": 1.5, "urgent": 2.0},
    "max_fee_multipliers":  {"slow": 1.1, "standard": 1.3, "fast": 1.6, "urgent": 2.2},
    "fallback_gas_price_gwei":  20.0,
    "default_priority_fee_gwei": 1.5,
    "gas_limit_margin":         1.2,
    "default_gas_limit":        500000,
    "history_size":             100,
    "analytics_window":         20,
    "timeout_s":                5.0,
}

# ─────────────────────────────────────────────────────────────────────────────
# RISK PARAMETERS
# ─────────────────────────────────────────────────────────────────────────────

RISK: Dict[str, Any] = {
    "max_position_size_usd":      _env_float("MAX_POSITION_SIZE_USD", 25000.0),   # MAX_POSITION_SIZE_USD
    "max_daily_loss_usd":         _env_float("MAX_DAILY_LOSS_USD", 500.0),        # MAX_DAILY_LOSS_USD
    "max_slippage_pct":           _env_float("MAX_SLIPPAGE_PCT", 3.0),            # MAX_SLIPPAGE_PCT
    "min_profit_margin_pct":      _env_float("MIN_PROFIT_MARGIN_PCT", 0.5),       # MIN_PROFIT_MARGIN_PCT
    "max_gas_price_gwei":         _env_float("MAX_GAS_PRICE_GWEI", 100.0),        # MAX_GAS_PRICE_GWEI
    "circuit_breaker_threshold":  _env_int("CIRCUIT_BREAKER_THRESHOLD", 3),       # CIRCUIT_BREAKER_THRESHOLD
    "circuit_breaker_cooldown_s": _env_float("CIRCUIT_BREAKER_COOLDOWN_S", 300.0),  # CIRCUIT_BREAKER_COOLDOWN_S
    "emergency_stop":             _env_bool("EMERGENCY_STOP", False),             # EMERGENCY_STOP
    "max_risk_score":             PROFIT["max_risk_score"],
    "history_size":               1000,
}

# ─────────────────────────────────────────────────────────────────────────────
# EXECUTION
# ─────────────────────────────────────────────────────────────────────────────

EXECUTION: Dict[str, Any] = {
    "cooldown_s":               30.0,
    "max_opportunity_age_s":    15.0,
    "max_gas_drift":            1.2,       # reject if gas rose >20% since scoring
    "min_margin_pct":           PROFIT["min_margin_pct"],
    "balance_gas_multiple":     2.0,
    "deadline_s":               300,
    "min_profit_asset":         0.001,
    "urgency":                  "fast",
    "confirmation_timeout_s":   120.0,
    "history_size":             100,
    "slippage_tolerance": {
        "constant_product":       0.05,
        "concentrated_liquidity": 0.05,
        "vault":                  0.05,
        "call_data":              0.01,
    },
}

# ─────────────────────────────────────────────────────────────────────────────
# REFERENCE PRICE ORACLE
# ─────────────────────────────────────────────────────────────────────────────

ORACLE: Dict[str, Any] = {
    "cache_ttl_s":    30.0,
    "max_age_s":      3600,
    "timeout_s":      5.0,
    # Chainlink aggregators (mainnet)
    "chainlink_feeds": {
        "ETH":  "0x5f4eC3Df9cbd43714FE2740f5E3616155c5b8419",
        "BTC":  "0xF4030086522a5bEEa4988F8cA5B36dbC97BeE88c",
        "USDC": "0x8fFfFfd4AfB6115b954Bd326cbe7B4BA576818f6",
        "DAI":  "0xAed0c38402a5d19df6E4c03F4E2DceD6e29c1ee9",
        "USDT": "0x3E7d1eAB13ad0104d2750B8863b489D65364e32D",
    },
    # Secondary HTTP feed (DeFi Llama, keyed by coingecko id)
    "defillama_url": "https://coins.llama.fi/prices/current/",
    "coingecko_ids": {
        "ETH":   "ethereum",
        "BTC":   "bitcoin",
        "USDC":  "usd-coin",
        "USDT":  "tether",
        "DAI":   "dai",
        "BNB":   "binancecoin",
        "MATIC": "matic-network",
        "AVAX":  "avalanche-2",
        "FTM":   "fantom",
    },
    "aliases": {"WETH": "ETH", "WBTC": "BTC", "WMATIC": "MATIC", "WBNB": "BNB", "WAVAX": "AVAX", "WFTM": "FTM"},
    "fallback_prices": {
        "ETH":   2000.0,
        "BTC":   35000.0,
        "BNB":   300.0,
        "MATIC": 0.8,
        "AVAX":  25.0,
        "FTM":   0.3,
        "USDC":  1.0,
        "USDT":  1.0,
        "DAI":   1.0,
        "BUSD":  1.0,
    },
    "default_fallback_price": 1.0,
}

# ─────────────────────────────────────────────────────────────────────────────
# PERFORMANCE / ALERTING
# ─────────────────────────────────────────────────────────────────────────────

PERFORMANCE: Dict[str, Any] = {
    "max_error_rate":          0.10,
    "min_success_rate":        0.70,
    "min_trades_for_success":  10,
    "min_opps_for_error_rate": 10,
    "max_execution_time_s":    30.0,
    "min_profit_margin_pct":   0.5,
    "min_trades_for_margin":   5,
    "history_size":            1000,
}

# ─────────────────────────────────────────────────────────────────────────────
# SCHEDULING
# ─────────────────────────────────────────────────────────────────────────────

SCAN: Dict[str, float] = {
    "price_refresh_interval_s": _env_float("PRICE_REFRESH_INTERVAL_S", 5.0),   # PRICE_REFRESH_INTERVAL_S
    "scan_interval_s":          _env_float("SCAN_INTERVAL_S", 10.0),           # SCAN_INTERVAL_S
    "alert_interval_s":         60.0,
    "report_interval_s":        300.0,
}

# ─────────────────────────────────────────────────────────────────────────────
# HTTP / RETRY SETTINGS
# ─────────────────────────────────────────────────────────────────────────────

HTTP: Dict[str, Any] = {
    "timeout":           10,
    "max_retries":       3,
    "retry_delay":       1.5,
    "rate_limit_sleep":  15.0,
    "user_agent":        "FlashArbEngine/1.0",
}

# ─────────────────────────────────────────────────────────────────────────────
# LOGGING CONFIGURATION
# ─────────────────────────────────────────────────────────────────────────────

os.makedirs(DATA_DIR, exist_ok=True)

LOGGING_CONFIG: Dict[str, Any] = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "detailed": {
            "format": "%(asctime)s [%(levelname)-8s] %(name)s | %(message)s",
            "datefmt": "%Y-%m-%d %H:%M:%S",
        },
        "brief": {
            "format": "[%(levelname)s] %(message)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "brief",
            "level": "WARNING",
        },
        "file": {
            "class": "logging.FileHandler",
            "filename": LOG_FILE,
            "formatter": "detailed",
            "level": "DEBUG",
        },
    },
    "root": {
        "handlers": ["console", "file"],
        "level": "DEBUG",
    },
}

_logging_configured = False


def get_logger(name: str) -> logging.Logger:
    """Return a configured logger for a given module name."""
    global _logging_configured
    if not _logging_configured:
        logging.config.dictConfig(LOGGING_CONFIG)
        _logging_configured = True
    return logging.getLogger(name)


# ─────────────────────────────────────────────────────────────────────────────
# LOADERS / VALIDATION
# ─────────────────────────────────────────────────────────────────────────────


def load_tokens() -> Dict[str, Token]:
    """Build checksummed Token objects from the TOKENS block."""
    tokens: Dict[str, Token] = {}
    for symbol, spec in TOKENS.items():
        try:
            address = to_checksum_address(spec["address"])
        except ValueError as exc:
            raise ConfigError(f"token {symbol}: bad address {spec['address']!r}") from exc
        tokens[symbol] = Token(symbol=symbol, address=address, decimals=int(spec["decimals"]))
    return tokens


def load_venues(include_disabled: bool = False):
    """Build VenueConfig objects for the enabled venues."""
    from venues import VenueConfig

    venues = []
    for name, spec in VENUES.items():
        if not include_disabled and not spec.get("enabled", True):
            continue
        venues.append(VenueConfig.from_dict(name, spec))
    return venues


def load_pairs(tokens: Dict[str, Token]) -> List[Dict[str, Any]]:
    """Resolve PAIRS into (token_a, token_b, amount_in base units) dicts."""
    pairs = []
    for spec in PAIRS:
        a, b = spec["token_a"], spec["token_b"]
        if a not in tokens or b not in tokens:
            raise ConfigError(f"pair {a}/{b} references an unknown token")
        token_a = tokens[a]
        pairs.append({
            "token_a": token_a,
            "token_b": tokens[b],
            "amount_in": int(round(spec["amount_asset"] * 10 ** token_a.decimals)),
        })
    return pairs


def validate_config(dry_run: bool = True) -> None:
    """
    Fail fast on misconfiguration.

    Raises
    ------
    ConfigError
        For anything that makes running pointless or unsafe: no RPC,
        no venues, unknown venue types, pairs referencing unknown tokens,
        or missing credentials when live execution is requested.
    """
    if not NETWORK["rpc_url"]:
        raise ConfigError("RPC_URL is not set")

    tokens = load_tokens()
    venues = load_venues()          # raises ConfigError on unknown type tags
    if not venues:
        raise ConfigError("no venues enabled")
    load_pairs(tokens)

    if not dry_run:
        if not NETWORK["private_key"]:
            raise ConfigError("PRIVATE_KEY is required when DRY_RUN is off")
        if not NETWORK["contract_address"]:
            raise ConfigError("CONTRACT_ADDRESS is required when DRY_RUN is off")
        try:
            to_checksum_address(NETWORK["contract_address"])
        except ValueError as exc:
            raise ConfigError(f"CONTRACT_ADDRESS is malformed: {NETWORK['contract_address']!r}") from exc
