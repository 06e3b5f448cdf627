"""
Environment-driven configuration with validation.

All keys use the PMM_ prefix and may come from a .env file.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional

from dotenv import load_dotenv

from pmmbot.core.json_utils import dumps
from pmmbot.core.models import PriceType

load_dotenv()


class ConfigError(ValueError):
    """Missing or unparsable setting. Fatal at startup."""


def env_bool(key: str, default: bool) -> bool:
    val = os.getenv(key)
    if val is None or val == "":
        return default
    return val.lower() in {"1", "true", "yes", "y"}


def _int_env(key: str, default: Optional[int]) -> Optional[int]:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"{key}={raw!r} is not an integer") from exc


def _float_env(key: str, default: float) -> float:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"{key}={raw!r} is not a number") from exc


def _decimal_env(key: str, default: Optional[str]) -> Optional[Decimal]:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return Decimal(default) if default is not None else None
    try:
        value = Decimal(raw)
    except InvalidOperation as exc:
        raise ConfigError(f"{key}={raw!r} is not a decimal") from exc
    if not value.is_finite():
        raise ConfigError(f"{key}={raw!r} must be finite")
    return value


@dataclass(frozen=True)
class Settings:
    # Instrument
    symbol: str
    base_asset: Optional[str]
    quote_asset: Optional[str]
    price_decimals: Optional[int]
    qty_decimals: Optional[int]
    # Quoting
    bid_spread_pct: Decimal
    ask_spread_pct: Decimal
    order_amount: Decimal
    price_type: PriceType
    order_levels: int
    order_level_spread: Decimal
    price_ceiling: Optional[Decimal]
    price_floor: Optional[Decimal]
    target_spread_pct: Decimal
    # Refresh
    order_refresh_sec: float
    order_refresh_tolerance_pct: Decimal
    max_order_age_sec: float
    filled_order_delay_sec: float
    # Inventory skew
    inventory_skew_enabled: bool
    inventory_target_base_pct: Decimal
    inventory_range_multiplier: Decimal
    # Circuit breaker
    min_spread_pct: Decimal
    max_spread_pct: Decimal
    # Risk
    max_order_value: Decimal
    min_order_size: Decimal
    safety_margin_pct: Decimal
    # Loop
    loop_interval: float
    order_poll_interval: float
    state_save_interval: float
    book_depth: int
    # Transport
    base_url: str
    api_key: Optional[str]
    api_secret: Optional[str]
    http_timeout: float
    recv_window_ms: int
    # Runtime
    paper: bool
    paper_base_balance: Decimal
    paper_quote_balance: Decimal
    state_dir: str
    metrics_port: int
    log_file: Optional[str]
    log_level: str

    def dump(self) -> dict:
        """Return a dict of settings for logging, with secrets masked."""
        data = self.__dict__.copy()
        for key in ("api_key", "api_secret"):
            if data.get(key):
                data[key] = "***"
        return data

    @classmethod
    def load(cls) -> "Settings":
        symbol = os.getenv("PMM_SYMBOL", "").strip().upper()
        if not symbol:
            raise ConfigError("PMM_SYMBOL is required")

        price_type_raw = os.getenv("PMM_PRICE_TYPE", PriceType.MID_PRICE.value).strip().lower()
        try:
            price_type = PriceType(price_type_raw)
        except ValueError as exc:
            allowed = ", ".join(p.value for p in PriceType)
            raise ConfigError(f"PMM_PRICE_TYPE={price_type_raw!r}; expected one of {allowed}") from exc

        cfg = cls(
            symbol=symbol,
            base_asset=os.getenv("PMM_BASE_ASSET") or None,
            quote_asset=os.getenv("PMM_QUOTE_ASSET") or None,
            price_decimals=_int_env("PMM_PRICE_DECIMALS", None),
            qty_decimals=_int_env("PMM_QTY_DECIMALS", None),
            bid_spread_pct=_decimal_env("PMM_BID_SPREAD_PCT", "0.5"),
            ask_spread_pct=_decimal_env("PMM_ASK_SPREAD_PCT", "0.5"),
            order_amount=_decimal_env("PMM_ORDER_AMOUNT", "5"),
            price_type=price_type,
            order_levels=_int_env("PMM_ORDER_LEVELS", 1),
            order_level_spread=_decimal_env("PMM_ORDER_LEVEL_SPREAD", "0.1"),
            price_ceiling=_decimal_env("PMM_PRICE_CEILING", None),
            price_floor=_decimal_env("PMM_PRICE_FLOOR", None),
            target_spread_pct=_decimal_env("PMM_TARGET_SPREAD_PCT", "0.5"),
            order_refresh_sec=_float_env("PMM_ORDER_REFRESH_SEC", 30.0),
            order_refresh_tolerance_pct=_decimal_env("PMM_ORDER_REFRESH_TOLERANCE_PCT", "0.2"),
            max_order_age_sec=_float_env("PMM_MAX_ORDER_AGE_SEC", 0.0),
            filled_order_delay_sec=_float_env("PMM_FILLED_ORDER_DELAY_SEC", 0.0),
            inventory_skew_enabled=env_bool("PMM_INVENTORY_SKEW_ENABLED", False),
            inventory_target_base_pct=_decimal_env("PMM_INVENTORY_TARGET_BASE_PCT", "50"),
            inventory_range_multiplier=_decimal_env("PMM_INVENTORY_RANGE_MULTIPLIER", "1"),
            min_spread_pct=_decimal_env("PMM_MIN_SPREAD_PCT", "0.1"),
            max_spread_pct=_decimal_env("PMM_MAX_SPREAD_PCT", "2.0"),
            max_order_value=_decimal_env("PMM_MAX_ORDER_VALUE", "10"),
            min_order_size=_decimal_env("PMM_MIN_ORDER_SIZE", "0.01"),
            safety_margin_pct=_decimal_env("PMM_SAFETY_MARGIN_PCT", "95"),
            loop_interval=_float_env("PMM_LOOP_INTERVAL_SEC", 2.0),
            order_poll_interval=_float_env("PMM_ORDER_POLL_INTERVAL_SEC", 5.0),
            state_save_interval=_float_env("PMM_STATE_SAVE_INTERVAL_SEC", 60.0),
            book_depth=_int_env("PMM_BOOK_DEPTH", 5),
            base_url=os.getenv("PMM_BASE_URL", "https://api.mexc.com"),
            api_key=os.getenv("PMM_API_KEY") or None,
            api_secret=os.getenv("PMM_API_SECRET") or None,
            http_timeout=_float_env("PMM_HTTP_TIMEOUT", 5.0),
            recv_window_ms=_int_env("PMM_RECV_WINDOW_MS", 5000),
            paper=env_bool("PMM_PAPER", True),
            paper_base_balance=_decimal_env("PMM_PAPER_BASE_BALANCE", "0"),
            paper_quote_balance=_decimal_env("PMM_PAPER_QUOTE_BALANCE", "100"),
            state_dir=os.getenv("PMM_STATE_DIR", "state"),
            metrics_port=_int_env("PMM_METRICS_PORT", 9095),
            log_file=os.getenv("PMM_LOG_FILE", "pmmbot.log") or None,
            log_level=os.getenv("PMM_LOG_LEVEL", "INFO").upper(),
        )
        cfg._validate()
        _sanity_check(cfg)
        return cfg

    def _validate(self) -> None:
        if self.order_levels <= 0:
            raise ConfigError("PMM_ORDER_LEVELS must be > 0")
        if self.bid_spread_pct <= 0 or self.ask_spread_pct <= 0:
            raise ConfigError("PMM_BID_SPREAD_PCT and PMM_ASK_SPREAD_PCT must be > 0")
        if self.bid_spread_pct >= 100:
            raise ConfigError("PMM_BID_SPREAD_PCT must be < 100")
        if self.order_level_spread < 0:
            raise ConfigError("PMM_ORDER_LEVEL_SPREAD must be >= 0")
        if self.order_amount <= 0:
            raise ConfigError("PMM_ORDER_AMOUNT must be > 0")
        if self.target_spread_pct <= 0:
            raise ConfigError("PMM_TARGET_SPREAD_PCT must be > 0")
        if (
            self.price_ceiling is not None
            and self.price_floor is not None
            and self.price_ceiling <= self.price_floor
        ):
            raise ConfigError("PMM_PRICE_CEILING must be > PMM_PRICE_FLOOR")
        if self.min_spread_pct < 0 or self.min_spread_pct >= self.max_spread_pct:
            raise ConfigError("Spread band requires 0 <= PMM_MIN_SPREAD_PCT < PMM_MAX_SPREAD_PCT")
        if self.order_refresh_sec < 0 or self.max_order_age_sec < 0:
            raise ConfigError("Refresh timings must be >= 0")
        if self.order_refresh_tolerance_pct < 0:
            raise ConfigError("PMM_ORDER_REFRESH_TOLERANCE_PCT must be >= 0")
        if not (0 <= self.inventory_target_base_pct <= 100):
            raise ConfigError("PMM_INVENTORY_TARGET_BASE_PCT must be within [0, 100]")
        if self.inventory_range_multiplier <= 0:
            raise ConfigError("PMM_INVENTORY_RANGE_MULTIPLIER must be > 0")
        if self.max_order_value < 0:
            raise ConfigError("PMM_MAX_ORDER_VALUE must be >= 0 (0 disables)")
        if self.min_order_size <= 0:
            raise ConfigError("PMM_MIN_ORDER_SIZE must be > 0")
        if not (0 < self.safety_margin_pct <= 100):
            raise ConfigError("PMM_SAFETY_MARGIN_PCT must be within (0, 100]")
        if self.loop_interval <= 0 or self.order_poll_interval <= 0:
            raise ConfigError("Loop intervals must be > 0")
        if self.book_depth <= 0:
            raise ConfigError("PMM_BOOK_DEPTH must be > 0")
        for key, val in (("PMM_PRICE_DECIMALS", self.price_decimals), ("PMM_QTY_DECIMALS", self.qty_decimals)):
            if val is not None and val < 0:
                raise ConfigError(f"{key} must be >= 0")
        if not self.paper and not (self.api_key and self.api_secret):
            raise ConfigError("PMM_API_KEY and PMM_API_SECRET are required unless PMM_PAPER=true")
        if not isinstance(logging.getLevelName(self.log_level), int):
            raise ConfigError(f"PMM_LOG_LEVEL={self.log_level!r} is not a logging level")

        logger = logging.getLogger("pmmbot")
        if self.max_order_value == 0:
            logger.warning(
                "WARNING: PMM_MAX_ORDER_VALUE is 0, fat-finger check disabled. "
                "Consider setting a maximum order value."
            )
        if self.order_refresh_sec == 0:
            logger.warning(
                "WARNING: PMM_ORDER_REFRESH_SEC is 0. "
                "Every price drift beyond tolerance will re-quote immediately."
            )


def _sanity_check(cfg: Settings) -> None:
    """Log critical settings once at startup so overrides are obvious."""
    logging.getLogger("pmmbot").info(dumps({
        "event": "config_loaded",
        "symbol": cfg.symbol,
        "paper": cfg.paper,
        "bid_spread_pct": cfg.bid_spread_pct,
        "ask_spread_pct": cfg.ask_spread_pct,
        "order_amount": cfg.order_amount,
        "order_levels": cfg.order_levels,
        "spread_band": [cfg.min_spread_pct, cfg.max_spread_pct],
        "loop_interval": cfg.loop_interval,
    }))
