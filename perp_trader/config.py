from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    DATABASE_URL: str = Field("sqlite:///perp_trader.db", env="DATABASE_URL")

    # Exchange endpoints
    EXCHANGE_MAINNET_URL: str = Field("https://api.hyperliquid.xyz", env="EXCHANGE_MAINNET_URL")
    EXCHANGE_TESTNET_URL: str = Field("https://api.hyperliquid-testnet.xyz", env="EXCHANGE_TESTNET_URL")
    EXCHANGE_MAINNET_WS_URL: str = Field("wss://api.hyperliquid.xyz/ws", env="EXCHANGE_MAINNET_WS_URL")
    EXCHANGE_TESTNET_WS_URL: str = Field("wss://api.hyperliquid-testnet.xyz/ws", env="EXCHANGE_TESTNET_WS_URL")

    # Request discipline
    REQUEST_TIMEOUT_SEC: float = Field(15.0, env="REQUEST_TIMEOUT_SEC")
    REQUEST_MAX_RETRIES: int = Field(3, env="REQUEST_MAX_RETRIES")  # total attempts
    REQUEST_BACKOFF_BASE_SEC: float = Field(1.0, env="REQUEST_BACKOFF_BASE_SEC")
    METADATA_CACHE_TTL_SEC: float = Field(60.0, env="METADATA_CACHE_TTL_SEC")

    # Order execution
    CLOSE_SLIPPAGE: float = Field(0.03, env="CLOSE_SLIPPAGE")
    NUCLEAR_SETTLE_DELAY_SEC: float = Field(0.5, env="NUCLEAR_SETTLE_DELAY_SEC")
    DEFAULT_STOP_LOSS_PCT: float = Field(0.03, env="DEFAULT_STOP_LOSS_PCT")
    PROTECTIVE_ORDER_ATTEMPTS: int = Field(2, env="PROTECTIVE_ORDER_ATTEMPTS")
    PROTECTIVE_ORDER_RETRY_DELAY_SEC: float = Field(1.0, env="PROTECTIVE_ORDER_RETRY_DELAY_SEC")

    # Pre-trade checks
    MIN_ORDER_USD: float = Field(200.0, env="MIN_ORDER_USD")
    MIN_ORDER_ACCOUNT_FRACTION: float = Field(0.10, env="MIN_ORDER_ACCOUNT_FRACTION")
    SYMBOL_COOLDOWN_SEC: int = Field(300, env="SYMBOL_COOLDOWN_SEC")
    DUPLICATE_GUARD_SEC: int = Field(60, env="DUPLICATE_GUARD_SEC")
    TREND_GUARD_MIN_STRENGTH: int = Field(6, env="TREND_GUARD_MIN_STRENGTH")

    # Scheduling
    TRADING_LOCK_TTL_SEC: int = Field(120, env="TRADING_LOCK_TTL_SEC")
    TRADING_CYCLE_INTERVAL_SEC: int = Field(180, env="TRADING_CYCLE_INTERVAL_SEC")
    RECONCILE_INTERVAL_SEC: int = Field(60, env="RECONCILE_INTERVAL_SEC")
    AUTO_START_SCHEDULERS: bool = Field(False, env="AUTO_START_SCHEDULERS")

    # Market data
    CANDLE_INTERVAL: str = Field("1h", env="CANDLE_INTERVAL")
    CANDLE_LIMIT: int = Field(100, env="CANDLE_LIMIT")
    MARKET_STREAM_ENABLE: bool = Field(False, env="MARKET_STREAM_ENABLE")
    MARKET_STREAM_TESTNET: bool = Field(False, env="MARKET_STREAM_TESTNET")
    MARKET_STREAM_SYMBOLS: str = Field("BTC,ETH,SOL", env="MARKET_STREAM_SYMBOLS")
    MARKET_STREAM_INTERVAL: str = Field("5m", env="MARKET_STREAM_INTERVAL")
    MARKET_STREAM_MAX_BACKOFF_SEC: float = Field(60.0, env="MARKET_STREAM_MAX_BACKOFF_SEC")
    TESTNET_EXCLUDED_SYMBOLS: str = Field("XRP", env="TESTNET_EXCLUDED_SYMBOLS")

    # Bot config bounds
    MIN_LEVERAGE: int = Field(1, env="MIN_LEVERAGE")
    MAX_LEVERAGE: int = Field(50, env="MAX_LEVERAGE")
    MIN_POSITION_SIZE: float = Field(0.01, env="MIN_POSITION_SIZE")
    MAX_POSITION_SIZE: float = Field(1.0, env="MAX_POSITION_SIZE")

    # Circuit breaker
    CIRCUIT_BREAKER_COOLDOWN_MIN: int = Field(30, env="CIRCUIT_BREAKER_COOLDOWN_MIN")
    CIRCUIT_BREAKER_MAX_AI_FAILURES: int = Field(3, env="CIRCUIT_BREAKER_MAX_AI_FAILURES")
    CIRCUIT_BREAKER_MAX_LOSSES: int = Field(5, env="CIRCUIT_BREAKER_MAX_LOSSES")

    # Decision provider
    DECISION_PROVIDER_URL: str = Field("", env="DECISION_PROVIDER_URL")
    DECISION_PROVIDER_TIMEOUT_SEC: float = Field(60.0, env="DECISION_PROVIDER_TIMEOUT_SEC")

    # Notifications
    NOTIFIER_WEBHOOK: str = Field("", env="NOTIFIER_WEBHOOK")

    # Application
    APP_PORT: int = Field(8000, env="APP_PORT")
    LOG_LEVEL: str = Field("INFO", env="LOG_LEVEL")
    CONTROL_API_TOKEN: str = Field("", env="CONTROL_API_TOKEN")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8"
    }

settings = Settings()
