from decimal import Decimal

from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # --- Service ---
    PROJECT_NAME: str = "Storefront_Checkout"
    LOG_LEVEL: str = "INFO"

    # --- Order Store ---
    DATABASE_URL: str = "sqlite:///./storefront.db"
    DB_CONNECT_RETRIES: int = 10
    DB_CONNECT_WAIT_SECONDS: float = 3

    # Postgres credentials live in the same .env for docker-compose
    POSTGRES_USER: str | None = None
    POSTGRES_PASSWORD: str | None = None
    POSTGRES_DB: str | None = None

    # --- Forced override guard ---
    REDIS_URL: str | None = None
    FORCED_OVERRIDE_LIMIT: int = 5
    FORCED_OVERRIDE_WINDOW_SECONDS: int = 3600

    # --- Ledger (blockchain rail) ---
    SOLANA_RPC_URL: str = "https://api.mainnet-beta.solana.com"
    HELIUS_API_KEY: str | None = None
    MERCHANT_WALLET_ADDRESS: str | None = None
    LEDGER_TIMEOUT_SECONDS: float = 10
    LEDGER_MAX_ATTEMPTS: int = 3
    LEDGER_RETRY_BACKOFF_SECONDS: float = 0.5
    AMOUNT_TOLERANCE: Decimal = Decimal("0.00001")

    # --- Confirmation engine ---
    CONFIRM_TIER_ATTEMPTS: int = 3
    CONFIRM_RETRY_BACKOFF_SECONDS: float = 0.2

    # --- Sweepers ---
    STALE_DRAFT_HOURS: float = 24
    STALE_PENDING_HOURS: float = 24
    PENDING_REPORT_LIMIT: int = 100
    VERIFY_BATCH_LIMIT: int = 20

    # --- Notifications (Twilio WhatsApp) ---
    TWILIO_ACCOUNT_SID: str | None = None
    TWILIO_AUTH_TOKEN: str | None = None
    TWILIO_FROM_NUMBER: str | None = None
    ADMIN_PHONE_NUMBER: str | None = None

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore"  # the shared .env also carries docker-compose variables
    )

    @property
    def ledger_rpc_url(self) -> str:
        """Helius is preferred when a key is configured, public RPC otherwise."""
        if self.HELIUS_API_KEY:
            return f"https://mainnet.helius-rpc.com/?api-key={self.HELIUS_API_KEY}"
        return self.SOLANA_RPC_URL

settings = Settings()
