from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """アプリケーション設定"""

    # 台帳API (契約・期間・決済の正本)
    LEDGER_API_URL: str = "http://localhost:3333"
    LEDGER_API_TOKEN: str = ""
    LEDGER_API_TIMEOUT_SECONDS: float = 10.0

    # Redis (プランカタログキャッシュ)
    REDIS_URL: str = "redis://redis:6379/0"
    PLAN_CATALOG_CACHE_SECONDS: int = 60

    # Stripe
    STRIPE_SECRET_KEY: str = ""
    CHECKOUT_CURRENCY: str = "brl"

    # サービス設定
    SITE_URL: str = "http://localhost:8000"
    SITE_NAME: str = "Leiloom Billing"
    ALLOWED_ORIGINS: str = "http://localhost:8000,http://localhost:3000"

    # 期間計算に使うクライアントのタイムゾーン
    CLIENT_TIMEZONE: str = "America/Sao_Paulo"

    # 決済確認ポーリング
    PAYMENT_POLL_INTERVAL_SECONDS: float = 5.0
    PAYMENT_POLL_MAX_ATTEMPTS: int = 120

    # 新プラン選択時の未決済キャンセル理由
    SUPERSEDE_REASON: str = "Cancelado para criação de novo plano"

    # 環境
    ENV: str = "development"
    DEBUG: bool = True

    @property
    def allowed_origins_list(self) -> list[str]:
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",") if o.strip()]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
