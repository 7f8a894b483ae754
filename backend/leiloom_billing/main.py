from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from leiloom_billing.core.config import settings
from leiloom_billing.core.exceptions import ErrorKind, SubscriptionError, SupersessionConfirmationRequired
from leiloom_billing.core.logging import setup_logging, get_logger
from leiloom_billing.core.redis import close_cache, open_cache
from leiloom_billing.routers import admin, health, payments, plans, subscriptions
from leiloom_billing.schemas.subscription import PaymentResponse
from leiloom_billing.services.ledger_api import LedgerApiClient
from leiloom_billing.services.payment_poller import PaymentReconciliationPoller, PollerRegistry
from leiloom_billing.services.pending_payments import PendingPaymentRegistry
from leiloom_billing.services.plan_catalog import PlanCatalog
from leiloom_billing.services.stripe_service import StripeCheckoutGateway
from leiloom_billing.services.subscription_ledger import SubscriptionLedger
from leiloom_billing.services.subscription_orchestrator import SubscriptionOrchestrator

logger = get_logger(__name__)


def build_services(app: FastAPI, api: LedgerApiClient, gateway=None, cache=None):
    """サービス群を組み立てて app.state に載せる"""
    ledger = SubscriptionLedger(api)
    catalog = PlanCatalog(api, ledger, cache=cache)
    payments_registry = PendingPaymentRegistry(api)
    pollers = PollerRegistry(PaymentReconciliationPoller(api), ledger)
    orchestrator = SubscriptionOrchestrator(
        api,
        catalog,
        ledger,
        payments_registry,
        gateway or StripeCheckoutGateway(),
        pollers,
    )
    app.state.ledger_api = api
    app.state.ledger = ledger
    app.state.catalog = catalog
    app.state.payments = payments_registry
    app.state.pollers = pollers
    app.state.orchestrator = orchestrator


@asynccontextmanager
async def lifespan(app: FastAPI):
    """アプリケーションライフサイクル管理"""
    setup_logging(debug=settings.DEBUG)
    api = LedgerApiClient()
    cache = open_cache()
    build_services(app, api, cache=cache)
    logger.info(f"アプリケーション起動: ledger_api={api.base_url}, env={settings.ENV}")
    yield
    await app.state.pollers.close()
    await api.close()
    await close_cache(cache)
    logger.info("アプリケーション終了")


app = FastAPI(
    title=settings.SITE_NAME,
    lifespan=lifespan,
    docs_url="/api/docs" if settings.DEBUG else None,
    redoc_url="/api/redoc" if settings.DEBUG else None,
)

# --- 購読エラー → HTTPステータス ---
_STATUS_BY_KIND = {
    ErrorKind.TRIAL_ALREADY_USED: 409,
    ErrorKind.SUPERSESSION_CONFIRMATION_REQUIRED: 409,
    ErrorKind.PERIOD_EXPIRED: 410,
    ErrorKind.PLAN_UNAVAILABLE: 404,
    ErrorKind.PERIOD_MISMATCH: 404,
    ErrorKind.PENDING_PAYMENT_CANCELLATION_FAILED: 502,
    ErrorKind.INTENT_CREATION_FAILED: 502,
    ErrorKind.TRANSPORT_ERROR: 502,
    ErrorKind.REMOTE_REQUEST_REJECTED: 502,
    ErrorKind.CONFIRMATION_TIMEOUT: 504,
}


@app.exception_handler(SubscriptionError)
async def subscription_error_handler(request: Request, exc: SubscriptionError):
    status_code = _STATUS_BY_KIND.get(exc.kind, 500)
    # 台帳APIの 404 はそのまま返す (存在しない決済など)
    if exc.kind == ErrorKind.REMOTE_REQUEST_REJECTED and getattr(exc, "status", None) == 404:
        status_code = 404
    content = {"detail": exc.message, **exc.to_dict()}
    if isinstance(exc, SupersessionConfirmationRequired):
        content["pending"] = [PaymentResponse.from_intent(p).model_dump(mode="json") for p in exc.pending]
    return JSONResponse(status_code=status_code, content=content)


# --- バリデーションエラー日本語化 ---
_FIELD_JA = {
    "plan_id": "プランID",
    "starts_at": "開始日",
    "installments": "分割回数",
    "payment_method": "支払い方法",
    "confirm_supersede": "未決済キャンセルの確認",
    "max_attempts": "最大試行回数",
    "watch": "ポーリング開始",
}


def _translate_error(err: dict) -> str:
    t = err.get("type", "")
    ctx = err.get("ctx", {})
    loc = err.get("loc", [])
    field = str(loc[-1]) if loc else ""
    fj = _FIELD_JA.get(field, field)

    if t == "missing":
        return f"{fj}は必須です"
    if t in ("int_parsing", "int_type"):
        return f"{fj}は数値で入力してください"
    if t == "greater_than_equal":
        return f"{fj}は{ctx.get('ge', '')}以上の値を入力してください"
    if t in ("datetime_parsing", "datetime_from_date_parsing", "date_parsing", "date_from_datetime_parsing"):
        return f"{fj}は日付形式で入力してください"
    if t == "enum":
        return f"{fj}は{ctx.get('expected', '')}のいずれかを指定してください"
    if t == "string_type":
        return f"{fj}は文字列で入力してください"
    if t == "bool_parsing":
        return f"{fj}は真偽値で入力してください"
    return f"{fj}: 入力値が不正です"


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    messages = [_translate_error(e) for e in exc.errors()]
    return JSONResponse(status_code=422, content={"detail": "、".join(messages)})


# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ルーター登録
app.include_router(health.router)
app.include_router(plans.router)
app.include_router(subscriptions.router)
app.include_router(payments.router)
app.include_router(admin.router)
