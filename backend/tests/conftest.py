"""Shared fixtures: an in-memory ledger API and a fake checkout gateway."""

import asyncio
import itertools
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from leiloom_billing.core.exceptions import RemoteRequestError, TransportError
from leiloom_billing.models import Enrollment, PaymentIntent, PaymentStatus, Period, PlanDefinition, PlanRef
from leiloom_billing.services.payment_poller import PaymentReconciliationPoller, PollerRegistry
from leiloom_billing.services.pending_payments import PendingPaymentRegistry
from leiloom_billing.services.plan_catalog import PlanCatalog
from leiloom_billing.services.stripe_service import CheckoutGateway, CheckoutHandoff
from leiloom_billing.services.subscription_ledger import SubscriptionLedger
from leiloom_billing.services.subscription_orchestrator import SubscriptionOrchestrator

NOW = datetime(2024, 6, 10, 15, 0, tzinfo=timezone.utc)
SAO_PAULO = ZoneInfo("America/Sao_Paulo")


class FakeClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class FakeLedgerApi:
    """Mimics the remote store of record, including the single-current-period rule."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.plans: dict[str, PlanDefinition] = {}
        self.enrollments: list[dict] = []
        self.periods: list[dict] = []
        self.intents: list[dict] = []
        self.calls: list[tuple] = []
        self.cancel_failures: set[str] = set()
        self.status_script: dict[str, list] = {}
        self.fail_create_intent = False
        self._ids = itertools.count(1)

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}-{next(self._ids)}"

    # --- seeding helpers -------------------------------------------------

    def add_plan(self, plan: PlanDefinition) -> PlanDefinition:
        self.plans[plan.id] = plan
        return plan

    def seed_enrollment(self, client_id, plan_id, starts_at, expires_at, is_current=False, is_trial=None) -> tuple[str, str]:
        enrollment_id = self._next_id("cp")
        self.enrollments.append({
            "id": enrollment_id,
            "client_id": client_id,
            "plan_id": plan_id,
            "created_at": self.clock(),
        })
        period_id = self._next_id("pp")
        self.periods.append({
            "id": period_id,
            "enrollment_id": enrollment_id,
            "starts_at": starts_at,
            "expires_at": expires_at,
            "is_current": False,
            "is_trial": self.plans[plan_id].is_trial if is_trial is None else is_trial,
            "was_confirmed": False,
        })
        if is_current:
            self._set_current(period_id)
        return enrollment_id, period_id

    def seed_intent(self, client_id, enrollment_id, status=PaymentStatus.PENDING, total_amount=None, due_date=None) -> str:
        enrollment = self._enrollment_record(enrollment_id)
        plan = self.plans[enrollment["plan_id"]]
        intent_id = self._next_id("pay")
        self.intents.append({
            "id": intent_id,
            "enrollment_id": enrollment_id,
            "client_id": client_id,
            "total_amount": plan.price if total_amount is None else total_amount,
            "paid_amount": 0,
            "installment_count": 1,
            "payment_method": "PIX",
            "status": status,
            "due_date": due_date,
            "external_id": None,
        })
        return intent_id

    def current_periods(self, client_id: str) -> list[dict]:
        enrollment_ids = {e["id"] for e in self.enrollments if e["client_id"] == client_id}
        return [p for p in self.periods if p["enrollment_id"] in enrollment_ids and p["is_current"]]

    def intent(self, intent_id: str) -> dict:
        return next(i for i in self.intents if i["id"] == intent_id)

    def calls_named(self, name: str) -> list[tuple]:
        return [c for c in self.calls if c[0] == name]

    # --- internals -------------------------------------------------------

    def _enrollment_record(self, enrollment_id: str) -> dict:
        return next(e for e in self.enrollments if e["id"] == enrollment_id)

    def _client_of_period(self, period: dict) -> str:
        return self._enrollment_record(period["enrollment_id"])["client_id"]

    def _set_current(self, period_id: str):
        # one committed step: clear the previous current period and set the new one
        period = next(p for p in self.periods if p["id"] == period_id)
        for other in self.current_periods(self._client_of_period(period)):
            other["is_current"] = False
        period["is_current"] = True

    def _period_model(self, record: dict) -> Period:
        return Period.model_validate(record)

    def _enrollment_model(self, record: dict) -> Enrollment:
        periods = [self._period_model(p) for p in self.periods if p["enrollment_id"] == record["id"]]
        return Enrollment.model_validate({**record, "plan": self.plans.get(record["plan_id"]), "periods": periods})

    def _intent_model(self, record: dict) -> PaymentIntent:
        plan = self.plans[self._enrollment_record(record["enrollment_id"])["plan_id"]]
        plan_ref = PlanRef(
            id=plan.id,
            name=plan.name,
            price=plan.price,
            is_trial=plan.is_trial,
            max_installments=plan.max_installments,
            seat_limit=plan.seat_limit,
        )
        return PaymentIntent.model_validate({**record, "plan": plan_ref})

    # --- LedgerApiClient surface -----------------------------------------

    async def list_active_plans(self):
        self.calls.append(("list_active_plans",))
        return [p for p in self.plans.values() if p.is_active]

    async def get_plan(self, plan_id):
        self.calls.append(("get_plan", plan_id))
        return self.plans.get(plan_id)

    async def list_enrollments(self, client_id):
        self.calls.append(("list_enrollments", client_id))
        return [self._enrollment_model(e) for e in self.enrollments if e["client_id"] == client_id]

    async def get_current_period(self, client_id):
        self.calls.append(("get_current_period", client_id))
        current = self.current_periods(client_id)
        return self._period_model(current[0]) if current else None

    async def list_reactivatable_periods(self, client_id):
        self.calls.append(("list_reactivatable_periods", client_id))
        enrollment_ids = {e["id"] for e in self.enrollments if e["client_id"] == client_id}
        return [self._period_model(p) for p in self.periods if p["enrollment_id"] in enrollment_ids and not p["is_current"]]

    async def create_enrollment(self, client_id, plan_id, starts_at, expires_at, is_trial, is_current):
        self.calls.append(("create_enrollment", client_id, plan_id, is_current))
        enrollment_id, _ = self.seed_enrollment(
            client_id, plan_id, starts_at, expires_at, is_current=is_current, is_trial=is_trial
        )
        return self._enrollment_model(self._enrollment_record(enrollment_id))

    async def activate_period(self, period_id):
        self.calls.append(("activate_period", period_id))
        self._set_current(period_id)
        return self._period_model(next(p for p in self.periods if p["id"] == period_id))

    async def list_payment_intents(self, client_id):
        self.calls.append(("list_payment_intents", client_id))
        return [self._intent_model(i) for i in self.intents if i["client_id"] == client_id]

    async def get_payment_intent(self, intent_id):
        self.calls.append(("get_payment_intent", intent_id))
        script = self.status_script.get(intent_id)
        if script:
            step = script.pop(0)
            if isinstance(step, Exception):
                raise step
            record = self.intent(intent_id)
            record["status"] = step
            if step == PaymentStatus.PAID:
                # the gateway webhook confirms the period on the store side
                period = next(p for p in self.periods if p["enrollment_id"] == record["enrollment_id"])
                period["was_confirmed"] = True
                self._set_current(period["id"])
        if not any(i["id"] == intent_id for i in self.intents):
            raise RemoteRequestError("Payment not found", status=404, path=f"/payments/{intent_id}")
        return self._intent_model(self.intent(intent_id))

    async def create_payment_intent(self, enrollment_id, total_amount, installments, payment_method, absorbs_gateway_fee, due_date=None):
        self.calls.append(("create_payment_intent", enrollment_id, total_amount, installments))
        if self.fail_create_intent:
            raise TransportError(status=503, path="/payments")
        enrollment = self._enrollment_record(enrollment_id)
        intent_id = self.seed_intent(enrollment["client_id"], enrollment_id, total_amount=total_amount)
        record = self.intent(intent_id)
        record["installment_count"] = installments
        record["payment_method"] = payment_method.value
        return self._intent_model(record)

    async def cancel_payment_intent(self, intent_id, reason):
        self.calls.append(("cancel_payment_intent", intent_id, reason))
        await asyncio.sleep(0)
        if intent_id in self.cancel_failures:
            raise TransportError(status=500, path=f"/payments/{intent_id}")
        self.intent(intent_id)["status"] = PaymentStatus.CANCELLED

    async def record_checkout_reference(self, intent_id, checkout_id):
        self.calls.append(("record_checkout_reference", intent_id, checkout_id))
        self.intent(intent_id)["external_id"] = checkout_id

    async def ping(self):
        return True


class FakeGateway(CheckoutGateway):
    def __init__(self):
        self.checkouts = []
        self.fail = False

    async def create_checkout(self, intent, plan):
        if self.fail:
            raise RuntimeError("gateway down")
        self.checkouts.append((intent, plan))
        return CheckoutHandoff(
            checkout_id=f"cs_{intent.id}",
            url=f"https://checkout.test/{intent.id}",
            external_reference=intent.external_reference,
        )


class FakeSleep:
    """Records requested delays without actually waiting."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float):
        self.delays.append(delay)
        await asyncio.sleep(0)


def make_plan(plan_id: str, **overrides) -> PlanDefinition:
    data = {
        "id": plan_id,
        "name": plan_id.title(),
        "price": 9900,
        "duration_days": 30,
        "seat_limit": 1,
        "is_trial": False,
        "is_active": True,
        "created_at": NOW - timedelta(days=100),
    }
    data.update(overrides)
    return PlanDefinition.model_validate(data)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def api(clock):
    return FakeLedgerApi(clock)


@pytest.fixture
def trial_plan(api):
    return api.add_plan(make_plan(
        "trial", price=0, duration_days=7, is_trial=True, created_at=NOW - timedelta(days=300)
    ))


@pytest.fixture
def basic_plan(api):
    return api.add_plan(make_plan("basic", price=9900, duration_days=30, created_at=NOW - timedelta(days=200)))


@pytest.fixture
def pro_plan(api):
    return api.add_plan(make_plan(
        "pro",
        price=19900,
        duration_days=30,
        seat_limit=5,
        allow_installments=True,
        max_installments=12,
        created_at=NOW - timedelta(days=100),
    ))


@pytest.fixture
def ledger(api, clock):
    return SubscriptionLedger(api, clock=clock)


@pytest.fixture
def catalog(api, ledger):
    return PlanCatalog(api, ledger, cache=None, cache_seconds=0)


@pytest.fixture
def payments(api, clock):
    return PendingPaymentRegistry(api, clock=clock)


@pytest.fixture
def fake_sleep():
    return FakeSleep()


@pytest.fixture
def poller(api, fake_sleep):
    return PaymentReconciliationPoller(api, interval=5.0, sleep=fake_sleep)


@pytest.fixture
def pollers(poller, ledger):
    return PollerRegistry(poller, ledger, max_attempts=10)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def orchestrator(api, catalog, ledger, payments, gateway, pollers, clock):
    return SubscriptionOrchestrator(
        api,
        catalog,
        ledger,
        payments,
        gateway,
        pollers,
        clock=clock,
        tz=SAO_PAULO,
        supersede_reason="Cancelado para criação de novo plano",
    )
