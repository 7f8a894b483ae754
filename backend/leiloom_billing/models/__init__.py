# 台帳APIから受け取るドメインモデル
from leiloom_billing.models.plan import PlanDefinition, PlanRef
from leiloom_billing.models.enrollment import Enrollment, Period
from leiloom_billing.models.payment import (
    PaymentIntent,
    PaymentMethod,
    PaymentStatus,
    IN_FLIGHT_STATUSES,
    TERMINAL_STATUSES,
    external_reference_for,
    intent_id_from_reference,
)

__all__ = [
    "PlanDefinition",
    "PlanRef",
    "Enrollment",
    "Period",
    "PaymentIntent",
    "PaymentMethod",
    "PaymentStatus",
    "IN_FLIGHT_STATUSES",
    "TERMINAL_STATUSES",
    "external_reference_for",
    "intent_id_from_reference",
]
