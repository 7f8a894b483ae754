"""台帳API クライアント

契約・期間・決済の正本 (リモートストア) へのJSON/HTTPS呼び出し。
エラーは {status, message} で返るので ErrorKind に変換する:
- 通信エラー / タイムアウト / 5xx → TransportError (再試行可)
- 4xx → RemoteRequestError
- 応答がJSONでない / モデルに合わない → RemoteRequestError (status=502)
"""
from datetime import datetime
from typing import Any, Optional, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from leiloom_billing.core.config import settings
from leiloom_billing.core.exceptions import RemoteRequestError, TransportError
from leiloom_billing.core.logging import get_logger
from leiloom_billing.models import Enrollment, PaymentIntent, PaymentMethod, Period, PlanDefinition

logger = get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class LedgerApiClient:
    """台帳APIの薄いラッパー"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.LEDGER_API_URL).rstrip("/")
        self.token = token if token is not None else settings.LEDGER_API_TOKEN
        self.timeout = timeout or settings.LEDGER_API_TIMEOUT_SECONDS
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers = {
                "Content-Type": "application/json",
                "Accept": "application/json",
            }
            if self.token:
                headers["Authorization"] = f"Bearer {self.token}"
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport,
            )
        return self._client

    async def close(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        path: str,
        json: Any = None,
        params: Optional[dict] = None,
        allow_not_found: bool = False,
    ) -> Any:
        client = self._get_client()
        try:
            response = await client.request(method, path, json=json, params=params)
        except httpx.TimeoutException as e:
            logger.warning(f"台帳APIタイムアウト: {method} {path}")
            raise TransportError(f"台帳APIがタイムアウトしました: {path}", path=path) from e
        except httpx.RequestError as e:
            logger.warning(f"台帳API通信エラー: {method} {path} - {e}")
            raise TransportError(path=path) from e

        if allow_not_found and response.status_code == 404:
            return None

        if response.status_code >= 400:
            message = _error_message(response)
            if response.status_code >= 500:
                logger.error(f"台帳APIエラー: {method} {path} status={response.status_code} message={message}")
                raise TransportError(message, status=response.status_code, path=path)
            logger.info(f"台帳APIがリクエストを拒否: {method} {path} status={response.status_code} message={message}")
            raise RemoteRequestError(message, status=response.status_code, path=path)

        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            logger.error(f"台帳API応答がJSONではない: {method} {path} status={response.status_code}")
            raise RemoteRequestError(f"台帳APIの応答が不正です: {path}", status=502, path=path) from e

    # =========================================================
    # プラン
    # =========================================================

    async def list_active_plans(self) -> list[PlanDefinition]:
        data = await self._request("GET", "/plans/active")
        return _parse_many(PlanDefinition, data, "/plans/active")

    async def get_plan(self, plan_id: str) -> Optional[PlanDefinition]:
        data = await self._request("GET", f"/plans/{plan_id}", allow_not_found=True)
        return _parse(PlanDefinition, data, f"/plans/{plan_id}") if data else None

    # =========================================================
    # 契約・期間
    # =========================================================

    async def list_enrollments(self, client_id: str) -> list[Enrollment]:
        data = await self._request("GET", f"/client-plans/client/{client_id}")
        return _parse_many(Enrollment, data, f"/client-plans/client/{client_id}")

    async def get_current_period(self, client_id: str) -> Optional[Period]:
        data = await self._request(
            "GET", f"/client-period-plans/client/{client_id}/current", allow_not_found=True
        )
        return _parse(Period, data, f"/client-period-plans/client/{client_id}/current") if data else None

    async def list_reactivatable_periods(self, client_id: str) -> list[Period]:
        data = await self._request("GET", f"/client-period-plans/client/{client_id}/reactivatable")
        return _parse_many(Period, data, f"/client-period-plans/client/{client_id}/reactivatable")

    async def create_enrollment(
        self,
        client_id: str,
        plan_id: str,
        starts_at: datetime,
        expires_at: datetime,
        is_trial: bool,
        is_current: bool,
    ) -> Enrollment:
        """契約と最初の期間を1回の呼び出しで作成"""
        data = await self._request(
            "POST",
            "/client-plans",
            json={
                "clientId": client_id,
                "planId": plan_id,
                "period": {
                    "startsAt": starts_at.isoformat(),
                    "expiresAt": expires_at.isoformat(),
                    "isTrial": is_trial,
                    "isCurrent": is_current,
                },
            },
        )
        return _parse(Enrollment, data, "/client-plans")

    async def activate_period(self, period_id: str) -> Period:
        """期間を現行にし、以前の現行期間を同時に解除 (ストア側で原子的に実施)"""
        data = await self._request("PATCH", f"/client-period-plans/{period_id}/activate")
        return _parse(Period, data, f"/client-period-plans/{period_id}/activate")

    # =========================================================
    # 決済
    # =========================================================

    async def list_payment_intents(self, client_id: str) -> list[PaymentIntent]:
        data = await self._request("GET", f"/payments/client/{client_id}")
        return _parse_many(PaymentIntent, data, f"/payments/client/{client_id}")

    async def get_payment_intent(self, intent_id: str) -> PaymentIntent:
        data = await self._request("GET", f"/payments/{intent_id}")
        return _parse(PaymentIntent, data, f"/payments/{intent_id}")

    async def create_payment_intent(
        self,
        enrollment_id: str,
        total_amount: int,
        installments: int,
        payment_method: PaymentMethod,
        absorbs_gateway_fee: bool,
        due_date: Optional[datetime] = None,
    ) -> PaymentIntent:
        payload = {
            "clientPlanId": enrollment_id,
            "totalAmount": total_amount,
            "installments": installments,
            "paymentMethod": payment_method.value,
            "absorbTax": absorbs_gateway_fee,
        }
        if due_date:
            payload["dueDate"] = due_date.isoformat()
        data = await self._request("POST", "/payments", json=payload)
        return _parse(PaymentIntent, data, "/payments")

    async def cancel_payment_intent(self, intent_id: str, reason: str):
        await self._request("DELETE", f"/payments/{intent_id}", json={"reason": reason})

    async def record_checkout_reference(self, intent_id: str, checkout_id: str):
        await self._request("PATCH", f"/payments/{intent_id}/preference", json={"preferenceId": checkout_id})

    async def ping(self) -> bool:
        """ヘルスチェック"""
        try:
            await self._request("GET", "/health")
            return True
        except (TransportError, RemoteRequestError):
            return False


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        message = body.get("message") or body.get("detail") or body.get("error")
        if isinstance(message, list):
            message = "; ".join(str(m) for m in message)
        if message:
            return str(message)
    return f"HTTP {response.status_code}"


# 台帳APIの応答がモデルに合わない場合はストア側の不整合として扱う (502)
def _parse(model: type[ModelT], data: Any, path: str) -> ModelT:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        logger.error(f"台帳API応答の形式が不正: path={path}, model={model.__name__}, errors={e.error_count()}")
        raise RemoteRequestError(f"台帳APIの応答が不正です: {path}", status=502, path=path) from e


def _parse_many(model: type[ModelT], data: Any, path: str) -> list[ModelT]:
    if data is None:
        return []
    if not isinstance(data, list):
        logger.error(f"台帳API応答の形式が不正 (配列ではない): path={path}")
        raise RemoteRequestError(f"台帳APIの応答が不正です: {path}", status=502, path=path)
    return [_parse(model, item, path) for item in data]
