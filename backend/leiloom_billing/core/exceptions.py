"""
購読ライフサイクルの例外

ErrorKind ごとに例外クラスを用意し、APIレスポンス用に to_dict() で
構造化できるようにする。
"""
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    TRIAL_ALREADY_USED = "TRIAL_ALREADY_USED"
    PENDING_PAYMENT_CANCELLATION_FAILED = "PENDING_PAYMENT_CANCELLATION_FAILED"
    PERIOD_EXPIRED = "PERIOD_EXPIRED"
    INTENT_CREATION_FAILED = "INTENT_CREATION_FAILED"
    CONFIRMATION_TIMEOUT = "CONFIRMATION_TIMEOUT"
    TRANSPORT_ERROR = "TRANSPORT_ERROR"
    SUPERSESSION_CONFIRMATION_REQUIRED = "SUPERSESSION_CONFIRMATION_REQUIRED"
    PLAN_UNAVAILABLE = "PLAN_UNAVAILABLE"
    PERIOD_MISMATCH = "PERIOD_MISMATCH"
    REMOTE_REQUEST_REJECTED = "REMOTE_REQUEST_REJECTED"


class SubscriptionError(Exception):
    """
    購読処理の基底例外

    Attributes:
        message: 利用者向けメッセージ
        kind: 機械判定用の ErrorKind
        details: 付加情報 (ID など)
    """

    kind: ErrorKind = ErrorKind.TRANSPORT_ERROR
    retryable: bool = False

    def __init__(self, message: str, kind: Optional[ErrorKind] = None, details: dict = None):
        self.message = message
        if kind is not None:
            self.kind = kind
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict:
        """APIレスポンス用の辞書に変換"""
        return {
            "error": self.kind.value,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }


class TrialAlreadyUsedError(SubscriptionError):
    """トライアルは1クライアント1回まで"""

    kind = ErrorKind.TRIAL_ALREADY_USED

    def __init__(self, client_id: str, plan_id: str = None):
        super().__init__(
            "トライアルは既に利用済みです",
            details={"client_id": client_id, "plan_id": plan_id},
        )
        self.client_id = client_id
        self.plan_id = plan_id


class SupersessionConfirmationRequired(SubscriptionError):
    """未決済の支払いがあり、キャンセルには操作者の確認が必要"""

    kind = ErrorKind.SUPERSESSION_CONFIRMATION_REQUIRED

    def __init__(self, client_id: str, pending: list):
        super().__init__(
            f"未決済の支払いが{len(pending)}件あります。新しいプランを選択すると、これらはキャンセルされます",
            details={
                "client_id": client_id,
                "pending_payment_ids": [p.id for p in pending],
            },
        )
        self.client_id = client_id
        self.pending = pending


class PendingPaymentCancellationError(SubscriptionError):
    """未決済支払いのキャンセル失敗 (選択処理は中断)"""

    kind = ErrorKind.PENDING_PAYMENT_CANCELLATION_FAILED
    retryable = True

    def __init__(self, failed_ids: list[str], cancelled_ids: list[str] = None):
        super().__init__(
            "未決済の支払いをキャンセルできませんでした",
            details={
                "failed_payment_ids": failed_ids,
                "cancelled_payment_ids": cancelled_ids or [],
            },
        )
        self.failed_ids = failed_ids
        self.cancelled_ids = cancelled_ids or []


class PeriodExpiredError(SubscriptionError):
    """有効期限切れの期間は再有効化できない"""

    kind = ErrorKind.PERIOD_EXPIRED

    def __init__(self, period_id: str, expires_at=None):
        super().__init__(
            "この期間は既に期限切れのため再有効化できません",
            details={
                "period_id": period_id,
                "expires_at": expires_at.isoformat() if expires_at else None,
            },
        )
        self.period_id = period_id


class PeriodMismatchError(SubscriptionError):
    """期間が指定された契約に属していない"""

    kind = ErrorKind.PERIOD_MISMATCH

    def __init__(self, period_id: str, enrollment_id: str):
        super().__init__(
            "指定された期間はこの契約に属していません",
            details={"period_id": period_id, "enrollment_id": enrollment_id},
        )


class PlanUnavailableError(SubscriptionError):
    """プランが存在しないか無効"""

    kind = ErrorKind.PLAN_UNAVAILABLE

    def __init__(self, plan_id: str):
        super().__init__("プランが見つかりません", details={"plan_id": plan_id})
        self.plan_id = plan_id


class IntentCreationError(SubscriptionError):
    """決済インテント作成 (またはチェックアウト連携) の失敗"""

    kind = ErrorKind.INTENT_CREATION_FAILED
    retryable = True

    def __init__(self, message: str = "決済の作成に失敗しました", enrollment_id: str = None, stage: str = "intent"):
        super().__init__(message, details={"enrollment_id": enrollment_id, "stage": stage})
        self.enrollment_id = enrollment_id
        self.stage = stage


class ConfirmationTimeoutError(SubscriptionError):
    """ポーリング上限に達しても決済が確定しない"""

    kind = ErrorKind.CONFIRMATION_TIMEOUT
    retryable = True

    def __init__(self, intent_id: str, attempts: int, last_status: str = None):
        super().__init__(
            "決済の確認がまだ完了していません",
            details={"payment_id": intent_id, "attempts": attempts, "last_status": last_status},
        )
        self.intent_id = intent_id
        self.attempts = attempts
        self.last_status = last_status


class TransportError(SubscriptionError):
    """通信エラー / 台帳APIの5xx"""

    kind = ErrorKind.TRANSPORT_ERROR
    retryable = True

    def __init__(self, message: str = "台帳APIとの通信に失敗しました", status: int = None, path: str = None):
        super().__init__(message, details={"status": status, "path": path})
        self.status = status
        self.path = path


class RemoteRequestError(SubscriptionError):
    """台帳APIが4xxでリクエストを拒否、または応答が不正 (status=502)"""

    kind = ErrorKind.REMOTE_REQUEST_REJECTED

    def __init__(self, message: str, status: int, path: str = None):
        super().__init__(message, details={"status": status, "path": path})
        self.status = status
        self.path = path
