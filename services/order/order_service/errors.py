"""
Order Service - エラー定義

呼び出し側が扱いを分けられるよう、エラーを種類ごとに分類する。

    NotFoundError            対象の注文・支払いが存在しない
    ValidationError          入力不正・不正な状態遷移 (書き込み前に検出)
    ConflictError            同時更新の競合に負けた (呼び出し側で再試行可)
    UpstreamError            外部サービス (決済・ユーザー・通知) の失敗
    WriteOutcomeUnknownError 永続化の途中でタイムアウトし、結果が不明
"""


class OrderServiceError(Exception):
    """Order Service のすべてのエラーの基底クラス"""


class NotFoundError(OrderServiceError):
    def __init__(self, resource: str, resource_id: str) -> None:
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource} {resource_id} not found")


class ValidationError(OrderServiceError):
    """フィールド単位の検証エラー。永続化より前に必ず送出される。"""

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")


class ConflictError(OrderServiceError):
    """
    条件付き更新 (compare-and-swap) に失敗した。

    読み込んだ時点のステータスと、書き込み時点のステータスが異なる。
    別のリクエストが先に遷移を確定させたことを意味する。
    """

    def __init__(self, order_id: str, expected: str, actual: str | None = None) -> None:
        self.order_id = order_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"order {order_id} was modified concurrently "
            f"(expected status {expected}, found {actual})"
        )


class UpstreamError(OrderServiceError):
    """
    外部サービス呼び出しの失敗。

    retryable=True は通信エラーや 5xx、False は 4xx などの確定的な失敗。
    決済の charge / refund はこのサービス内では再試行しない。
    """

    def __init__(
        self,
        service: str,
        message: str,
        retryable: bool = False,
        status_code: int | None = None,
    ) -> None:
        self.service = service
        self.message = message
        self.retryable = retryable
        self.status_code = status_code
        super().__init__(f"{service}: {message}")


class WriteOutcomeUnknownError(OrderServiceError):
    """永続化の途中で期限切れになった。書き込みが反映されたかは不明。"""

    def __init__(self, order_id: str, operation: str) -> None:
        self.order_id = order_id
        self.operation = operation
        super().__init__(f"outcome of {operation} for order {order_id} is unknown")


class CurrencyMismatchError(ValueError):
    def __init__(self, left: str, right: str) -> None:
        self.left = left
        self.right = right
        super().__init__(f"currency mismatch: {left} vs {right}")
