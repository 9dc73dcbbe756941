"""
Reservation Service — エラー定義

コア(commands / queries / maintenance)が送出するのはこのモジュールの
例外だけ。HTTP ステータスへの変換は main.py の例外ハンドラが行う。
"""

from enum import Enum


class ErrorCode(str, Enum):
    # 汎用
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"
    NOT_FOUND = "NOT_FOUND"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    TOO_MANY_REQUESTS = "TOO_MANY_REQUESTS"

    # データベース
    DATABASE_ERROR = "DATABASE_ERROR"

    # 商品
    ITEM_NOT_FOUND = "ITEM_NOT_FOUND"

    # 予約
    RESERVATION_NOT_FOUND = "RESERVATION_NOT_FOUND"
    INSUFFICIENT_QUANTITY = "INSUFFICIENT_QUANTITY"
    RESERVATION_EXPIRED = "RESERVATION_EXPIRED"
    RESERVATION_CANCELLED = "RESERVATION_CANCELLED"
    RESERVATION_CONFIRMED = "RESERVATION_CONFIRMED"
    RESERVATION_STATE_CHANGED = "RESERVATION_STATE_CHANGED"


class ReservationServiceError(Exception):
    """全エラーの基底クラス"""

    code: ErrorCode = ErrorCode.INTERNAL_SERVER_ERROR
    default_message: str = "An unexpected error occurred"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class ItemNotFound(ReservationServiceError):
    code = ErrorCode.ITEM_NOT_FOUND
    default_message = "Item not found"


class ReservationNotFound(ReservationServiceError):
    code = ErrorCode.RESERVATION_NOT_FOUND
    default_message = "Reservation not found"


class InsufficientQuantity(ReservationServiceError):
    """在庫不足（診断用に available / requested を保持する）"""

    code = ErrorCode.INSUFFICIENT_QUANTITY

    def __init__(self, available: int, requested: int) -> None:
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient available quantity. "
            f"Available: {available}, Requested: {requested}"
        )


class ReservationExpired(ReservationServiceError):
    code = ErrorCode.RESERVATION_EXPIRED
    default_message = "Reservation has expired"


class ReservationCancelled(ReservationServiceError):
    code = ErrorCode.RESERVATION_CANCELLED
    default_message = "Reservation has been cancelled"


class ReservationConfirmed(ReservationServiceError):
    code = ErrorCode.RESERVATION_CONFIRMED
    default_message = "Reservation has been confirmed"


class ReservationStateChanged(ReservationServiceError):
    """条件付き UPDATE の前提が崩れ、再読込でも想定外の状態だった"""

    code = ErrorCode.RESERVATION_STATE_CHANGED
    default_message = "Reservation state changed"


class ValidationError(ReservationServiceError):
    code = ErrorCode.VALIDATION_ERROR
    default_message = "Invalid request"


class TooManyRequests(ReservationServiceError):
    code = ErrorCode.TOO_MANY_REQUESTS
    default_message = "Too many requests, please try again later."


class DatabaseError(ReservationServiceError):
    code = ErrorCode.DATABASE_ERROR
    default_message = "Database operation failed"


class InternalServerError(ReservationServiceError):
    code = ErrorCode.INTERNAL_SERVER_ERROR
