# fulfillment_engine/services/errors.py
from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence


class FulfillmentError(Exception):
    """
    履约引擎统一异常基类。

    - error_code   ：稳定的机器可读码（前端据此决策，不解析 message）
    - details      ：逐项明细（哪个商品 / 哪个订单卡住了流程）
    - next_actions ：建议操作（与 Problem 体系同源）
    """

    http_status: int = 400
    default_code: str = "fulfillment_error"

    def __init__(
        self,
        message: str,
        *,
        error_code: Optional[str] = None,
        details: Optional[Sequence[Dict[str, Any]]] = None,
        context: Optional[Dict[str, Any]] = None,
        next_actions: Optional[Sequence[Dict[str, Any]]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.default_code
        self.details: List[Dict[str, Any]] = list(details or [])
        self.context: Dict[str, Any] = dict(context or {})
        self.next_actions: List[Dict[str, Any]] = list(next_actions or [])

    def to_problem_kwargs(self) -> Dict[str, Any]:
        return {
            "status_code": self.http_status,
            "error_code": self.error_code,
            "message": self.message,
            "context": self.context or None,
            "details": self.details or None,
            "next_actions": self.next_actions or None,
        }

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.error_code}: {self.message}>"


class ValidationError(FulfillmentError):
    """标识不存在 / 格式不对 / 订单不在要求的状态。"""

    http_status = 422
    default_code = "validation_error"


class StockInsufficientError(FulfillmentError):
    """逐商品列出缺口：{product_id, name, sku, needed, available, short}。"""

    http_status = 409
    default_code = "stock_insufficient"


class IncompleteError(FulfillmentError):
    """阶段推进前数量未对齐（拣货未齐 / 打包未齐）。"""

    http_status = 409
    default_code = "incomplete"


class ConflictError(FulfillmentError):
    """分配会超出共享池或单订单上限；属于瞬时冲突，调用方刷新后可重试。"""

    http_status = 409
    default_code = "allocation_conflict"


class StateError(FulfillmentError):
    """会话 / 订单处于错误阶段（包括修改已出库订单）。"""

    http_status = 409
    default_code = "invalid_state"


class NotFoundError(FulfillmentError):
    http_status = 404
    default_code = "not_found"


def shortage_detail(
    *, product_id: int, name: Optional[str], sku: Optional[str], needed: int, available: int
) -> Dict[str, Any]:
    return {
        "type": "shortage",
        "product_id": int(product_id),
        "name": name,
        "sku": sku,
        "needed": int(needed),
        "available": int(available),
        "short": int(needed) - int(available),
    }


def order_state_detail(*, order_id: int, order_number: Optional[str], status: str) -> Dict[str, Any]:
    return {
        "type": "state",
        "order_id": int(order_id),
        "order_number": order_number,
        "status": str(status),
    }
