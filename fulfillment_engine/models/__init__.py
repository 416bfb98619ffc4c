# fulfillment_engine/models/__init__.py
"""
统一导出 ORM 模型。
"""

from importlib import import_module


def _export(module_name: str, class_name: str) -> None:
    module = import_module(module_name)
    globals()[class_name] = getattr(module, class_name)


MODEL_REGISTRY = [
    # -------- 商品 / 库存 --------
    ("fulfillment_engine.models.product", "Product"),
    ("fulfillment_engine.models.inventory_movement", "InventoryMovement"),
    # -------- 订单 --------
    ("fulfillment_engine.models.order", "Order"),
    ("fulfillment_engine.models.order_line_item", "OrderLineItem"),
    # -------- 履约会话 --------
    ("fulfillment_engine.models.fulfillment_session", "FulfillmentSession"),
    ("fulfillment_engine.models.fulfillment_session", "SessionOrderLink"),
    ("fulfillment_engine.models.pick_item", "AggregatedPickItem"),
    ("fulfillment_engine.models.packing_allocation", "PackingAllocation"),
]

for _mod, _cls in MODEL_REGISTRY:
    _export(_mod, _cls)

__all__ = [cls for _, cls in MODEL_REGISTRY]
