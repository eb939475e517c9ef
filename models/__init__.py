# 1. 显式导入所有模型类
from extensions import db

from .payment_order import (
    PaymentOrder, OrderKindEnum, OrderStatusEnum, LIVE_STATUSES, TERMINAL_STATUSES,
    FAILURE_TOKEN_GATE, FAILURE_FULFILLMENT, utcnow, live_key_for,
)
from .card_models import Card, CardTransaction, CardStatusEnum

# 2. 定义__all__
__all__ = [
    'PaymentOrder',
    'OrderKindEnum',
    'OrderStatusEnum',
    'LIVE_STATUSES',
    'TERMINAL_STATUSES',
    'FAILURE_TOKEN_GATE',
    'FAILURE_FULFILLMENT',
    'utcnow',
    'live_key_for',
    'Card',
    'CardTransaction',
    'CardStatusEnum',
]


# 3. 显式注册函数（确保Flask-Migrate能发现模型）
def register_models():
    """强制导入所有模型模块（触发SQLAlchemy注册）"""
    from . import payment_order
    from . import card_models
