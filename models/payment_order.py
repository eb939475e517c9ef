import uuid
from datetime import datetime, timezone
from enum import Enum
from extensions import db


def utcnow():
    # 数据库统一存 naive UTC 时间
    return datetime.now(timezone.utc).replace(tzinfo=None)


class OrderKindEnum(Enum):
    card_creation = "card_creation"            # 开卡（含首充）
    card_topup = "card_topup"                  # 充值已有卡
    token_verification = "token_verification"  # 仅验证持币


class OrderStatusEnum(Enum):
    pending = "pending"        # 等待付款
    processing = "processing"  # 已匹配链上交易，等待发卡
    fulfilled = "fulfilled"    # 完成
    expired = "expired"        # 超时未付款
    failed = "failed"          # 收到付款但持币校验 / 发卡失败


LIVE_STATUSES = (OrderStatusEnum.pending, OrderStatusEnum.processing)
TERMINAL_STATUSES = (OrderStatusEnum.fulfilled, OrderStatusEnum.expired, OrderStatusEnum.failed)

FAILURE_TOKEN_GATE = "token_gate_failed"
FAILURE_FULFILLMENT = "fulfillment_failed"


def live_key_for(kind, user_id, target_card_id=None):
    """未完结订单的互斥键：同一用户同一时间只能有一个开卡 / 验证订单，同一张卡只能有一个充值订单"""
    if kind == OrderKindEnum.card_topup:
        return f"{kind.value}:{user_id}:{target_card_id}"
    return f"{kind.value}:{user_id}"


STATUS_MESSAGES = {
    OrderStatusEnum.pending: "Waiting for payment...",
    OrderStatusEnum.processing: "Payment received, processing...",
    OrderStatusEnum.fulfilled: "Order completed.",
    OrderStatusEnum.expired: "Payment order expired, please create a new order.",
}


class PaymentOrder(db.Model):
    __tablename__ = "payment_orders"

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    kind = db.Column(db.Enum(OrderKindEnum), nullable=False)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    status = db.Column(db.Enum(OrderStatusEnum), default=OrderStatusEnum.pending, nullable=False, index=True)

    # 金额（创建时固定）
    amount_fiat = db.Column(db.Numeric(12, 2), nullable=False)                # 应付 USD 总额
    amount_crypto = db.Column(db.Numeric(20, 9), nullable=False)              # 应付 SOL
    exchange_rate_at_creation = db.Column(db.Numeric(20, 8), nullable=False)
    card_fee = db.Column(db.Numeric(12, 2), nullable=True)
    top_up_amount = db.Column(db.Numeric(12, 2), nullable=True)
    top_up_fee = db.Column(db.Numeric(12, 2), nullable=True)
    expected_receiving_address = db.Column(db.String(64), nullable=False, index=True)

    # 开卡信息
    card_title = db.Column(db.String(128), nullable=True)
    contact_email = db.Column(db.String(128), nullable=True)
    contact_phone = db.Column(db.String(32), nullable=True)
    # 充值目标卡（cards.id）
    target_card_id = db.Column(db.String(36), db.ForeignKey("cards.id"), nullable=True)
    verification_memo = db.Column(db.String(128), unique=True, nullable=True)
    # 终态时清空，唯一约束保证并发创建只有一个成功
    live_key = db.Column(db.String(160), unique=True, nullable=True)

    # 链上凭证
    observed_tx_id = db.Column(db.String(128), unique=True, nullable=True)
    observed_amount_crypto = db.Column(db.Numeric(20, 9), nullable=True)
    sender_address = db.Column(db.String(64), nullable=True)
    observed_at = db.Column(db.DateTime, nullable=True)

    # 持币校验
    token_gate_checked = db.Column(db.Boolean, default=False, nullable=False)
    token_gate_passed = db.Column(db.Boolean, nullable=True)
    token_balance_observed = db.Column(db.Numeric(30, 9), nullable=True)

    # 发卡
    dispatch_token = db.Column(db.String(36), nullable=True)
    dispatch_claimed_at = db.Column(db.DateTime, nullable=True)
    fulfilled_card_id = db.Column(db.String(36), nullable=True)
    failure_reason = db.Column(db.String(64), nullable=True)
    failure_detail = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False)
    fulfilled_at = db.Column(db.DateTime, nullable=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    target_card = db.relationship("Card", foreign_keys=[target_card_id])

    @property
    def status_message(self):
        if self.status == OrderStatusEnum.failed:
            if self.failure_reason == FAILURE_TOKEN_GATE:
                return "Payment received but token verification failed."
            return "Payment received but fulfillment failed, please contact support."
        return STATUS_MESSAGES.get(self.status, "")

    def to_dict(self):
        def _s(value):
            return str(value) if value is not None else None

        def _t(value):
            return value.replace(tzinfo=timezone.utc).isoformat() if value else None

        return {
            'id': self.id,
            'kind': self.kind.value,
            'status': self.status.value,
            'message': self.status_message,
            'amount_fiat': _s(self.amount_fiat),
            'amount_crypto': _s(self.amount_crypto),
            'exchange_rate': _s(self.exchange_rate_at_creation),
            'card_fee': _s(self.card_fee),
            'top_up_amount': _s(self.top_up_amount),
            'top_up_fee': _s(self.top_up_fee),
            'receiving_address': self.expected_receiving_address,
            'card_title': self.card_title,
            'target_card_id': self.target_card_id,
            'verification_memo': self.verification_memo,
            'tx_signature': self.observed_tx_id,
            'observed_amount_crypto': _s(self.observed_amount_crypto),
            'sender_address': self.sender_address,
            'token_gate_checked': self.token_gate_checked,
            'token_gate_passed': self.token_gate_passed,
            'fulfilled_card_id': self.fulfilled_card_id,
            'failure_reason': self.failure_reason,
            'created_at': _t(self.created_at),
            'expires_at': _t(self.expires_at),
            'fulfilled_at': _t(self.fulfilled_at),
        }

    def __repr__(self):
        return f"<PaymentOrder {self.id} - {self.kind.value} - {self.status.value}>"
