import uuid
from enum import Enum
from extensions import db
from .payment_order import utcnow


class CardStatusEnum(Enum):
    active = "active"
    frozen = "frozen"
    inactive = "inactive"


class Card(db.Model):
    __tablename__ = "cards"

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = db.Column(db.String(64), nullable=False, index=True)
    provider_card_id = db.Column(db.String(128), unique=True, nullable=False)  # 发卡平台 card_id
    title = db.Column(db.String(128), nullable=True)
    status = db.Column(db.Enum(CardStatusEnum), default=CardStatusEnum.active, nullable=False)
    balance = db.Column(db.Numeric(12, 2), default=0, nullable=False)           # 扣除平台手续费后的余额
    currency = db.Column(db.String(16), default="USD", nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    transactions = db.relationship("CardTransaction", back_populates="card", lazy="dynamic")

    def to_dict(self):
        return {
            'id': self.id,
            'provider_card_id': self.provider_card_id,
            'title': self.title,
            'status': self.status.value,
            'balance': str(self.balance),
            'currency': self.currency,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


class CardTransaction(db.Model):
    # 每笔完成的订单记一条流水
    __tablename__ = "card_transactions"

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    card_id = db.Column(db.String(36), db.ForeignKey("cards.id"), nullable=False, index=True)
    user_id = db.Column(db.String(64), nullable=False)
    order_id = db.Column(db.String(36), db.ForeignKey("payment_orders.id"), unique=True, nullable=False)
    type = db.Column(db.String(32), nullable=False)          # card_creation / card_topup
    amount = db.Column(db.Numeric(12, 2), nullable=False)    # 用户支付的 USD，记为负数
    credited_amount = db.Column(db.Numeric(12, 2), nullable=True)
    status = db.Column(db.String(16), default="completed", nullable=False)
    reference = db.Column(db.String(128), nullable=True)     # 链上交易签名
    provider_reference = db.Column(db.String(128), nullable=True)
    description = db.Column(db.String(255), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)

    card = db.relationship("Card", back_populates="transactions")

    def to_dict(self):
        return {
            'id': self.id,
            'card_id': self.card_id,
            'order_id': self.order_id,
            'type': self.type,
            'amount': str(self.amount),
            'credited_amount': str(self.credited_amount) if self.credited_amount is not None else None,
            'status': self.status,
            'reference': self.reference,
            'description': self.description,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }
