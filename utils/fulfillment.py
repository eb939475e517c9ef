# utils/fulfillment.py
from collections import namedtuple
from decimal import Decimal
from extensions import db
from models import Card, CardTransaction, CardStatusEnum, OrderKindEnum
from utils.log_utils import get_logger
from utils.payment_errors import CardIssuerError, FulfillmentError

logger = get_logger("fulfillment")

FulfillmentResult = namedtuple("FulfillmentResult", ["card_id", "credited_amount"])


class FulfillmentExecutor:
    """
    对一个已付款且通过校验的订单执行唯一一次发卡副作用
    外部调用全部成功后才把 Card / CardTransaction 加入 session，由调用方随终态一起提交
    """

    def __init__(self, issuer):
        self.issuer = issuer

    def execute(self, order):
        if order.kind == OrderKindEnum.card_creation:
            return self._create_card(order)
        if order.kind == OrderKindEnum.card_topup:
            return self._top_up(order)
        if order.kind == OrderKindEnum.token_verification:
            # 持币校验已经在前面完成，无需调用发卡平台
            return FulfillmentResult(card_id=None, credited_amount=None)
        raise FulfillmentError(f"Unsupported order kind: {order.kind}")

    def _create_card(self, order):
        try:
            provider_card_id = self.issuer.create_card(order.card_title, order.contact_email, order.contact_phone)
        except CardIssuerError as e:
            logger.error(f"[create_card] order {order.id}: {e.message}")
            raise

        credited = Decimal("0")
        provider_reference = None
        top_up_amount = order.top_up_amount or Decimal("0")
        if top_up_amount > 0:
            try:
                result = self.issuer.top_up_card(provider_card_id, top_up_amount)
                credited = result['final_amount']
                provider_reference = result.get('reference_id')
            except CardIssuerError as e:
                # 卡已创建，首充失败不影响订单完成，需人工补充
                logger.error(
                    f"[create_card] order {order.id}: card {provider_card_id} created but initial "
                    f"top-up of {top_up_amount} failed: {e.message}"
                )

        card = Card(
            user_id=order.user_id,
            provider_card_id=provider_card_id,
            title=order.card_title,
            status=CardStatusEnum.active,
            balance=credited,
        )
        db.session.add(card)
        db.session.flush()

        db.session.add(CardTransaction(
            card_id=card.id,
            user_id=order.user_id,
            order_id=order.id,
            type=OrderKindEnum.card_creation.value,
            amount=-Decimal(str(order.amount_fiat)),
            credited_amount=credited,
            reference=order.observed_tx_id,
            provider_reference=provider_reference,
            description=f"Card creation: {order.card_title}",
        ))
        logger.info(f"[create_card] order {order.id}: card {card.id} ({provider_card_id}) balance {credited}")
        return FulfillmentResult(card_id=card.id, credited_amount=credited)

    def _top_up(self, order):
        card = db.session.get(Card, order.target_card_id) if order.target_card_id else None
        if not card:
            raise FulfillmentError(f"Target card {order.target_card_id} not found")

        try:
            result = self.issuer.top_up_card(card.provider_card_id, order.top_up_amount)
        except CardIssuerError as e:
            logger.error(f"[top_up] order {order.id}: {e.message}")
            raise

        credited = result['final_amount']
        card.balance = (card.balance or Decimal("0")) + credited
        db.session.add(CardTransaction(
            card_id=card.id,
            user_id=order.user_id,
            order_id=order.id,
            type=OrderKindEnum.card_topup.value,
            amount=-Decimal(str(order.amount_fiat)),
            credited_amount=credited,
            reference=order.observed_tx_id,
            provider_reference=result.get('reference_id'),
            description=f"Card top-up: ${order.top_up_amount}",
        ))
        logger.info(f"[top_up] order {order.id}: card {card.id} credited {credited}")
        return FulfillmentResult(card_id=card.id, credited_amount=credited)
