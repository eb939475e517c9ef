# utils/order_reconciler.py
"""
支付订单对账状态机

pending -> processing -> fulfilled
pending -> expired
pending / processing -> failed

三种触发方式（前端轮询、手动提交交易签名、Helius webhook）以及定时任务
最终都走同一套匹配 / 校验 / 发卡流程，可以任意重复、并发调用。
"""
from collections import namedtuple
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from email.utils import parseaddr
from sqlalchemy.exc import IntegrityError
from extensions import db
from models import (
    PaymentOrder, Card, CardStatusEnum, OrderKindEnum, OrderStatusEnum, LIVE_STATUSES,
    FAILURE_TOKEN_GATE, FAILURE_FULFILLMENT, utcnow, live_key_for,
)
from utils import order_store
from utils.chain_observer import FAILED, LAMPORT
from utils.log_utils import get_logger
from utils.payment_errors import (
    FulfillmentError, InvalidOrderRequest, OrderConflictError, OrderNotFoundError,
    AmountTooLow, PaymentVerificationError, TransactionAlreadyUsedError, TransferPredatesOrder, TransientError,
)

logger = get_logger("order_reconciler")

CENT = Decimal("0.01")

CONFLICT_MESSAGES = {
    OrderKindEnum.card_creation: "You already have a card creation in progress",
    OrderKindEnum.card_topup: "A top-up for this card is already in progress",
    OrderKindEnum.token_verification: "Token verification already in progress",
}

InboundTransfer = namedtuple(
    "InboundTransfer",
    ["tx_id", "destination", "amount_crypto", "sender_address", "observed_at_epoch"],
)


def to_epoch(value):
    return value.replace(tzinfo=timezone.utc).timestamp()


def from_epoch(epoch):
    return datetime.fromtimestamp(epoch, tz=timezone.utc).replace(tzinfo=None)


def is_recent_enough(observed_at_epoch, created_at, lookback_seconds):
    """交易时间不能早于订单创建时间 lookback_seconds 秒以上；没有区块时间的视为刚刚发生"""
    if observed_at_epoch is None:
        return True
    return observed_at_epoch >= to_epoch(created_at) - lookback_seconds


def select_candidates(order, transfers, used_tx_ids, settings):
    """
    从最近的转入交易中挑出可以匹配该订单的候选，按优先级排序（最新的在前）
    规则：未失败、金额在容差内、不早于订单创建前 lookback 秒、未被其他订单使用
    """
    expected = Decimal(str(order.amount_crypto))
    # 稳定排序：时间相同的保持 RPC 返回顺序
    ordered = sorted(
        transfers,
        key=lambda t: t.observed_at_epoch if t.observed_at_epoch is not None else float('inf'),
        reverse=True,
    )
    candidates = []
    for transfer in ordered:
        if transfer.confirmation_state == FAILED:
            continue
        if transfer.tx_id in used_tx_ids:
            continue
        if not settings.within_tolerance(transfer.amount_crypto, expected):
            continue
        if not is_recent_enough(transfer.observed_at_epoch, order.created_at, settings.match_lookback_seconds):
            continue
        candidates.append(transfer)
    return candidates


def _parse_amount(value, field):
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidOrderRequest(f"Invalid {field}")
    if not amount.is_finite():
        raise InvalidOrderRequest(f"Invalid {field}")
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


class OrderReconciler:

    def __init__(self, settings, chain, token_gate, price_oracle, executor, clock=None):
        self.settings = settings
        self.chain = chain
        self.token_gate = token_gate
        self.price_oracle = price_oracle
        self.executor = executor
        self.clock = clock or utcnow

    # ================= 创建订单 =================
    def create_order(self, user_id, kind, payload=None):
        payload = payload or {}
        if not user_id:
            raise InvalidOrderRequest("Missing user")
        try:
            kind = kind if isinstance(kind, OrderKindEnum) else OrderKindEnum(kind)
        except ValueError:
            raise InvalidOrderRequest(f"Unknown order type: {kind}")

        try:
            if kind == OrderKindEnum.card_creation:
                fields = self._prepare_card_creation(user_id, payload)
            elif kind == OrderKindEnum.card_topup:
                fields = self._prepare_top_up(user_id, payload)
            else:
                fields = self._prepare_token_verification(user_id)

            # 汇率获取失败直接抛出，不落库
            rate = self.price_oracle.current_rate()
            now = self.clock()
            amount_fiat = fields.pop('amount_fiat')
            order = PaymentOrder(
                kind=kind,
                user_id=user_id,
                status=OrderStatusEnum.pending,
                amount_fiat=amount_fiat,
                amount_crypto=(amount_fiat / rate).quantize(LAMPORT, rounding=ROUND_HALF_UP),
                exchange_rate_at_creation=rate,
                expected_receiving_address=self.settings.deposit_address,
                created_at=now,
                expires_at=now + timedelta(minutes=self.settings.order_ttl_minutes),
                **fields
            )
            db.session.add(order)
            db.session.commit()
        except IntegrityError:
            # 并发创建：另一个请求先写入了同一个 live_key
            db.session.rollback()
            existing = self._live_order(fields['live_key'])
            if existing is None:
                raise
            raise OrderConflictError(CONFLICT_MESSAGES[kind], existing_order_id=existing.id)
        except Exception:
            db.session.rollback()
            raise

        logger.info(
            f"[create_order] {order.id} {kind.value} user={user_id} "
            f"${order.amount_fiat} = {order.amount_crypto} SOL @ {rate}"
        )
        return order

    def _live_order(self, live_key):
        existing = PaymentOrder.query.filter_by(live_key=live_key).first()
        # 已超时但还没被定时任务处理的订单不再占位
        if existing and self._expire_if_overdue(existing):
            return None
        return existing

    def _prepare_card_creation(self, user_id, payload):
        title = (payload.get('card_title') or '').strip()
        email = (payload.get('email') or '').strip()
        phone = (payload.get('phone') or '').strip()
        if not title or not email or not phone:
            raise InvalidOrderRequest("Card title, email and phone number are required")
        if '@' not in parseaddr(email)[1]:
            raise InvalidOrderRequest("Invalid email address")

        top_up = payload.get('top_up_amount')
        top_up = self.settings.default_initial_top_up if top_up in (None, '') else _parse_amount(top_up, 'top-up amount')
        if top_up < self.settings.min_top_up or top_up > self.settings.max_top_up:
            raise InvalidOrderRequest(
                f"Initial top-up must be between ${self.settings.min_top_up} and ${self.settings.max_top_up}"
            )

        active_card = Card.query.filter(
            Card.user_id == user_id,
            Card.status == CardStatusEnum.active,
        ).with_for_update().first()
        if active_card:
            raise OrderConflictError("You already have an active card")
        live_key = live_key_for(OrderKindEnum.card_creation, user_id)
        existing = self._live_order(live_key)
        if existing:
            raise OrderConflictError(CONFLICT_MESSAGES[OrderKindEnum.card_creation], existing_order_id=existing.id)

        fee = self.settings.top_up_fee(top_up)
        card_fee = self.settings.card_creation_fee
        return {
            'amount_fiat': card_fee + top_up + fee,
            'card_fee': card_fee,
            'top_up_amount': top_up,
            'top_up_fee': fee,
            'card_title': title,
            'contact_email': email,
            'contact_phone': phone,
            'live_key': live_key,
        }

    def _prepare_top_up(self, user_id, payload):
        card_id = payload.get('card_id')
        if not card_id or payload.get('top_up_amount') in (None, ''):
            raise InvalidOrderRequest("Card and amount are required")
        amount = _parse_amount(payload.get('top_up_amount'), 'amount')
        if amount < self.settings.min_top_up:
            raise InvalidOrderRequest(f"Minimum top-up amount is ${self.settings.min_top_up}")
        if amount > self.settings.max_top_up:
            raise InvalidOrderRequest(f"Maximum top-up amount is ${self.settings.max_top_up}")

        card = Card.query.filter_by(id=card_id).with_for_update().first()
        if not card or card.user_id != user_id:
            raise InvalidOrderRequest("Card not found")
        if card.status != CardStatusEnum.active:
            raise InvalidOrderRequest("Card is not active")

        live_key = live_key_for(OrderKindEnum.card_topup, user_id, card.id)
        existing = self._live_order(live_key)
        if existing:
            raise OrderConflictError(CONFLICT_MESSAGES[OrderKindEnum.card_topup], existing_order_id=existing.id)

        fee = self.settings.top_up_fee(amount)
        return {
            'amount_fiat': amount + fee,
            'top_up_amount': amount,
            'top_up_fee': fee,
            'target_card_id': card.id,
            'live_key': live_key,
        }

    def _prepare_token_verification(self, user_id):
        live_key = live_key_for(OrderKindEnum.token_verification, user_id)
        existing = self._live_order(live_key)
        if existing:
            raise OrderConflictError(CONFLICT_MESSAGES[OrderKindEnum.token_verification], existing_order_id=existing.id)
        if Card.query.filter_by(user_id=user_id, status=CardStatusEnum.active).first():
            raise OrderConflictError("You already have an active card")

        memo = f"verify_{user_id}_{int(to_epoch(self.clock()) * 1000)}"
        return {
            'amount_fiat': self.settings.token_verification_fee,
            'verification_memo': memo,
            'live_key': live_key,
        }

    # ================= 对外操作 =================
    def poll_order(self, order_id):
        """前端轮询：过期检查 -> 扫描链上交易 -> 发卡"""
        order = self._load(order_id)
        if order.status == OrderStatusEnum.pending:
            if self._expire_if_overdue(order):
                return self._load(order_id)
            self.try_match(order)
        self._dispatch_if_processing(order_id)
        return self._load(order_id)

    def submit_transaction(self, order_id, tx_id):
        """用户手动提交交易签名"""
        tx_id = (tx_id or '').strip()
        if not tx_id:
            raise InvalidOrderRequest("Missing transaction signature")

        order = self._load(order_id)
        if order.observed_tx_id == tx_id:
            self._dispatch_if_processing(order_id)
            return self._load(order_id)
        if order.status != OrderStatusEnum.pending:
            return order
        if self._expire_if_overdue(order):
            return self._load(order_id)

        if order_store.tx_id_in_use(tx_id):
            return self._already_attached(order_id, tx_id)

        expected = Decimal(str(order.amount_crypto))
        result = self.chain.verify_transfer(
            tx_id, order.expected_receiving_address, self.settings.lower_bound(expected)
        )
        if not is_recent_enough(result.observed_at_epoch, order.created_at, self.settings.match_lookback_seconds):
            raise TransferPredatesOrder()

        outcome = self._attach(order, tx_id, result.amount, result.sender_address, result.observed_at_epoch)
        if outcome == order_store.TX_USED:
            return self._already_attached(order_id, tx_id)

        self._dispatch_if_processing(order_id)
        return self._load(order_id)

    def _already_attached(self, order_id, tx_id):
        """交易已被占用：如果正是本订单（并发的另一个触发刚挂上）按重复提交处理，否则报错"""
        order = self._load(order_id)
        if order.observed_tx_id != tx_id:
            raise TransactionAlreadyUsedError()
        self._dispatch_if_processing(order_id)
        return self._load(order_id)

    def on_inbound_transfer(self, event):
        """
        webhook 推送的转入交易：在同一收款地址的 pending 订单中找金额最接近的一个
        返回匹配到的订单，没有匹配返回 None
        """
        if isinstance(event, dict):
            event = InboundTransfer(**event)
        amount = Decimal(str(event.amount_crypto))

        if order_store.tx_id_in_use(event.tx_id):
            logger.info(f"[on_inbound_transfer] tx {event.tx_id} already matched, ignored")
            return None

        candidates = []
        for order in order_store.pending_orders_for_address(event.destination):
            if self._expire_if_overdue(order):
                continue
            expected = Decimal(str(order.amount_crypto))
            if not self.settings.within_tolerance(amount, expected):
                continue
            if not is_recent_enough(event.observed_at_epoch, order.created_at, self.settings.match_lookback_seconds):
                continue
            candidates.append((abs(amount - expected), order.created_at, order.id))

        if not candidates:
            logger.info(f"[on_inbound_transfer] no pending order matches {amount} SOL from tx {event.tx_id}")
            return None
        candidates.sort()

        sender = event.sender_address
        observed_at_epoch = event.observed_at_epoch
        for _, _, order_id in candidates:
            order = self._load(order_id)
            if order.status != OrderStatusEnum.pending:
                continue

            if self.settings.webhook_verify_onchain:
                expected = Decimal(str(order.amount_crypto))
                try:
                    result = self.chain.verify_transfer(
                        event.tx_id, event.destination, self.settings.lower_bound(expected),
                    )
                except AmountTooLow as e:
                    # 下限因订单而异，换下一个候选
                    logger.info(f"[on_inbound_transfer] tx {event.tx_id} too small for order {order_id}: {e.message}")
                    continue
                except PaymentVerificationError as e:
                    logger.warning(f"[on_inbound_transfer] tx {event.tx_id} failed on-chain verification: {e.message}")
                    return None

                # 以链上数据为准，重新检查金额和时间
                if not self.settings.within_tolerance(result.amount, expected):
                    logger.info(f"[on_inbound_transfer] on-chain amount {result.amount} out of range for order {order_id}")
                    continue
                if not is_recent_enough(result.observed_at_epoch, order.created_at, self.settings.match_lookback_seconds):
                    logger.info(f"[on_inbound_transfer] tx {event.tx_id} predates order {order_id}")
                    continue
                amount, sender, observed_at_epoch = result.amount, result.sender_address, result.observed_at_epoch

            outcome = self._attach(order, event.tx_id, amount, sender, observed_at_epoch)
            if outcome == order_store.TX_USED:
                return None
            if outcome == order_store.ATTACHED:
                self._dispatch_if_processing(order_id)
                return self._load(order_id)

        return None

    def expire_stale_orders(self):
        now = self.clock()
        expired = 0
        for order_id in order_store.overdue_order_ids(now):
            if order_store.expire(order_id, now):
                expired += 1
        if expired:
            logger.info(f"[expire_stale_orders] expired {expired} orders")
        return expired

    def reconcile_open_orders(self, limit=50):
        """定时任务：对所有未完结订单执行一次轮询，暂时性错误只记录日志"""
        processed = 0
        for order_id in order_store.open_order_ids(limit):
            try:
                self.poll_order(order_id)
                processed += 1
            except TransientError as e:
                logger.warning(f"[reconcile_open_orders] order {order_id} skipped: {e.message}")
        return processed

    # ================= 匹配 =================
    def try_match(self, order):
        """扫描收款地址最近的转入交易，为 pending 订单挂上链上凭证"""
        transfers = self.chain.list_incoming_transfers(
            order.expected_receiving_address, limit=self.settings.match_scan_limit
        )
        used = order_store.used_tx_ids([t.tx_id for t in transfers])

        for transfer in select_candidates(order, transfers, used, self.settings):
            outcome = self._attach(
                order, transfer.tx_id, transfer.amount_crypto,
                transfer.sender_address, transfer.observed_at_epoch,
            )
            if outcome == order_store.ATTACHED:
                return True
            if outcome == order_store.LOST:
                # 其他触发已经处理了这个订单
                return False
            # TX_USED：被其他订单抢先使用，继续下一个候选
        return False

    def _attach(self, order, tx_id, amount, sender, observed_at_epoch):
        observed_at = from_epoch(observed_at_epoch) if observed_at_epoch is not None else self.clock()
        outcome = order_store.attach_evidence(order.id, tx_id, amount, sender, observed_at)
        if outcome == order_store.ATTACHED:
            logger.info(f"[attach] order {order.id} matched tx {tx_id} ({amount} SOL from {sender})")
        return outcome

    # ================= 发卡 =================
    def _dispatch_if_processing(self, order_id):
        order = self._load(order_id)
        if order.status != OrderStatusEnum.processing or order.dispatch_token:
            return
        token = order_store.claim_dispatch(order_id, self.clock())
        if not token:
            return
        self._dispatch(order_id, token)

    def _dispatch(self, order_id, token):
        order = self._load(order_id)

        if order.kind in (OrderKindEnum.card_creation, OrderKindEnum.token_verification):
            try:
                balance = self.token_gate.check_balance(order.sender_address)
            except TransientError:
                order_store.release_dispatch(order_id, token)
                raise
            order_store.record_gate_result(order_id, token, balance.passes, balance.balance)
            if not balance.passes:
                logger.warning(
                    f"[dispatch] order {order_id}: token gate failed for {order.sender_address} "
                    f"({balance.balance} < {balance.required})"
                )
                order_store.finish_dispatch(order_id, token, {
                    PaymentOrder.status: OrderStatusEnum.failed,
                    PaymentOrder.failure_reason: FAILURE_TOKEN_GATE,
                })
                return
            order = self._load(order_id)

        try:
            result = self.executor.execute(order)
        except FulfillmentError as e:
            db.session.rollback()
            logger.error(f"[dispatch] order {order_id}: fulfillment failed: {e.message}")
            order_store.finish_dispatch(order_id, token, {
                PaymentOrder.status: OrderStatusEnum.failed,
                PaymentOrder.failure_reason: FAILURE_FULFILLMENT,
                PaymentOrder.failure_detail: e.message,
            })
            return

        done = order_store.finish_dispatch(order_id, token, {
            PaymentOrder.status: OrderStatusEnum.fulfilled,
            PaymentOrder.fulfilled_at: self.clock(),
            PaymentOrder.fulfilled_card_id: result.card_id,
        })
        if done:
            logger.info(f"[dispatch] order {order_id} fulfilled (card {result.card_id})")

    # ================= 工具 =================
    def _load(self, order_id):
        order = order_store.get_order(order_id)
        if not order:
            raise OrderNotFoundError()
        return order

    def _expire_if_overdue(self, order):
        now = self.clock()
        if order.status == OrderStatusEnum.pending and now > order.expires_at:
            if order_store.expire(order.id, now):
                logger.info(f"[expire] order {order.id} expired")
            return True
        return False
