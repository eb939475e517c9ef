# utils/order_store.py
"""
订单存储的条件更新原语

并发控制只依赖两点：
1. UPDATE ... WHERE id = ? AND status IN (...) 的影响行数
2. payment_orders.observed_tx_id 的唯一约束
   (payment_orders.live_key 的唯一约束同理，防止并发创建重复订单)
每个原语自己 commit，返回是否“赢得”本次状态变更
"""
import uuid
from sqlalchemy.exc import IntegrityError
from extensions import db
from models import PaymentOrder, OrderStatusEnum, LIVE_STATUSES, TERMINAL_STATUSES
from utils.log_utils import get_logger

logger = get_logger("order_store")

ATTACHED = "attached"
TX_USED = "tx_used"
LOST = "lost"


def get_order(order_id, lock=False):
    # 其他触发可能已经提交了新状态，不使用 identity map 里的旧值
    query = PaymentOrder.query.filter_by(id=order_id).populate_existing()
    if lock:
        query = query.with_for_update()
    return query.first()


def _conditional_update(criteria, changes):
    rows = PaymentOrder.query.filter(*criteria).update(changes, synchronize_session=False)
    db.session.commit()
    return rows == 1


def transition(order_id, from_statuses, changes):
    """仅当订单处于 from_statuses 之一时写入 changes"""
    if isinstance(from_statuses, OrderStatusEnum):
        from_statuses = (from_statuses,)
    if changes.get(PaymentOrder.status) in TERMINAL_STATUSES:
        changes = dict(changes)
        changes[PaymentOrder.live_key] = None
    try:
        return _conditional_update(
            (PaymentOrder.id == order_id, PaymentOrder.status.in_(list(from_statuses))),
            changes,
        )
    except Exception:
        db.session.rollback()
        raise


def expire(order_id, now):
    """pending 且已过期 -> expired，重复调用无副作用"""
    try:
        return _conditional_update(
            (
                PaymentOrder.id == order_id,
                PaymentOrder.status == OrderStatusEnum.pending,
                PaymentOrder.expires_at < now,
            ),
            {PaymentOrder.status: OrderStatusEnum.expired, PaymentOrder.live_key: None},
        )
    except Exception:
        db.session.rollback()
        raise


def attach_evidence(order_id, tx_id, amount, sender_address, observed_at):
    """
    写入链上凭证并 pending -> processing
    返回 ATTACHED / TX_USED（交易已被其他订单占用）/ LOST（订单已不是 pending）
    """
    try:
        won = _conditional_update(
            (
                PaymentOrder.id == order_id,
                PaymentOrder.status == OrderStatusEnum.pending,
                PaymentOrder.observed_tx_id.is_(None),
            ),
            {
                PaymentOrder.status: OrderStatusEnum.processing,
                PaymentOrder.observed_tx_id: tx_id,
                PaymentOrder.observed_amount_crypto: amount,
                PaymentOrder.sender_address: sender_address,
                PaymentOrder.observed_at: observed_at,
            },
        )
    except IntegrityError:
        db.session.rollback()
        logger.info(f"[attach_evidence] tx {tx_id} already attached to another order")
        return TX_USED
    except Exception:
        db.session.rollback()
        raise
    return ATTACHED if won else LOST


def claim_dispatch(order_id, now):
    """抢占发卡权，只有返回 token 的调用方可以执行后续发卡"""
    token = str(uuid.uuid4())
    try:
        won = _conditional_update(
            (
                PaymentOrder.id == order_id,
                PaymentOrder.status == OrderStatusEnum.processing,
                PaymentOrder.dispatch_token.is_(None),
            ),
            {PaymentOrder.dispatch_token: token, PaymentOrder.dispatch_claimed_at: now},
        )
    except Exception:
        db.session.rollback()
        raise
    return token if won else None


def release_dispatch(order_id, token):
    """暂时性错误后释放发卡权，订单保持 processing 等待下次触发"""
    try:
        return _conditional_update(
            (
                PaymentOrder.id == order_id,
                PaymentOrder.status == OrderStatusEnum.processing,
                PaymentOrder.dispatch_token == token,
            ),
            {PaymentOrder.dispatch_token: None, PaymentOrder.dispatch_claimed_at: None},
        )
    except Exception:
        db.session.rollback()
        raise


def finish_dispatch(order_id, token, changes):
    """
    持有发卡权时写入终态；session 里待写入的 Card / CardTransaction 与状态变更一起提交
    未持有发卡权则整体回滚
    """
    changes = dict(changes)
    changes[PaymentOrder.live_key] = None
    try:
        db.session.flush()
        rows = PaymentOrder.query.filter(
            PaymentOrder.id == order_id,
            PaymentOrder.status == OrderStatusEnum.processing,
            PaymentOrder.dispatch_token == token,
        ).update(changes, synchronize_session=False)
        if rows != 1:
            db.session.rollback()
            logger.warning(f"[finish_dispatch] order {order_id} no longer held by token {token}")
            return False
        db.session.commit()
        return True
    except Exception:
        db.session.rollback()
        raise


def record_gate_result(order_id, token, passed, balance):
    try:
        return _conditional_update(
            (
                PaymentOrder.id == order_id,
                PaymentOrder.status == OrderStatusEnum.processing,
                PaymentOrder.dispatch_token == token,
            ),
            {
                PaymentOrder.token_gate_checked: True,
                PaymentOrder.token_gate_passed: passed,
                PaymentOrder.token_balance_observed: balance,
            },
        )
    except Exception:
        db.session.rollback()
        raise


# ----------------- 查询 -----------------
def tx_id_in_use(tx_id):
    return db.session.query(PaymentOrder.id).filter(PaymentOrder.observed_tx_id == tx_id).first() is not None


def used_tx_ids(tx_ids):
    if not tx_ids:
        return set()
    rows = db.session.query(PaymentOrder.observed_tx_id).filter(PaymentOrder.observed_tx_id.in_(list(tx_ids))).all()
    return {row[0] for row in rows}


def pending_orders_for_address(address):
    return PaymentOrder.query.filter(
        PaymentOrder.expected_receiving_address == address,
        PaymentOrder.status == OrderStatusEnum.pending,
    ).order_by(PaymentOrder.created_at.asc()).all()


def overdue_order_ids(now):
    rows = db.session.query(PaymentOrder.id).filter(
        PaymentOrder.status == OrderStatusEnum.pending,
        PaymentOrder.expires_at < now,
    ).all()
    return [row[0] for row in rows]


def open_order_ids(limit=50):
    rows = db.session.query(PaymentOrder.id).filter(
        PaymentOrder.status.in_(list(LIVE_STATUSES)),
    ).order_by(PaymentOrder.created_at.asc()).limit(limit).all()
    return [row[0] for row in rows]
