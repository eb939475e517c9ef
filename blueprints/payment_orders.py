from datetime import timedelta
from flask import Blueprint, request, jsonify, current_app, g
from sqlalchemy.exc import SQLAlchemyError
from models import PaymentOrder, OrderStatusEnum, utcnow
from utils.auth_utils import jwt_required, admin_key_required
from utils.payment_errors import (
    InvalidOrderRequest, OrderConflictError, OrderNotFoundError, PaymentVerificationError,
    TransactionAlreadyUsedError, TransientError,
)

payment_orders_bp = Blueprint('payment_orders', __name__, url_prefix='/api/payment-orders')

STUCK_DISPATCH_MINUTES = 10


def _reconciler():
    return current_app.extensions['reconciler']


def _order_response(order, status=200, **extra):
    body = {'success': True, 'order': order.to_dict(), 'message': order.status_message}
    body.update(extra)
    return jsonify(body), status


def _owned_order(order_id):
    order = PaymentOrder.query.filter_by(id=order_id).first()
    if not order or order.user_id != g.current_user_id:
        return None
    return order


@payment_orders_bp.route('', methods=['POST'])
@jwt_required
def create_payment_order():
    data = request.get_json(silent=True) or {}
    kind = data.get('type')
    payload = {
        'card_title': data.get('cardTitle'),
        'email': data.get('email'),
        'phone': data.get('phone'),
        'card_id': data.get('cardId'),
        'top_up_amount': data.get('topUpAmount', data.get('amount')),
    }

    try:
        order = _reconciler().create_order(g.current_user_id, kind, payload)
    except InvalidOrderRequest as e:
        return jsonify({'success': False, 'message': e.message}), 400
    except OrderConflictError as e:
        return jsonify({'success': False, 'message': e.message, 'existing_order_id': e.existing_order_id}), 409
    except TransientError as e:
        current_app.logger.warning(f"create_payment_order: {e.message}")
        return jsonify({'success': False, 'message': f"{e.message}, please try again"}), 503
    except SQLAlchemyError as e:
        current_app.logger.error(f"create_payment_order database error: {e}")
        return jsonify({'success': False, 'message': 'Database error'}), 500

    return _order_response(order, 201)


@payment_orders_bp.route('', methods=['GET'])
@jwt_required
def list_payment_orders():
    query = PaymentOrder.query.filter_by(user_id=g.current_user_id)
    status = request.args.get('status')
    if status:
        try:
            query = query.filter(PaymentOrder.status == OrderStatusEnum(status))
        except ValueError:
            return jsonify({'success': False, 'message': 'Invalid status'}), 400

    orders = query.order_by(PaymentOrder.created_at.desc()).limit(20).all()
    return jsonify({'success': True, 'orders': [o.to_dict() for o in orders]})


@payment_orders_bp.route('/<order_id>', methods=['GET'])
@jwt_required
def poll_payment_order(order_id):
    if not _owned_order(order_id):
        return jsonify({'success': False, 'message': 'Order not found'}), 404

    try:
        order = _reconciler().poll_order(order_id)
    except TransientError as e:
        # 状态不变，返回当前订单，前端继续轮询
        current_app.logger.warning(f"poll_payment_order {order_id}: {e.message}")
        order = PaymentOrder.query.filter_by(id=order_id).first()
        return _order_response(order, 503, success=False, message=f"{e.message}, please try again")
    except OrderNotFoundError:
        return jsonify({'success': False, 'message': 'Order not found'}), 404

    return _order_response(order)


@payment_orders_bp.route('/<order_id>/transaction', methods=['POST'])
@jwt_required
def submit_transaction(order_id):
    data = request.get_json(silent=True) or {}
    tx_signature = data.get('txSignature')
    if not tx_signature:
        return jsonify({'success': False, 'message': 'Missing transaction signature'}), 400
    if not _owned_order(order_id):
        return jsonify({'success': False, 'message': 'Order not found'}), 404

    try:
        order = _reconciler().submit_transaction(order_id, tx_signature)
    except PaymentVerificationError as e:
        return jsonify({'success': False, 'message': e.message}), 400
    except TransactionAlreadyUsedError as e:
        return jsonify({'success': False, 'message': e.message}), 409
    except InvalidOrderRequest as e:
        return jsonify({'success': False, 'message': e.message}), 400
    except TransientError as e:
        current_app.logger.warning(f"submit_transaction {order_id}: {e.message}")
        return jsonify({'success': False, 'message': f"{e.message}, please try again"}), 503

    return _order_response(order)


@payment_orders_bp.route('/admin/failed', methods=['GET'])
@admin_key_required
def list_failed_orders():
    """收到付款但未能完成的订单，以及发卡中断的订单，供人工处理"""
    limit = request.args.get('limit', default=100, type=int)
    failed = PaymentOrder.query.filter_by(status=OrderStatusEnum.failed) \
        .order_by(PaymentOrder.updated_at.desc()) \
        .limit(limit).all()

    stuck_before = utcnow() - timedelta(minutes=STUCK_DISPATCH_MINUTES)
    stuck = PaymentOrder.query.filter(
        PaymentOrder.status == OrderStatusEnum.processing,
        PaymentOrder.dispatch_claimed_at.isnot(None),
        PaymentOrder.dispatch_claimed_at < stuck_before,
    ).order_by(PaymentOrder.dispatch_claimed_at.asc()).limit(limit).all()

    def _admin_view(order):
        data = order.to_dict()
        data['user_id'] = order.user_id
        data['failure_detail'] = order.failure_detail
        data['token_balance_observed'] = str(order.token_balance_observed) \
            if order.token_balance_observed is not None else None
        return data

    return jsonify({
        'success': True,
        'failed': [_admin_view(o) for o in failed],
        'stuck': [_admin_view(o) for o in stuck],
    })
