import hmac
from flask import Blueprint, request, jsonify, current_app
from utils.chain_observer import lamports_to_sol
from utils.order_reconciler import InboundTransfer
from utils.payment_errors import TransientError

webhooks_bp = Blueprint('webhooks', __name__, url_prefix='/api/webhooks')


def _extract_transfers(payload, deposit_address):
    """Helius enhanced transactions -> 转入收款地址的 InboundTransfer 列表"""
    if isinstance(payload, dict):
        transactions = payload.get('transactions') or []
    elif isinstance(payload, list):
        transactions = payload
    else:
        transactions = []

    transfers = []
    for tx in transactions:
        if not isinstance(tx, dict) or not tx.get('signature'):
            continue
        if tx.get('transactionError'):
            continue
        for native in tx.get('nativeTransfers') or []:
            if not isinstance(native, dict) or native.get('toUserAccount') != deposit_address:
                continue
            try:
                amount = lamports_to_sol(native.get('amount') or 0)
            except (TypeError, ValueError):
                continue
            if amount <= 0:
                continue
            transfers.append(InboundTransfer(
                tx_id=tx['signature'],
                destination=deposit_address,
                amount_crypto=amount,
                sender_address=native.get('fromUserAccount'),
                observed_at_epoch=tx.get('timestamp'),
            ))
    return transfers


@webhooks_bp.route('/helius', methods=['POST'])
def helius_webhook():
    expected_secret = current_app.config.get('HELIUS_WEBHOOK_SECRET')
    provided = request.headers.get('x-helius-secret', '')
    if not expected_secret:
        current_app.logger.error("HELIUS_WEBHOOK_SECRET is not configured, rejecting webhook")
        return jsonify({'success': False, 'message': 'Unauthorized'}), 401
    if not hmac.compare_digest(provided, expected_secret):
        current_app.logger.warning("Invalid Helius webhook secret")
        return jsonify({'success': False, 'message': 'Unauthorized'}), 401

    payload = request.get_json(silent=True)
    if payload is None:
        return jsonify({'success': False, 'message': 'Invalid payload'}), 400

    reconciler = current_app.extensions['reconciler']
    transfers = _extract_transfers(payload, reconciler.settings.deposit_address)
    current_app.logger.info(f"Helius webhook: {len(transfers)} incoming transfers")

    matched = []
    try:
        for transfer in transfers:
            order = reconciler.on_inbound_transfer(transfer)
            if order is not None:
                matched.append(order.id)
    except TransientError as e:
        # 返回 5xx 让 Helius 重试，已处理的交易重复推送时会被忽略
        current_app.logger.warning(f"Helius webhook deferred: {e.message}")
        return jsonify({'success': False, 'message': e.message, 'matched': matched}), 503

    return jsonify({'success': True, 'matched': matched})
