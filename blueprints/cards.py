from flask import Blueprint, jsonify, current_app, g
from sqlalchemy.exc import SQLAlchemyError
from extensions import db
from models import Card, CardTransaction, CardStatusEnum
from utils.auth_utils import jwt_required
from utils.payment_errors import CardIssuerError

cards_bp = Blueprint('cards', __name__, url_prefix='/api/cards')


def _owned_card(card_id):
    card = Card.query.filter_by(id=card_id).first()
    if not card or card.user_id != g.current_user_id:
        return None
    return card


@cards_bp.route('', methods=['GET'])
@jwt_required
def list_cards():
    cards = Card.query.filter_by(user_id=g.current_user_id).order_by(Card.created_at.desc()).all()
    return jsonify({'success': True, 'cards': [c.to_dict() for c in cards]})


@cards_bp.route('/<card_id>/transactions', methods=['GET'])
@jwt_required
def card_transactions(card_id):
    card = _owned_card(card_id)
    if not card:
        return jsonify({'success': False, 'message': 'Card not found'}), 404

    records = card.transactions.order_by(CardTransaction.created_at.desc()).limit(50).all()
    return jsonify({'success': True, 'transactions': [r.to_dict() for r in records]})


def _set_frozen(card_id, frozen):
    card = _owned_card(card_id)
    if not card:
        return jsonify({'success': False, 'message': 'Card not found'}), 404

    target = CardStatusEnum.frozen if frozen else CardStatusEnum.active
    if card.status == target:
        return jsonify({'success': True, 'card': card.to_dict(), 'message': f'Card already {target.value}'})
    if card.status == CardStatusEnum.inactive:
        return jsonify({'success': False, 'message': 'Card is inactive'}), 400

    issuer = current_app.extensions['card_issuer']
    try:
        if frozen:
            issuer.freeze_card(card.provider_card_id)
        else:
            issuer.unfreeze_card(card.provider_card_id)
    except CardIssuerError as e:
        current_app.logger.error(f"freeze/unfreeze card {card_id} failed: {e.message}")
        return jsonify({'success': False, 'message': e.message}), 502

    try:
        card.status = target
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        current_app.logger.error(f"update card {card_id} status failed: {e}")
        return jsonify({'success': False, 'message': 'Database error'}), 500

    return jsonify({'success': True, 'card': card.to_dict()})


@cards_bp.route('/<card_id>/freeze', methods=['POST'])
@jwt_required
def freeze_card(card_id):
    return _set_frozen(card_id, True)


@cards_bp.route('/<card_id>/unfreeze', methods=['POST'])
@jwt_required
def unfreeze_card(card_id):
    return _set_frozen(card_id, False)
