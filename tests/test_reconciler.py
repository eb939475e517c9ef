from dataclasses import replace
from decimal import Decimal

import pytest

from extensions import db
from models import (
    PaymentOrder, Card, CardTransaction, OrderStatusEnum, FAILURE_TOKEN_GATE, FAILURE_FULFILLMENT,
)
from utils.chain_observer import FAILED, UNCONFIRMED
from utils.order_reconciler import select_candidates, InboundTransfer
from utils.payment_errors import (
    AmountTooLow, CardIssuerError, ChainUnavailableError, TransactionAlreadyUsedError,
    TransferPredatesOrder,
)
from tests.conftest import DEPOSIT, WALLET, OTHER_WALLET

CARD_PAYLOAD = {'card_title': 'Travel', 'email': 'a@example.com', 'phone': '+15550001111'}


@pytest.fixture
def card_order(reconciler):
    return reconciler.create_order("user-1", "card_creation", dict(CARD_PAYLOAD))


def _reload(order_id):
    db.session.expire_all()
    return db.session.get(PaymentOrder, order_id)


# ----------------- 轮询匹配 -----------------
def test_underpayment_within_tolerance_creates_card(reconciler, card_order, chain, token_gate, issuer, clock):
    chain.add_transfer("sig-1", "0.44", sender=WALLET, epoch=clock.epoch(10))

    order = reconciler.poll_order(card_order.id)

    assert order.status == OrderStatusEnum.fulfilled
    assert order.observed_tx_id == "sig-1"
    assert order.observed_amount_crypto == Decimal("0.44")
    assert order.sender_address == WALLET
    assert order.token_gate_checked is True
    assert order.token_gate_passed is True
    assert token_gate.calls == [WALLET]
    assert len(issuer.created) == 1
    assert issuer.top_ups == [("zc_1", Decimal("15.00"))]

    card = db.session.get(Card, order.fulfilled_card_id)
    assert card.provider_card_id == "zc_1"
    assert card.balance == Decimal("15.00")
    assert CardTransaction.query.filter_by(order_id=order.id).count() == 1


def test_no_transfer_keeps_order_pending(reconciler, card_order, issuer):
    order = reconciler.poll_order(card_order.id)
    assert order.status == OrderStatusEnum.pending
    assert issuer.created == []


@pytest.mark.parametrize("amount, matches", [
    ("0.4275", True),
    ("0.427499999", False),
    ("0.4725", True),
    ("0.472500001", False),
])
def test_tolerance_boundaries(reconciler, card_order, chain, clock, amount, matches):
    chain.add_transfer("sig-1", amount, epoch=clock.epoch(5))

    order = reconciler.poll_order(card_order.id)

    expected = OrderStatusEnum.fulfilled if matches else OrderStatusEnum.pending
    assert order.status == expected


@pytest.mark.parametrize("offset, matches", [(-60, True), (-61, False)])
def test_transfer_recency_window(reconciler, card_order, chain, clock, offset, matches):
    chain.add_transfer("sig-1", "0.45", epoch=clock.epoch(offset))

    order = reconciler.poll_order(card_order.id)

    assert (order.status == OrderStatusEnum.fulfilled) is matches


def test_failed_transfer_is_skipped(reconciler, card_order, chain, clock):
    chain.add_transfer("sig-failed", "0.45", epoch=clock.epoch(5), state=FAILED)
    order = reconciler.poll_order(card_order.id)
    assert order.status == OrderStatusEnum.pending


def test_unconfirmed_transfer_is_accepted(reconciler, card_order, chain, clock):
    chain.add_transfer("sig-1", "0.45", epoch=clock.epoch(5), state=UNCONFIRMED)
    order = reconciler.poll_order(card_order.id)
    assert order.observed_tx_id == "sig-1"


def test_most_recent_transfer_wins(card_order, chain, clock, reconciler):
    older = chain.add_transfer("sig-old", "0.45", epoch=clock.epoch(5))
    newer = chain.add_transfer("sig-new", "0.45", epoch=clock.epoch(20))

    candidates = select_candidates(card_order, [older, newer], set(), reconciler.settings)
    assert [c.tx_id for c in candidates] == ["sig-new", "sig-old"]

    order = reconciler.poll_order(card_order.id)
    assert order.observed_tx_id == "sig-new"


def test_equal_timestamps_keep_feed_order(card_order, chain, clock, reconciler):
    first = chain.add_transfer("sig-a", "0.45", epoch=clock.epoch(5))
    second = chain.add_transfer("sig-b", "0.45", epoch=clock.epoch(5))

    candidates = select_candidates(card_order, [first, second], set(), reconciler.settings)
    assert [c.tx_id for c in candidates] == ["sig-a", "sig-b"]


def test_one_transfer_never_funds_two_orders(reconciler, chain, clock, issuer):
    first = reconciler.create_order("user-1", "card_creation", dict(CARD_PAYLOAD))
    second = reconciler.create_order("user-2", "card_creation", dict(CARD_PAYLOAD))
    chain.add_transfer("sig-1", "0.45", epoch=clock.epoch(5))

    assert reconciler.poll_order(first.id).status == OrderStatusEnum.fulfilled
    assert reconciler.poll_order(second.id).status == OrderStatusEnum.pending
    assert len(issuer.created) == 1


def test_used_transfer_skipped_for_next_candidate(reconciler, chain, clock):
    first = reconciler.create_order("user-1", "card_creation", dict(CARD_PAYLOAD))
    second = reconciler.create_order("user-2", "card_creation", dict(CARD_PAYLOAD))
    chain.add_transfer("sig-1", "0.45", epoch=clock.epoch(5))
    chain.add_transfer("sig-2", "0.45", epoch=clock.epoch(10))

    assert reconciler.poll_order(first.id).observed_tx_id == "sig-2"
    assert reconciler.poll_order(second.id).observed_tx_id == "sig-1"


# ----------------- 过期 -----------------
def test_pending_order_expires_after_ttl(reconciler, card_order, chain, clock):
    clock.advance(minutes=30, seconds=1)
    chain.add_transfer("sig-1", "0.45", epoch=clock.epoch(0))

    order = reconciler.poll_order(card_order.id)

    assert order.status == OrderStatusEnum.expired
    assert chain.list_calls == 0
    assert order.observed_tx_id is None


def test_order_at_exact_expiry_is_still_pending(reconciler, card_order, clock):
    clock.advance(minutes=30)
    assert reconciler.poll_order(card_order.id).status == OrderStatusEnum.pending


def test_processing_order_never_expires(reconciler, card_order, chain, token_gate, clock, issuer):
    chain.add_transfer("sig-1", "0.45", epoch=clock.epoch(5))
    token_gate.unavailable = True
    with pytest.raises(ChainUnavailableError):
        reconciler.poll_order(card_order.id)

    clock.advance(hours=2)
    token_gate.unavailable = False
    assert reconciler.expire_stale_orders() == 0

    order = reconciler.poll_order(card_order.id)
    assert order.status == OrderStatusEnum.fulfilled
    assert len(issuer.created) == 1


def test_expire_stale_orders(reconciler, clock):
    reconciler.create_order("user-1", "card_creation", dict(CARD_PAYLOAD))
    reconciler.create_order("user-2", "token_verification")
    clock.advance(minutes=31)

    assert reconciler.expire_stale_orders() == 2
    assert reconciler.expire_stale_orders() == 0
    assert PaymentOrder.query.filter_by(status=OrderStatusEnum.expired).count() == 2


# ----------------- 幂等 / 并发 -----------------
def test_repeated_polls_fulfil_once(reconciler, card_order, chain, clock, issuer):
    chain.add_transfer("sig-1", "0.45", epoch=clock.epoch(5))

    for _ in range(3):
        order = reconciler.poll_order(card_order.id)

    assert order.status == OrderStatusEnum.fulfilled
    assert len(issuer.created) == 1
    assert len(issuer.top_ups) == 1


def test_reentrant_triggers_during_card_creation(reconciler, card_order, chain, clock, issuer):
    chain.add_transfer("sig-1", "0.45", epoch=clock.epoch(5))
    chain.add_verification("sig-1", "0.45", epoch=clock.epoch(5))
    nested = []

    def _concurrent_triggers():
        issuer.on_create = None
        nested.append(reconciler.poll_order(card_order.id).status)
        nested.append(reconciler.submit_transaction(card_order.id, "sig-1").status)
        reconciler.on_inbound_transfer(InboundTransfer("sig-1", DEPOSIT, Decimal("0.45"), WALLET, clock.epoch(5)))

    issuer.on_create = _concurrent_triggers
    order = reconciler.poll_order(card_order.id)

    assert nested == [OrderStatusEnum.processing, OrderStatusEnum.processing]
    assert order.status == OrderStatusEnum.fulfilled
    assert len(issuer.created) == 1


def test_fulfilled_order_ignores_late_evidence(reconciler, card_order, chain, clock, issuer):
    chain.add_transfer("sig-1", "0.45", epoch=clock.epoch(5))
    reconciler.poll_order(card_order.id)
    chain.add_transfer("sig-2", "0.45", epoch=clock.epoch(30))

    order = reconciler.submit_transaction(card_order.id, "sig-2")

    assert order.status == OrderStatusEnum.fulfilled
    assert order.observed_tx_id == "sig-1"
    assert len(issuer.created) == 1


# ----------------- 持币校验 -----------------
def test_token_gate_failure_fails_order_with_evidence(reconciler, card_order, chain, token_gate, clock, issuer):
    token_gate.balances[WALLET] = Decimal("10")
    chain.add_transfer("sig-1", "0.45", sender=WALLET, epoch=clock.epoch(5))

    order = reconciler.poll_order(card_order.id)

    assert order.status == OrderStatusEnum.failed
    assert order.failure_reason == FAILURE_TOKEN_GATE
    assert order.token_gate_checked is True
    assert order.token_gate_passed is False
    assert order.observed_tx_id == "sig-1"
    assert order.token_balance_observed == Decimal("10")
    assert issuer.created == []


def test_gate_checks_payer_not_other_wallet(reconciler, card_order, chain, token_gate, clock):
    token_gate.balances[OTHER_WALLET] = Decimal("0")
    chain.add_transfer("sig-1", "0.45", sender=WALLET, epoch=clock.epoch(5))

    order = reconciler.poll_order(card_order.id)

    assert token_gate.calls == [WALLET]
    assert order.status == OrderStatusEnum.fulfilled


def test_gate_outage_leaves_order_processing_and_releases_claim(reconciler, card_order, chain, token_gate, clock):
    chain.add_transfer("sig-1", "0.45", epoch=clock.epoch(5))
    token_gate.unavailable = True

    with pytest.raises(ChainUnavailableError):
        reconciler.poll_order(card_order.id)

    order = _reload(card_order.id)
    assert order.status == OrderStatusEnum.processing
    assert order.dispatch_token is None
    assert order.token_gate_checked is False


def test_top_up_skips_token_gate(reconciler, make_card, chain, token_gate, clock, issuer):
    issuer.commission = Decimal("1.50")
    card = make_card(balance="10")
    order = reconciler.create_order("user-1", "card_topup", {'card_id': card.id, 'top_up_amount': '50'})
    chain.add_transfer("sig-1", "0.50", epoch=clock.epoch(5))

    order = reconciler.poll_order(order.id)

    assert order.status == OrderStatusEnum.fulfilled
    assert token_gate.calls == []
    assert issuer.top_ups == [(card.provider_card_id, Decimal("50.00"))]
    assert db.session.get(Card, card.id).balance == Decimal("58.50")


def test_token_verification_succeeds_without_card_call(reconciler, chain, token_gate, clock, issuer):
    order = reconciler.create_order("user-1", "token_verification")
    chain.add_transfer("sig-1", "0.05", epoch=clock.epoch(5))

    order = reconciler.poll_order(order.id)

    assert order.status == OrderStatusEnum.fulfilled
    assert order.token_gate_passed is True
    assert order.fulfilled_card_id is None
    assert issuer.created == []


def test_token_verification_gate_failure(reconciler, chain, token_gate, clock):
    token_gate.default_balance = Decimal("0")
    order = reconciler.create_order("user-1", "token_verification")
    chain.add_transfer("sig-1", "0.05", epoch=clock.epoch(5))

    order = reconciler.poll_order(order.id)

    assert order.status == OrderStatusEnum.failed
    assert order.failure_reason == FAILURE_TOKEN_GATE


# ----------------- 发卡失败 -----------------
def test_card_platform_error_fails_order(reconciler, card_order, chain, clock, issuer):
    issuer.create_error = CardIssuerError("KYC rejected", status_code=422)
    chain.add_transfer("sig-1", "0.45", epoch=clock.epoch(5))

    order = reconciler.poll_order(card_order.id)

    assert order.status == OrderStatusEnum.failed
    assert order.failure_reason == FAILURE_FULFILLMENT
    assert order.failure_detail == "KYC rejected"
    assert order.observed_tx_id == "sig-1"
    assert Card.query.count() == 0

    # 终态不再重试
    issuer.create_error = None
    assert reconciler.poll_order(card_order.id).status == OrderStatusEnum.failed
    assert issuer.created == []


def test_initial_top_up_failure_still_fulfils(reconciler, card_order, chain, clock, issuer):
    issuer.top_up_error = CardIssuerError("limit reached")
    chain.add_transfer("sig-1", "0.45", epoch=clock.epoch(5))

    order = reconciler.poll_order(card_order.id)

    assert order.status == OrderStatusEnum.fulfilled
    assert db.session.get(Card, order.fulfilled_card_id).balance == Decimal("0")


# ----------------- 手动提交 -----------------
def test_submit_transaction_verifies_with_tolerance(reconciler, card_order, chain, clock, issuer):
    chain.add_verification("sig-manual", "0.44", epoch=clock.epoch(30))

    order = reconciler.submit_transaction(card_order.id, "sig-manual")

    assert chain.verify_calls == [("sig-manual", DEPOSIT, Decimal("0.4275"))]
    assert order.status == OrderStatusEnum.fulfilled
    assert order.observed_tx_id == "sig-manual"
    assert len(issuer.created) == 1


def test_submit_transaction_semantic_error_keeps_pending(reconciler, card_order, chain):
    chain.verifications["sig-low"] = AmountTooLow(received=Decimal("0.1"), required=Decimal("0.4275"))

    with pytest.raises(AmountTooLow):
        reconciler.submit_transaction(card_order.id, "sig-low")
    assert _reload(card_order.id).status == OrderStatusEnum.pending


def test_submit_transaction_rejects_old_transfer(reconciler, card_order, chain, clock):
    chain.add_verification("sig-old", "0.45", epoch=clock.epoch(-3600))

    with pytest.raises(TransferPredatesOrder):
        reconciler.submit_transaction(card_order.id, "sig-old")
    assert _reload(card_order.id).observed_tx_id is None


def test_submit_transaction_reused_signature(reconciler, chain, clock):
    first = reconciler.create_order("user-1", "card_creation", dict(CARD_PAYLOAD))
    second = reconciler.create_order("user-2", "card_creation", dict(CARD_PAYLOAD))
    chain.add_verification("sig-1", "0.45", epoch=clock.epoch(5))
    reconciler.submit_transaction(first.id, "sig-1")

    with pytest.raises(TransactionAlreadyUsedError):
        reconciler.submit_transaction(second.id, "sig-1")
    assert _reload(second.id).status == OrderStatusEnum.pending


def test_resubmitting_attached_signature_is_noop(reconciler, card_order, chain, clock, issuer):
    chain.add_verification("sig-1", "0.45", epoch=clock.epoch(5))
    reconciler.submit_transaction(card_order.id, "sig-1")

    order = reconciler.submit_transaction(card_order.id, "sig-1")

    assert order.status == OrderStatusEnum.fulfilled
    assert len(chain.verify_calls) == 1
    assert len(issuer.created) == 1


def test_submit_on_expired_order_returns_expired(reconciler, card_order, chain, clock):
    clock.advance(minutes=45)
    chain.add_verification("sig-1", "0.45", epoch=clock.epoch(0))

    order = reconciler.submit_transaction(card_order.id, "sig-1")

    assert order.status == OrderStatusEnum.expired
    assert chain.verify_calls == []


def test_chain_outage_propagates_without_state_change(reconciler, card_order, chain):
    chain.unavailable = True
    with pytest.raises(ChainUnavailableError):
        reconciler.poll_order(card_order.id)
    with pytest.raises(ChainUnavailableError):
        reconciler.submit_transaction(card_order.id, "sig-1")
    assert _reload(card_order.id).status == OrderStatusEnum.pending


# ----------------- webhook -----------------
def _event(tx_id, amount, clock, offset=5, sender=WALLET):
    return InboundTransfer(tx_id, DEPOSIT, Decimal(amount), sender, clock.epoch(offset))


def test_inbound_transfer_picks_closest_amount(reconciler, chain, clock, app):
    reconciler.settings = replace(reconciler.settings, webhook_verify_onchain=False)
    small = reconciler.create_order("user-1", "token_verification")
    card = reconciler.create_order("user-2", "card_creation", dict(CARD_PAYLOAD))

    order = reconciler.on_inbound_transfer(_event("sig-1", "0.46", clock))

    assert order.id == card.id
    assert order.status == OrderStatusEnum.fulfilled
    assert _reload(small.id).status == OrderStatusEnum.pending


def test_inbound_transfer_tie_goes_to_earliest_order(reconciler, chain, clock):
    reconciler.settings = replace(reconciler.settings, webhook_verify_onchain=False)
    first = reconciler.create_order("user-1", "token_verification")
    clock.advance(seconds=10)
    reconciler.create_order("user-2", "token_verification")

    order = reconciler.on_inbound_transfer(_event("sig-1", "0.05", clock))

    assert order.id == first.id


def test_inbound_transfer_is_verified_on_chain(reconciler, card_order, chain, clock):
    chain.add_verification("sig-1", "0.45", sender=WALLET, epoch=clock.epoch(5))

    order = reconciler.on_inbound_transfer(_event("sig-1", "0.45", clock, sender="spoofed"))

    assert order.sender_address == WALLET
    assert chain.verify_calls == [("sig-1", DEPOSIT, Decimal("0.4275"))]


def test_unverifiable_inbound_transfer_is_ignored(reconciler, card_order, chain, clock):
    order = reconciler.on_inbound_transfer(_event("sig-fake", "0.45", clock))

    assert order is None
    assert _reload(card_order.id).status == OrderStatusEnum.pending


def test_duplicate_inbound_transfer_is_ignored(reconciler, card_order, chain, clock, issuer):
    chain.add_verification("sig-1", "0.45", epoch=clock.epoch(5))
    reconciler.on_inbound_transfer(_event("sig-1", "0.45", clock))

    assert reconciler.on_inbound_transfer(_event("sig-1", "0.45", clock)) is None
    assert len(issuer.created) == 1


def test_inbound_transfer_without_matching_amount(reconciler, card_order, chain, clock):
    assert reconciler.on_inbound_transfer(_event("sig-1", "1.00", clock)) is None
    assert chain.verify_calls == []


def test_inbound_transfer_rechecks_onchain_block_time(reconciler, card_order, chain, clock):
    chain.add_verification("sig-old", "0.45", epoch=clock.epoch(-86400))

    order = reconciler.on_inbound_transfer(InboundTransfer("sig-old", DEPOSIT, Decimal("0.45"), WALLET, None))

    assert order is None
    assert _reload(card_order.id).status == OrderStatusEnum.pending
    assert _reload(card_order.id).observed_tx_id is None


def test_inbound_transfer_rechecks_onchain_amount(reconciler, card_order, chain, clock):
    chain.add_verification("sig-1", "0.50", epoch=clock.epoch(5))

    assert reconciler.on_inbound_transfer(_event("sig-1", "0.45", clock)) is None
    assert _reload(card_order.id).status == OrderStatusEnum.pending


def test_inbound_transfer_too_small_for_closest_tries_next(reconciler, chain, clock):
    cheaper = reconciler.create_order("user-1", "card_creation", dict(CARD_PAYLOAD))
    reconciler.create_order("user-2", "card_creation", {**CARD_PAYLOAD, 'top_up_amount': '16'})
    chain.add_verification("sig-1", "0.43", epoch=clock.epoch(5))

    order = reconciler.on_inbound_transfer(_event("sig-1", "0.46", clock))

    assert order.id == cheaper.id
    assert order.observed_amount_crypto == Decimal("0.43")
    assert [call[2] for call in chain.verify_calls] == [Decimal("0.437"), Decimal("0.4275")]


# ----------------- 定时对账 -----------------
def test_reconcile_open_orders(reconciler, card_order, chain, clock, issuer):
    chain.add_transfer("sig-1", "0.45", epoch=clock.epoch(5))

    assert reconciler.reconcile_open_orders() == 1
    assert _reload(card_order.id).status == OrderStatusEnum.fulfilled


def test_reconcile_open_orders_tolerates_outage(reconciler, card_order, chain):
    chain.unavailable = True
    assert reconciler.reconcile_open_orders() == 0
    assert _reload(card_order.id).status == OrderStatusEnum.pending
