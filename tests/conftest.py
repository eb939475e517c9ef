import os
import tempfile
from datetime import datetime, timedelta
from decimal import Decimal

os.environ.setdefault("LOG_DIR", tempfile.gettempdir())

import jwt
import pytest

from app import create_app, build_reconciler
from extensions import db
from models import Card, CardStatusEnum
from utils.chain_observer import Transfer, VerificationResult, CONFIRMED
from utils.order_reconciler import to_epoch
from utils.payment_errors import (
    AmountTooLow, ChainUnavailableError, PriceUnavailableError, TransferNotFound,
)
from utils.token_gate import TokenBalance

DEPOSIT = "6aGvR36EkR4wB57xN8JvMAR3nikzYoYwxbBKJTJYD3jy"
WALLET = "9xQeWvG816bUx9EPjHmaT23yvVM2ZWbrrpZb9PusVFin"
OTHER_WALLET = "So11111111111111111111111111111111111111112"
JWT_SECRET = "test-jwt-secret"
ADMIN_KEY = "test-admin-key"
WEBHOOK_SECRET = "test-webhook-secret"


class FakeClock:
    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)

    def epoch(self, offset=0):
        return to_epoch(self.now) + offset


class FakeChainObserver:
    def __init__(self):
        self.transfers = []
        self.verifications = {}
        self.unavailable = False
        self.list_calls = 0
        self.verify_calls = []

    def add_transfer(self, tx_id, amount, sender=WALLET, epoch=None, state=CONFIRMED):
        transfer = Transfer(tx_id, Decimal(str(amount)), sender, epoch, state)
        self.transfers.append(transfer)
        return transfer

    def add_verification(self, tx_id, amount, sender=WALLET, epoch=None):
        self.verifications[tx_id] = VerificationResult(tx_id, Decimal(str(amount)), sender, epoch)

    def list_incoming_transfers(self, address, limit=20):
        self.list_calls += 1
        if self.unavailable:
            raise ChainUnavailableError()
        return list(self.transfers[:limit])

    def verify_transfer(self, tx_id, expected_destination, min_amount):
        self.verify_calls.append((tx_id, expected_destination, Decimal(str(min_amount))))
        if self.unavailable:
            raise ChainUnavailableError()
        result = self.verifications.get(tx_id)
        if result is None:
            raise TransferNotFound()
        if isinstance(result, Exception):
            raise result
        if result.amount < Decimal(str(min_amount)):
            raise AmountTooLow(received=result.amount, required=Decimal(str(min_amount)))
        return result


class FakeTokenGate:
    def __init__(self, required=Decimal("1000")):
        self.required = required
        self.balances = {}
        self.default_balance = required
        self.unavailable = False
        self.calls = []

    def check_balance(self, address):
        self.calls.append(address)
        if self.unavailable:
            raise ChainUnavailableError()
        balance = self.balances.get(address, self.default_balance)
        return TokenBalance(balance=balance, required=self.required, passes=balance >= self.required)


class FakePriceOracle:
    def __init__(self, rate=Decimal("100")):
        self.rate = rate
        self.unavailable = False

    def current_rate(self):
        if self.unavailable:
            raise PriceUnavailableError()
        return self.rate


class FakeCardIssuer:
    def __init__(self):
        self.created = []
        self.top_ups = []
        self.frozen = []
        self.unfrozen = []
        self.create_error = None
        self.top_up_error = None
        self.freeze_error = None
        self.commission = Decimal("0")
        self.on_create = None

    def create_card(self, title, email, phone_number, tier=None):
        if self.on_create:
            self.on_create()
        if self.create_error:
            raise self.create_error
        card_id = f"zc_{len(self.created) + 1}"
        self.created.append((card_id, title, email, phone_number))
        return card_id

    def top_up_card(self, card_id, amount):
        if self.top_up_error:
            raise self.top_up_error
        amount = Decimal(str(amount))
        self.top_ups.append((card_id, amount))
        return {'reference_id': f"ref_{len(self.top_ups)}", 'final_amount': amount - self.commission}

    def freeze_card(self, card_id):
        if self.freeze_error:
            raise self.freeze_error
        self.frozen.append(card_id)
        return {'message': 'frozen'}

    def unfreeze_card(self, card_id):
        self.unfrozen.append(card_id)
        return {'message': 'unfrozen'}


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 1, 12, 0, 0))


@pytest.fixture
def chain():
    return FakeChainObserver()


@pytest.fixture
def token_gate():
    return FakeTokenGate()


@pytest.fixture
def price_oracle():
    return FakePriceOracle()


@pytest.fixture
def issuer():
    return FakeCardIssuer()


@pytest.fixture
def app_config():
    return {
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite://',
        'JWT_SECRET': JWT_SECRET,
        'ADMIN_API_KEY': ADMIN_KEY,
        'HELIUS_WEBHOOK_SECRET': WEBHOOK_SECRET,
        'DEPOSIT_WALLET_ADDRESS': DEPOSIT,
        'CARD_CREATION_FEE': '30',
        'DEFAULT_INITIAL_TOP_UP': '15',
        'TOP_UP_FEE_PERCENT': '0',
        'TOP_UP_FEE_FLAT': '0',
        'ENABLE_SCHEDULER': 'false',
    }


@pytest.fixture
def app(app_config, chain, token_gate, price_oracle, issuer, clock):
    app = create_app(app_config)
    build_reconciler(app, chain=chain, token_gate=token_gate, price_oracle=price_oracle,
                     issuer=issuer, clock=clock)
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def reconciler(app):
    return app.extensions['reconciler']


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth_headers():
    def _headers(user_id="user-1"):
        token = jwt.encode({'user_id': user_id}, JWT_SECRET, algorithm='HS256')
        return {'Authorization': f'Bearer {token}'}
    return _headers


@pytest.fixture
def make_card():
    def _make(user_id="user-1", status=CardStatusEnum.active, balance="0", provider_card_id=None):
        card = Card(
            user_id=user_id,
            provider_card_id=provider_card_id or f"zc_existing_{user_id}_{status.value}",
            title="Existing card",
            status=status,
            balance=Decimal(balance),
        )
        db.session.add(card)
        db.session.commit()
        return card
    return _make
