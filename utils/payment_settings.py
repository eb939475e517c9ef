# utils/payment_settings.py
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP

CENT = Decimal("0.01")


def _dec(value, default):
    if value is None or value == "":
        return Decimal(default)
    return Decimal(str(value))


@dataclass(frozen=True)
class PaymentSettings:
    """支付规则配置，在 create_app 时从 app.config 一次性构建，之后只读"""
    deposit_address: str
    card_creation_fee: Decimal = Decimal("30")
    default_initial_top_up: Decimal = Decimal("15")
    top_up_fee_percent: Decimal = Decimal("2.5")
    top_up_fee_flat: Decimal = Decimal("2")
    min_top_up: Decimal = Decimal("10")
    max_top_up: Decimal = Decimal("5000")
    token_verification_fee: Decimal = Decimal("5")
    order_ttl_minutes: int = 30
    match_tolerance: Decimal = Decimal("0.05")
    match_lookback_seconds: int = 60
    match_scan_limit: int = 20
    webhook_verify_onchain: bool = True

    @classmethod
    def from_config(cls, config):
        return cls(
            deposit_address=config.get('DEPOSIT_WALLET_ADDRESS') or "",
            card_creation_fee=_dec(config.get('CARD_CREATION_FEE'), "30"),
            default_initial_top_up=_dec(config.get('DEFAULT_INITIAL_TOP_UP'), "15"),
            top_up_fee_percent=_dec(config.get('TOP_UP_FEE_PERCENT'), "2.5"),
            top_up_fee_flat=_dec(config.get('TOP_UP_FEE_FLAT'), "2"),
            min_top_up=_dec(config.get('MIN_TOP_UP'), "10"),
            max_top_up=_dec(config.get('MAX_TOP_UP'), "5000"),
            token_verification_fee=_dec(config.get('TOKEN_VERIFICATION_FEE'), "5"),
            order_ttl_minutes=int(config.get('ORDER_TTL_MINUTES') or 30),
            match_tolerance=_dec(config.get('MATCH_TOLERANCE'), "0.05"),
            match_lookback_seconds=int(config.get('MATCH_LOOKBACK_SECONDS') or 60),
            match_scan_limit=int(config.get('MATCH_SCAN_LIMIT') or 20),
            webhook_verify_onchain=_as_bool(config.get('WEBHOOK_VERIFY_ONCHAIN'), True),
        )

    def top_up_fee(self, amount):
        """充值手续费 = 金额 * 百分比 + 固定费用，保留两位小数"""
        amount = Decimal(str(amount))
        fee = amount * self.top_up_fee_percent / Decimal("100") + self.top_up_fee_flat
        return fee.quantize(CENT, rounding=ROUND_HALF_UP)

    def lower_bound(self, expected):
        return expected * (Decimal("1") - self.match_tolerance)

    def upper_bound(self, expected):
        return expected * (Decimal("1") + self.match_tolerance)

    def within_tolerance(self, amount, expected):
        amount = Decimal(str(amount))
        return self.lower_bound(expected) <= amount <= self.upper_bound(expected)


def _as_bool(value, default):
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('1', 'true', 'yes', 'on')
