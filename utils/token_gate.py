# utils/token_gate.py
from collections import namedtuple
from decimal import Decimal, InvalidOperation
from solders.pubkey import Pubkey
from utils.log_utils import get_logger

logger = get_logger("token_gate")

TokenBalance = namedtuple("TokenBalance", ["balance", "required", "passes"])


def is_valid_address(address):
    if not address or not isinstance(address, str):
        return False
    try:
        Pubkey.from_string(address)
    except ValueError:
        return False
    return True


class TokenGate:
    """检查付款钱包是否持有足够数量的指定 SPL Token"""

    def __init__(self, rpc, mint, required_balance):
        self.rpc = rpc
        self.mint = mint
        self.required = Decimal(str(required_balance))

    def check_balance(self, address):
        if not is_valid_address(address):
            logger.warning(f"[check_balance] invalid wallet address: {address}")
            return TokenBalance(balance=Decimal("0"), required=self.required, passes=False)

        # RPC 失败直接抛 ChainUnavailableError，由上层决定是否重试
        accounts = self.rpc.get_token_accounts_by_owner(address, self.mint)

        balance = Decimal("0")
        for account in accounts:
            try:
                info = account["account"]["data"]["parsed"]["info"]
                token_amount = info["tokenAmount"]
                balance += Decimal(str(token_amount.get("uiAmountString") or token_amount.get("uiAmount") or 0))
            except (KeyError, TypeError, InvalidOperation) as e:
                logger.warning(f"[check_balance] unparseable token account for {address}: {e}")
                continue

        passes = balance >= self.required
        logger.info(f"[check_balance] {address}: balance={balance} required={self.required} passes={passes}")
        return TokenBalance(balance=balance, required=self.required, passes=passes)
