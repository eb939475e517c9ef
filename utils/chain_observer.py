# utils/chain_observer.py
from collections import namedtuple
from decimal import Decimal
from utils.log_utils import get_logger
from utils.payment_errors import (
    ChainUnavailableError, TransferNotFound, TransferFailed, WrongDestination, AmountTooLow,
)

logger = get_logger("chain_observer")

LAMPORTS_PER_SOL = Decimal(10 ** 9)
LAMPORT = Decimal("0.000000001")

# confirmation_state 取值
UNCONFIRMED = "unconfirmed"
CONFIRMED = "confirmed"
FINALIZED = "finalized"
FAILED = "failed"

_COMMITMENT_STATES = {
    "processed": UNCONFIRMED,
    "confirmed": CONFIRMED,
    "finalized": FINALIZED,
}

Transfer = namedtuple(
    "Transfer",
    ["tx_id", "amount_crypto", "sender_address", "observed_at_epoch", "confirmation_state"],
)

VerificationResult = namedtuple(
    "VerificationResult",
    ["tx_id", "amount", "sender_address", "observed_at_epoch"],
)


def lamports_to_sol(lamports):
    return (Decimal(int(lamports)) / LAMPORTS_PER_SOL).quantize(LAMPORT)


def _account_keys(tx):
    keys = (((tx or {}).get("transaction") or {}).get("message") or {}).get("accountKeys") or []
    # jsonParsed 返回 {"pubkey": ...}，旧格式直接是字符串
    return [k.get("pubkey") if isinstance(k, dict) else k for k in keys]


def balance_change(tx, address):
    """
    计算 address 在交易中的净变化（SOL）以及付款方地址
    返回 (amount, sender)，address 不在交易中时返回 (None, None)
    """
    keys = _account_keys(tx)
    meta = tx.get("meta") or {}
    pre = meta.get("preBalances") or []
    post = meta.get("postBalances") or []

    if address not in keys:
        return None, None
    index = keys.index(address)
    if index >= len(pre) or index >= len(post):
        return None, None

    amount = lamports_to_sol(post[index] - pre[index])

    # 付款方：第一个余额减少的其他账户
    sender = None
    for i, key in enumerate(keys):
        if i == index or i >= len(pre) or i >= len(post):
            continue
        if post[i] - pre[i] < 0:
            sender = key
            break
    return amount, sender


def _attempted_transfer(tx, address):
    """失败交易没有余额变化，从 system transfer 指令中取出意图转账金额"""
    instructions = (((tx or {}).get("transaction") or {}).get("message") or {}).get("instructions") or []
    for ix in instructions:
        parsed = ix.get("parsed") if isinstance(ix, dict) else None
        if not isinstance(parsed, dict) or parsed.get("type") != "transfer":
            continue
        info = parsed.get("info") or {}
        if info.get("destination") == address and info.get("lamports") is not None:
            return lamports_to_sol(info["lamports"]), info.get("source")
    return None, None


class ChainObserver:
    """只读的链上观察者，基于 SolanaRpcClient"""

    def __init__(self, rpc):
        self.rpc = rpc

    def list_incoming_transfers(self, address, limit=20):
        """
        返回最近 limit 笔转入 address 的交易，最新的在前
        单笔交易解析失败会被跳过；签名列表获取失败抛 ChainUnavailableError
        """
        signatures = self.rpc.get_signatures_for_address(address, limit=limit)
        transfers = []

        for entry in signatures:
            signature = entry.get("signature") if isinstance(entry, dict) else None
            if not signature:
                continue

            tx = self.rpc.get_transaction(signature)
            if not tx or not isinstance(tx, dict):
                logger.warning(f"[list_incoming_transfers] transaction {signature} not available, skipped")
                continue

            try:
                failed = bool(entry.get("err")) or bool((tx.get("meta") or {}).get("err"))
                if failed:
                    amount, sender = _attempted_transfer(tx, address)
                    state = FAILED
                else:
                    amount, sender = balance_change(tx, address)
                    state = _COMMITMENT_STATES.get(entry.get("confirmationStatus"), UNCONFIRMED)
            except (TypeError, ValueError, ArithmeticError) as e:
                logger.warning(f"[list_incoming_transfers] cannot parse {signature}: {e}")
                continue

            if amount is None or amount <= 0:
                continue

            transfers.append(Transfer(
                tx_id=signature,
                amount_crypto=amount,
                sender_address=sender,
                observed_at_epoch=entry.get("blockTime") or tx.get("blockTime"),
                confirmation_state=state,
            ))

        return transfers

    def verify_transfer(self, tx_id, expected_destination, min_amount):
        """校验指定交易确实向 expected_destination 转入了不少于 min_amount 的 SOL"""
        tx = self.rpc.get_transaction(tx_id)
        if not tx:
            raise TransferNotFound()
        if not isinstance(tx, dict):
            raise ChainUnavailableError("Malformed getTransaction response")

        if (tx.get("meta") or {}).get("err"):
            raise TransferFailed()

        amount, sender = balance_change(tx, expected_destination)
        if amount is None or amount <= 0:
            raise WrongDestination()

        min_amount = Decimal(str(min_amount))
        if amount < min_amount:
            raise AmountTooLow(received=amount, required=min_amount)

        return VerificationResult(
            tx_id=tx_id,
            amount=amount,
            sender_address=sender,
            observed_at_epoch=tx.get("blockTime"),
        )
