# utils/solana_rpc.py
import json
from solana.exceptions import SolanaRpcException
from solana.rpc.api import Client
from solana.rpc.commitment import Confirmed
from solana.rpc.core import RPCException
from solana.rpc.types import TokenAccountOpts
from solders.pubkey import Pubkey
from solders.signature import Signature
from utils.log_utils import get_logger
from utils.payment_errors import ChainUnavailableError

logger = get_logger("solana_rpc")

DEFAULT_RPC_URL = "https://api.mainnet-beta.solana.com"


class SolanaRpcClient:
    """
    基于 solana-py Client 的只读封装
    返回 RPC 原始 JSON 结构（dict / list），所有网络 / 节点层面的失败统一抛出 ChainUnavailableError
    """

    def __init__(self, rpc_url=None, timeout=10, client=None):
        self.rpc_url = rpc_url or DEFAULT_RPC_URL
        self.client = client or Client(self.rpc_url, timeout=timeout)

    def _call(self, method, *args, **kwargs):
        try:
            resp = getattr(self.client, method)(*args, **kwargs)
        except (SolanaRpcException, RPCException, ValueError) as e:
            logger.error(f"[{method}] RPC request failed: {e}")
            raise ChainUnavailableError(f"RPC request failed: {method}") from e

        # 节点返回 error 对象时 solders 解析出来的不是 *Resp，没有 value
        if not hasattr(resp, "value"):
            logger.error(f"[{method}] RPC error: {resp}")
            raise ChainUnavailableError(f"RPC error on {method}")
        return resp.value

    # ----------------- 常用方法 -----------------
    def get_signatures_for_address(self, address, limit=20):
        try:
            pubkey = Pubkey.from_string(address)
        except ValueError as e:
            raise ChainUnavailableError(f"Invalid deposit address: {address}") from e
        value = self._call("get_signatures_for_address", pubkey, limit=limit)
        return [json.loads(entry.to_json()) for entry in value or []]

    def get_transaction(self, signature):
        """交易不存在（或签名格式不对）返回 None"""
        try:
            sig = Signature.from_string(signature)
        except ValueError:
            logger.info(f"[get_transaction] malformed signature: {signature}")
            return None
        value = self._call(
            "get_transaction", sig,
            encoding="jsonParsed", commitment=Confirmed, max_supported_transaction_version=0,
        )
        if value is None:
            return None
        return json.loads(value.to_json())

    def get_token_accounts_by_owner(self, owner, mint):
        try:
            owner_key, mint_key = Pubkey.from_string(owner), Pubkey.from_string(mint)
        except (TypeError, ValueError) as e:
            raise ChainUnavailableError(f"Invalid token account query: {owner} / {mint}") from e
        value = self._call("get_token_accounts_by_owner_json_parsed", owner_key, TokenAccountOpts(mint=mint_key))
        return [json.loads(account.to_json()) for account in value or []]
