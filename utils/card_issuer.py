# utils/card_issuer.py
from decimal import Decimal, InvalidOperation
import requests
from utils.log_utils import get_logger
from utils.payment_errors import CardIssuerError

logger = get_logger("card_issuer")

DEFAULT_CARD_API_BASE_URL = "https://app.zeroid.cc/api/b2b"


def _error_message(resp):
    """从发卡平台的错误响应里提取可读信息（detail / message / error + errors 列表）"""
    try:
        data = resp.json()
    except ValueError:
        return resp.text or f"HTTP {resp.status_code}"
    if not isinstance(data, dict):
        return str(data)

    message = data.get('detail') or data.get('message') or data.get('error') or f"HTTP {resp.status_code}"
    errors = data.get('errors') or []
    if isinstance(errors, list) and errors:
        details = ", ".join(
            f"{'.'.join(str(p) for p in (e.get('loc') or []))}: {e.get('msg')}"
            for e in errors if isinstance(e, dict)
        )
        message = f"{message} - {details}"
    return str(message)


class CardIssuerClient:
    """虚拟卡发卡平台 B2B 接口"""

    def __init__(self, base_url=None, api_key=None, commission_id="5", currency_id="usdc",
                 timeout=30, session=None):
        self.base_url = (base_url or DEFAULT_CARD_API_BASE_URL).rstrip('/')
        self.api_key = api_key or ""
        self.commission_id = commission_id
        self.currency_id = currency_id
        self.timeout = timeout
        self.session = session or requests.Session()

    def _request(self, method, path, **kwargs):
        url = f"{self.base_url}{path}"
        headers = {'Content-Type': 'application/json', 'X-API-Key': self.api_key}
        try:
            resp = self.session.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            logger.error(f"[{method} {path}] request failed: {e}")
            raise CardIssuerError(f"Card platform unreachable: {e}") from e

        if resp.status_code >= 400:
            message = _error_message(resp)
            logger.error(f"[{method} {path}] HTTP {resp.status_code}: {message}")
            raise CardIssuerError(message, status_code=resp.status_code)

        try:
            return resp.json()
        except ValueError as e:
            raise CardIssuerError(f"Card platform returned invalid JSON for {path}") from e

    # ----------------- 卡片操作 -----------------
    def create_card(self, title, email, phone_number, tier=None):
        """创建虚拟卡，返回平台 card_id"""
        data = self._request('POST', '/cards', json={
            'title': title,
            'email': email,
            'phone_number': phone_number,
            'card_commission_id': str(tier or self.commission_id),
            'currency_id': self.currency_id,
        })
        card_id = (data or {}).get('card_id') or ((data or {}).get('data') or {}).get('card_id')
        if not card_id:
            raise CardIssuerError("Card platform did not return a card_id")
        logger.info(f"[create_card] created card {card_id} for {email}")
        return card_id

    def top_up_card(self, card_id, amount):
        """
        给卡充值，返回 {'reference_id': ..., 'final_amount': Decimal}
        final_amount 为扣除平台手续费后实际到账金额
        """
        data = self._request('POST', f'/cards/{card_id}/topup', json={
            'amount': float(amount),
            'currency_id': self.currency_id,
        }) or {}
        try:
            final_amount = Decimal(str(data.get('final_amount', amount)))
        except InvalidOperation:
            final_amount = Decimal(str(amount))
        logger.info(f"[top_up_card] card {card_id}: requested {amount}, credited {final_amount}")
        return {'reference_id': data.get('reference_id'), 'final_amount': final_amount}

    def freeze_card(self, card_id):
        return self._request('POST', f'/cards/{card_id}/freeze')

    def unfreeze_card(self, card_id):
        return self._request('POST', f'/cards/{card_id}/unfreeze')

    def get_card(self, card_id):
        data = self._request('GET', f'/cards/{card_id}') or {}
        return data.get('data') or data
