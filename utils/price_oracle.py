# utils/price_oracle.py
from decimal import Decimal, InvalidOperation
import requests
from utils.log_utils import get_logger
from utils.payment_errors import PriceUnavailableError

logger = get_logger("price_oracle")

DEFAULT_PRICE_URL = "https://api.coingecko.com/api/v3/simple/price"


class PriceOracle:
    """SOL -> USD 汇率，来自 CoinGecko simple/price"""

    def __init__(self, url=None, asset_id="solana", vs_currency="usd", timeout=10, session=None):
        self.url = url or DEFAULT_PRICE_URL
        self.asset_id = asset_id
        self.vs_currency = vs_currency
        self.timeout = timeout
        self.session = session or requests.Session()

    def current_rate(self):
        params = {"ids": self.asset_id, "vs_currencies": self.vs_currency}
        try:
            resp = self.session.get(self.url, params=params, timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json()
            rate = Decimal(str(data[self.asset_id][self.vs_currency]))
        except requests.RequestException as e:
            logger.error(f"[current_rate] price feed request failed: {e}")
            raise PriceUnavailableError() from e
        except (ValueError, KeyError, TypeError, InvalidOperation) as e:
            logger.error(f"[current_rate] unexpected price feed response: {e}")
            raise PriceUnavailableError() from e

        if not rate.is_finite() or rate <= 0:
            logger.error(f"[current_rate] invalid rate: {rate}")
            raise PriceUnavailableError(f"Invalid exchange rate: {rate}")
        return rate
