# utils/payment_errors.py
"""
支付对账相关异常

- TransientError: 外部依赖暂时不可用（RPC / 价格源），不改变订单状态，调用方可重试
- PaymentVerificationError: 手动提交的交易签名校验失败，订单保持 pending
- OrderConflictError / TransactionAlreadyUsedError: 业务冲突
- FulfillmentError: 发卡平台调用失败，订单进入 failed
"""


class PaymentError(Exception):
    message = "Payment error"

    def __init__(self, message=None):
        super().__init__(message or self.message)
        self.message = message or self.message


# ----------------- 暂时性错误 -----------------
class TransientError(PaymentError):
    message = "Service temporarily unavailable, please try again"


class ChainUnavailableError(TransientError):
    message = "Blockchain RPC unavailable"


class PriceUnavailableError(TransientError):
    message = "Exchange rate unavailable"


# ----------------- 交易校验错误 -----------------
class PaymentVerificationError(PaymentError):
    message = "Transaction verification failed"


class TransferNotFound(PaymentVerificationError):
    message = "Transaction not found"


class TransferFailed(PaymentVerificationError):
    message = "Transaction failed"


class WrongDestination(PaymentVerificationError):
    message = "No incoming transfer to the deposit address detected"


class AmountTooLow(PaymentVerificationError):
    message = "Transferred amount is below the required amount"

    def __init__(self, received=None, required=None):
        if received is not None and required is not None:
            super().__init__(f"Insufficient amount: received {received} SOL, required {required} SOL")
        else:
            super().__init__()
        self.received = received
        self.required = required


class TransferPredatesOrder(PaymentVerificationError):
    message = "Transaction was sent before the payment order was created"


# ----------------- 业务冲突 -----------------
class OrderConflictError(PaymentError):
    message = "A conflicting payment order already exists"

    def __init__(self, message=None, existing_order_id=None):
        super().__init__(message)
        self.existing_order_id = existing_order_id


class TransactionAlreadyUsedError(PaymentError):
    message = "Transaction has already been used for another order"


class InvalidOrderRequest(PaymentError):
    message = "Invalid payment order request"


class OrderNotFoundError(PaymentError):
    message = "Payment order not found"


# ----------------- 发卡 -----------------
class FulfillmentError(PaymentError):
    message = "Card fulfillment failed"


class CardIssuerError(FulfillmentError):
    """发卡平台返回错误或无法访问"""

    def __init__(self, message=None, status_code=None):
        super().__init__(message)
        self.status_code = status_code
