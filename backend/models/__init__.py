from backend.models.user import User
from backend.models.package import Package
from backend.models.payment_gateway import PaymentGateway
from backend.models.subscription import Subscription
from backend.models.transaction import Transaction
from backend.models.transaction_history import TransactionHistory
from backend.models.gateway_transaction import GatewayTransaction
from backend.models.webhook_event import WebhookEvent

__all__ = [
    "User", "Package", "PaymentGateway", "Subscription",
    "Transaction", "TransactionHistory", "GatewayTransaction", "WebhookEvent",
]
