from .base import BasePaymentService, ServiceConfig
from .credits import CreditManagementService
from .customers import CustomerManagementService
from .processing import PaymentProcessingService
from .subscriptions import SubscriptionService
from .webhooks import WebhookHandlerService
from .service import PaymentService, get_payment_service

__all__ = [
    "BasePaymentService",
    "ServiceConfig",
    "CreditManagementService",
    "CustomerManagementService",
    "PaymentProcessingService",
    "SubscriptionService",
    "WebhookHandlerService",
    "PaymentService",
    "get_payment_service",
]
