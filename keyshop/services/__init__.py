from .cache_service import CacheLock, CacheStore, get_cache_store
from .email_service import EmailService
from .payment_service import PaymentService
from .refund_service import RefundService

# OrderService and CatalogSyncService depend on keyshop.g2a, which itself
# imports cache_service; import them from their modules.

__all__ = [
    "CacheLock",
    "CacheStore",
    "get_cache_store",
    "EmailService",
    "PaymentService",
    "RefundService",
]
