"""G2A reseller API integration: authentication, payloads, retries and the HTTP client."""

from .client import G2AClient, get_g2a_client
from .errors import G2AError, G2AErrorCode
from .payloads import ProductFilters, ProductPage, ResellerProduct, StockInfo
from .retry import RetryPolicy

__all__ = [
    "G2AClient",
    "get_g2a_client",
    "G2AError",
    "G2AErrorCode",
    "ProductFilters",
    "ProductPage",
    "ResellerProduct",
    "StockInfo",
    "RetryPolicy",
]
