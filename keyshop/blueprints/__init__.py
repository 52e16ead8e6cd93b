from .catalog import catalog_bp
from .orders import orders_bp
from .payments import payments_bp

__all__ = ["catalog_bp", "orders_bp", "payments_bp"]
