# Models package — import all models here so Alembic can discover them.

from marketplace.models.user import User  # noqa: F401
from marketplace.models.product import Product, ProductVariant  # noqa: F401
from marketplace.models.cart import CartItem  # noqa: F401
from marketplace.models.order import (  # noqa: F401
    Order,
    OrderItem,
    OrderStatusEvent,
)
from marketplace.models.commission import Commission  # noqa: F401
from marketplace.models.webhook_event import WebhookEvent  # noqa: F401
from marketplace.models.audit import AuditEvent  # noqa: F401
