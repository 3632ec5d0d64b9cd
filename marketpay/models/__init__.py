# Models package — import all models here so Alembic can discover them.

from marketpay.models.vendor import Vendor, Product  # noqa: F401
from marketpay.models.order import Order, OrderItem  # noqa: F401
from marketpay.models.inventory import InventoryItem, InventoryReservation  # noqa: F401
from marketpay.models.payment import Payment  # noqa: F401
from marketpay.models.webhook_log import WebhookProcessingLog  # noqa: F401
from marketpay.models.commission import CommissionConfig, PlatformCommission  # noqa: F401
from marketpay.models.escrow import EscrowRelease, VendorPayout  # noqa: F401
from marketpay.models.audit import FinancialAuditLog  # noqa: F401
from marketpay.models.notification import Notification  # noqa: F401
