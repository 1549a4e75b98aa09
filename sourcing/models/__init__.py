"""Central model registry — import all models so Alembic autodiscover works."""

from sourcing.database import Base  # noqa: F401

from sourcing.models.solicitation import Solicitation, LineItem  # noqa: F401
from sourcing.models.quote import Quote, QuoteItem  # noqa: F401
from sourcing.models.award import Award, AwardItem  # noqa: F401
from sourcing.models.fulfillment import StockOrder, Shipment, Settlement  # noqa: F401
from sourcing.models.audit_log import AuditLog  # noqa: F401
from sourcing.models.notification import AppNotification  # noqa: F401
