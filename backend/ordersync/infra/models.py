"""Imports every ORM module so ``Base.metadata`` knows all tables and
string-based foreign keys resolve regardless of import order.
"""

from ordersync.domain.audit import db_models as audit_db_models  # noqa: F401
from ordersync.domain.events import db_models as events_db_models  # noqa: F401
from ordersync.domain.ops import db_models as ops_db_models  # noqa: F401
from ordersync.domain.orders import db_models as orders_db_models  # noqa: F401
from ordersync.domain.queue import db_models as queue_db_models  # noqa: F401
from ordersync.domain.reconciliation import db_models as reconciliation_db_models  # noqa: F401
