"""Central registry for SQLAlchemy models with string-based relationships.

Importing this module loads all ORM classes that may be referenced by string to
avoid mapper configuration errors when individual models are imported in
isolation.
"""

from glasswallet.domain.users import db_models as users_db_models  # noqa: F401
from glasswallet.domain.leads import db_models as leads_db_models  # noqa: F401
from glasswallet.domain.credit import db_models as credit_db_models  # noqa: F401
from glasswallet.domain.tagging import db_models as tagging_db_models  # noqa: F401
from glasswallet.domain.pixels import db_models as pixels_db_models  # noqa: F401
from glasswallet.domain.outbox import db_models as outbox_db_models  # noqa: F401
