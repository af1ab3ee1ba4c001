"""Create the schema on the configured database.

Usage: ``python -m recordkeeper.db.init_db``
"""

import logging

from recordkeeper.db import models  # noqa: F401  (registers tables on Base.metadata)
from recordkeeper.db.base import Base
from recordkeeper.db.session import get_engine

logger = logging.getLogger(__name__)


def init_db() -> None:
    engine = get_engine()
    Base.metadata.create_all(engine)
    logger.info(f"Created tables: {', '.join(sorted(Base.metadata.tables))}")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    init_db()
