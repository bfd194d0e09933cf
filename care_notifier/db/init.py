"""Initialize database tables."""
import logging

from sqlalchemy.engine import Engine
from sqlmodel import SQLModel

# Imported for their table registration side effect
from care_notifier.models.delivery_record import DeliveryRecord  # noqa: F401
from care_notifier.models.schedule_entry import ScheduleEntry  # noqa: F401

logger = logging.getLogger(__name__)


def init_db(engine: Engine):
    """Create all tables in the database."""
    logger.info("Creating notification tables...")
    SQLModel.metadata.create_all(engine)
    logger.info("Notification tables ready")
