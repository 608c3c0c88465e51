"""
Database initialization script
Creates the release pipeline tables
"""
import logging
from estate_release.database import engine as default_engine
from estate_release.models import Base

logger = logging.getLogger(__name__)

def init_database(engine=None):
    """Create all tables that do not exist yet"""
    engine = engine or default_engine
    Base.metadata.create_all(bind=engine)
    logger.info(f"Database ready ({len(Base.metadata.tables)} tables)")

if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    init_database()
