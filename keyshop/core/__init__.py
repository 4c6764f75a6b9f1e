from keyshop.core.config import settings
from keyshop.core.database import Base, AsyncSessionLocal, get_db_session
