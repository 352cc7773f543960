from app.db.models import Base
from app.db.session import async_session_maker, engine

__all__ = ["Base", "async_session_maker", "engine"]
