from sqlalchemy.engine import Engine

from app.db.base import Base
from app.db.session import engine as default_engine

# registers every table on Base.metadata
from app import models  # noqa: F401


def init_db(engine: Engine | None = None) -> None:
    Base.metadata.create_all(bind=engine or default_engine)
