from __future__ import annotations

from sqlalchemy import text

from tourvault.db.migrations import apply_migrations
from tourvault.db.models import Base
from tourvault.db.session import get_engine


def initialize_database() -> None:
    engine = get_engine()
    Base.metadata.create_all(bind=engine)
    apply_migrations(engine)

    if engine.url.drivername.startswith("sqlite"):
        with engine.connect() as conn:
            conn.execute(text("PRAGMA optimize;"))
            conn.commit()
