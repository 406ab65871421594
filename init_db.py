from auditflow.core.config import get_settings
from auditflow.db import Base, build_engine
from auditflow.models import *  # noqa


def init_db():
    database_url = get_settings().database_url
    engine = build_engine(database_url)
    print(f"Connecting to {database_url}")
    Base.metadata.create_all(bind=engine)
    print("Tables created successfully")


if __name__ == "__main__":
    init_db()
