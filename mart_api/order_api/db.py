import os
from order_api import settings
from order_api.models import Orders
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine, Session


URL = settings.TEST_DATABASE_URL if os.getenv("TESTING") == "1" else settings.DATABASE_URL
connection_string = str(URL).replace(
    "postgresql://", "postgresql+psycopg://"
)


def build_engine(url: str):
    if url.startswith("sqlite"):
        # a single shared connection keeps in-memory databases alive across sessions
        return create_engine(
            url, connect_args={"check_same_thread": False}, poolclass=StaticPool
        )
    # recycle connections after 5 minutes
    # to correspond with the compute scale down
    return create_engine(url, pool_recycle=300)


engine = build_engine(connection_string)


def create_db_and_tables() -> None:
    SQLModel.metadata.create_all(engine, tables=[Orders.__table__])


def get_session():
    with Session(engine) as session:
        yield session
