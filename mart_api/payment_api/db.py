import os
from payment_api import settings
from payment_api.models import Payment
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine, Session


URL = settings.TEST_DATABASE_URL if os.getenv("TESTING") == "1" else settings.DATABASE_URL
connection_string = str(URL).replace(
    "postgresql://", "postgresql+psycopg://"
)


def build_engine(url: str):
    if url.startswith("sqlite"):
        return create_engine(
            url, connect_args={"check_same_thread": False}, poolclass=StaticPool
        )
    return create_engine(url, pool_recycle=300)


engine = build_engine(connection_string)


def create_db_and_tables() -> None:
    # the unique constraint on payment.order_id enforces one payment per order
    SQLModel.metadata.create_all(engine, tables=[Payment.__table__])


def get_session():
    with Session(engine) as session:
        yield session
