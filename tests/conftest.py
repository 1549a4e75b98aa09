import uuid
from datetime import datetime, timedelta

import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import sourcing.models  # noqa: F401
from sourcing.database import Base
from sourcing.schemas.quote import QuoteItemCreate
from sourcing.schemas.solicitation import LineItemDraft
from sourcing.services import quote_service, solicitation_service
from sourcing.services.auth_service import create_access_token

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

BUYER_ID = uuid.UUID("b0000000-0000-0000-0000-000000000001")
ADMIN_ID = uuid.UUID("a0000000-0000-0000-0000-000000000001")
SUPPLIER_A = uuid.UUID("5a000000-0000-0000-0000-00000000000a")
SUPPLIER_B = uuid.UUID("5b000000-0000-0000-0000-00000000000b")
SUPPLIER_C = uuid.UUID("5c000000-0000-0000-0000-00000000000c")


@pytest.fixture
async def test_engine():
    """In-memory SQLite engine with working SAVEPOINTs."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite's own transaction handling breaks begin_nested(); take it over
    @event.listens_for(engine.sync_engine, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------


def _token(user_id: uuid.UUID, role: str) -> str:
    return create_access_token(user_id=str(user_id), role=role, email=f"{role}@example.com")


@pytest.fixture
def buyer_headers():
    return {"Authorization": f"Bearer {_token(BUYER_ID, 'buyer')}"}


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {_token(ADMIN_ID, 'admin')}"}


@pytest.fixture
def supplier_headers():
    def _headers(supplier_id: uuid.UUID = SUPPLIER_A):
        return {"Authorization": f"Bearer {_token(supplier_id, 'supplier')}"}

    return _headers


# ---------------------------------------------------------------------------
# Service-level builders
# ---------------------------------------------------------------------------


@pytest.fixture
def published_solicitation(db_session):
    """Create and publish a solicitation.

    ``items`` is a list of (product_name, quantity, ceiling, instant) tuples.
    Returns (solicitation, [line items in position order]).
    """

    async def _make(items, title="Office supplies"):
        drafts = [
            LineItemDraft(
                product_name=name,
                quantity=qty,
                ceiling_price_cents=ceiling,
                instant_price_cents=instant,
            )
            for name, qty, ceiling, instant in items
        ]
        solicitation, line_items = await solicitation_service.create_solicitation(
            db_session,
            owner_id=BUYER_ID,
            title=title,
            deadline=datetime.utcnow() + timedelta(days=2),
            drafts=drafts,
        )
        await solicitation_service.publish_solicitation(
            db_session, solicitation.id, actor_id=BUYER_ID
        )
        await db_session.commit()
        return solicitation, line_items

    return _make


@pytest.fixture
def submit_quote(db_session):
    """Submit and commit a quote; ``prices`` maps line item -> unit price in cents."""

    async def _submit(solicitation, supplier_id, prices):
        submission = await quote_service.submit_quote(
            db_session,
            solicitation.id,
            supplier_id,
            [
                QuoteItemCreate(line_item_id=str(li.id), unit_price_cents=price)
                for li, price in prices.items()
            ],
        )
        await db_session.commit()
        return submission

    return _submit
