"""
Test configuration and fixtures for PeerLoan backend tests.
"""
import pytest
from typing import AsyncGenerator
from decimal import Decimal
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool
from httpx import AsyncClient, ASGITransport

from app.core.database import Base, get_db
from app.core.security import create_access_token, get_password_hash
from app.modules.users.models import User
from app.modules.loans.models import RepaymentUnit, PaymentFrequency
from app.modules.loans.schemas import LoanOfferCreate
from app.modules.loans.services import LoanAgreementService
from app.modules.payments.services import PaymentService
from main import app


# ============================================================
# Database Fixtures
# ============================================================

# Use SQLite for testing (in-memory, fresh per test)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TEST_PASSWORD = "Password123"


@pytest.fixture
async def test_engine():
    """Create test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
async def db_session(test_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for each test"""
    async_session = async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with async_session() as session:
        yield session


@pytest.fixture
async def file_sessions(tmp_path):
    """Session factory over a file-backed database, so each session gets its own connection"""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'peerloan.db'}", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def redis_mock():
    """In-memory stand-in for the token blacklist"""
    redis = AsyncMock()
    redis.get.return_value = None
    get_redis = AsyncMock(return_value=redis)
    with patch("app.core.dependencies.get_redis", get_redis), \
            patch("app.modules.users.services.get_redis", get_redis):
        yield redis


@pytest.fixture
async def client(db_session, redis_mock) -> AsyncGenerator[AsyncClient, None]:
    """Create test client with database override"""

    async def override_get_db():
        try:
            yield db_session
            await db_session.commit()
        except Exception:
            await db_session.rollback()
            raise

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ============================================================
# User Fixtures
# ============================================================

async def create_user(db: AsyncSession, username: str, full_name: str, **extra) -> int:
    user = User(
        email=f"{username}@peerloan.dev",
        hashed_password=get_password_hash(TEST_PASSWORD),
        username=username,
        full_name=full_name,
        is_active=True,
        **extra
    )
    db.add(user)
    await db.commit()
    await db.refresh(user)
    return user.id


@pytest.fixture
async def lender_id(db_session) -> int:
    return await create_user(
        db_session, "alex", "Alex Lender",
        venmo_username="alex-lends", cashapp_handle="alexcash"
    )


@pytest.fixture
async def borrower_id(db_session) -> int:
    return await create_user(db_session, "jane", "Jane Doe")


@pytest.fixture
async def outsider_id(db_session) -> int:
    return await create_user(db_session, "sam", "Sam Stranger")


def headers_for(user_id: int) -> dict:
    token = create_access_token(data={"sub": str(user_id)})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def lender_headers(lender_id):
    return headers_for(lender_id)


@pytest.fixture
def borrower_headers(borrower_id):
    return headers_for(borrower_id)


@pytest.fixture
def outsider_headers(outsider_id):
    return headers_for(outsider_id)


# ============================================================
# Loan Fixtures
# ============================================================

@pytest.fixture
def offer_terms(borrower_id):
    """Factory for offer payloads: $500 at 5% over 6 months, paid monthly"""

    def _terms(**overrides) -> LoanOfferCreate:
        data = dict(
            borrower_id=borrower_id,
            amount=Decimal("500"),
            interest_rate=Decimal("5"),
            repayment_period=6,
            repayment_unit=RepaymentUnit.MONTHS,
            payment_frequency=PaymentFrequency.MONTHLY,
            purpose="Car repair",
            lender_signature="Alex Lender"
        )
        data.update(overrides)
        return LoanOfferCreate(**data)

    return _terms


@pytest.fixture
async def pending_loan_id(db_session, lender_id, offer_terms) -> int:
    loan = await LoanAgreementService(db_session).create_offer(lender_id, offer_terms())
    return loan.id


@pytest.fixture
def signed_at():
    return datetime(2026, 1, 10, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
async def active_loan_id(db_session, pending_loan_id, borrower_id, signed_at) -> int:
    await LoanAgreementService(db_session).sign(pending_loan_id, borrower_id, "Jane Doe", now=signed_at)
    return pending_loan_id


@pytest.fixture
async def shared_pending_payment(file_sessions):
    """Active loan with one borrower-recorded payment, committed to the shared database"""
    async with file_sessions() as session:
        lender_id = await create_user(session, "alex", "Alex Lender")
        borrower_id = await create_user(session, "jane", "Jane Doe")
        offer = LoanOfferCreate(
            borrower_id=borrower_id,
            amount=Decimal("500"),
            interest_rate=Decimal("5"),
            repayment_period=6,
            repayment_unit=RepaymentUnit.MONTHS,
            payment_frequency=PaymentFrequency.MONTHLY,
            lender_signature="Alex Lender"
        )
        service = LoanAgreementService(session)
        loan = await service.create_offer(lender_id, offer)
        await service.sign(loan.id, borrower_id, "Jane Doe")
        payment = await PaymentService(session).record_payment(loan.id, borrower_id, Decimal("90"))
        return {
            "lender_id": lender_id,
            "borrower_id": borrower_id,
            "loan_id": loan.id,
            "payment_id": payment.id
        }
