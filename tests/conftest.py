import pytest
from unittest.mock import Mock, MagicMock
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from main import app
from app.database import get_db
from app.auth.dependencies import get_current_user
from app.models import (
    Base,
    User,
    Course,
    Purchase,
    PurchaseStatus,
    Subscription,
    SubscriptionPlan,
    SubscriptionStatus,
    SubscriptionInterval,
)


@pytest.fixture
def mock_db():
    """Mock database session"""
    db = MagicMock()
    db.query.return_value = db
    db.filter.return_value = db
    db.order_by.return_value = db
    db.first.return_value = None
    db.all.return_value = []
    db.count.return_value = 0
    return db


@pytest.fixture
def mock_user():
    """Mock buyer"""
    user = Mock(spec=User)
    user.id = 7
    user.email = "buyer@test.com"
    user.name = "Buyer"
    return user


@pytest.fixture
def client_with_user(mock_db, mock_user):
    """TestClient with an authenticated buyer and mocked DB"""
    app.dependency_overrides[get_db] = lambda: mock_db
    app.dependency_overrides[get_current_user] = lambda: mock_user
    client = TestClient(app)
    yield client, mock_db, mock_user
    app.dependency_overrides.clear()


@pytest.fixture
def unauthenticated_client(mock_db):
    """TestClient with mocked DB but no auth"""
    app.dependency_overrides[get_db] = lambda: mock_db
    client = TestClient(app)
    yield client, mock_db
    app.dependency_overrides.clear()


@pytest.fixture
def client():
    return TestClient(app)


# ---------------------------------------------------------------------------
# Real database (SQLite file) for ledger / settlement behaviour
# ---------------------------------------------------------------------------


@pytest.fixture
def session_factory(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'ledger.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


class Factory:
    """Row builders that commit, so every test starts from persisted state"""

    def __init__(self, db):
        self.db = db
        self._seq = 0

    def _next(self):
        self._seq += 1
        return self._seq

    def _save(self, obj):
        self.db.add(obj)
        self.db.commit()
        self.db.refresh(obj)
        return obj

    def user(self, email=None, name="Buyer"):
        n = self._next()
        return self._save(User(email=email or f"user{n}@test.com", name=name))

    def course(self, price_cents=19900, inventory=None, currency="usd", is_published=True, slug=None):
        n = self._next()
        return self._save(Course(
            slug=slug or f"course-{n}",
            title=f"Course {n}",
            price_cents=price_cents,
            currency=currency,
            inventory=inventory,
            is_published=is_published,
        ))

    def purchase(self, user, course, provider_ref="ORDER-1", status=PurchaseStatus.PENDING):
        return self._save(Purchase(
            user_id=user.id,
            course_id=course.id,
            amount_cents=course.price_cents,
            currency=course.currency,
            status=status,
            provider="paypal",
            provider_ref=provider_ref,
        ))

    def plan(self, name="Pro", monthly="P-MONTH", annual="P-YEAR"):
        return self._save(SubscriptionPlan(
            name=name,
            tier="pro",
            price_monthly_cents=2900,
            price_annual_cents=29000,
            paypal_monthly_plan_id=monthly,
            paypal_annual_plan_id=annual,
        ))

    def subscription(
        self, user, plan, status=SubscriptionStatus.PENDING, paypal_id=None,
        interval=SubscriptionInterval.MONTH, period_end=None, created_at=None,
    ):
        sub = Subscription(
            user_id=user.id,
            plan_id=plan.id,
            status=status,
            paypal_subscription_id=paypal_id,
            interval=interval,
            current_period_end=period_end,
        )
        if created_at is not None:
            sub.created_at = created_at
        return self._save(sub)


@pytest.fixture
def factory(db):
    return Factory(db)
