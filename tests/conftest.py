import pathlib
import sys
from decimal import Decimal

import jwt
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

# Ensure the repo root is on sys.path so `import destexplore` works without installing.
sys.path.insert(0, str(pathlib.Path(__file__).resolve().parents[1]))

from destexplore import events, octorate, ratelimit  # noqa: E402
from destexplore.db import get_engine, session  # noqa: E402
from destexplore.main import app  # noqa: E402
from destexplore.models import Base, Business, Hotel, Omd, Room, UserProfile  # noqa: E402


def auth_headers(role: str = "super_admin", **claims) -> dict[str, str]:
    token = jwt.encode({"role": role, **claims}, "dev-secret-change-me", algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def client(engine):
    app.dependency_overrides[get_engine] = lambda: engine
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def _broker_down(monkeypatch):
    # Events are best-effort; no test needs a running RabbitMQ.
    async def _down(*args, **kwargs):
        raise ConnectionError("rabbitmq down")

    monkeypatch.setattr(events, "EVENTS_STRICT", False)
    monkeypatch.setattr(events.aio_pika, "connect_robust", _down)


@pytest.fixture(autouse=True)
def _fresh_rate_limiter():
    octorate.limiter.reset()
    ratelimit.reset_all()
    yield
    octorate.limiter.reset()
    ratelimit.reset_all()


@pytest.fixture
def seed(engine):
    """
    One approved destination with one hotel and one 100 RON room.

    Returns a dict of ids; pass keyword arguments to override room columns.
    """

    def _seed(business_email: str | None = "hotel@example.com", pms_type: str = "internal", **room_kwargs):
        with session(engine) as s:
            omd = Omd(slug="sibiu", name="Sibiu", status="approved")
            s.add(omd)
            s.flush()
            business = Business(
                omd_id=omd.id,
                name="Hotel Continental",
                slug="hotel-continental",
                business_type="hotel",
                status="active",
                contact={"email": business_email} if business_email else {},
            )
            s.add(business)
            s.flush()
            hotel = Hotel(business_id=business.id, pms_type=pms_type)
            s.add(hotel)
            s.flush()
            room_values = {
                "name": "Double Room",
                "room_type": "double",
                "base_price": Decimal("100.00"),
                "max_occupancy": 2,
                "min_stay_nights": 1,
                "quantity": 1,
                "is_active": True,
            }
            room_values.update(room_kwargs)
            room = Room(hotel_id=hotel.id, **room_values)
            s.add(room)
            s.add(UserProfile(omd_id=omd.id, role="omd_admin", name="Ana Admin", email="admin@sibiu.example"))
            s.commit()
            return {"omd_id": omd.id, "business_id": business.id, "hotel_id": hotel.id, "room_id": room.id}

    return _seed


def booking_payload(room_id: str, **overrides) -> dict:
    payload = {
        "room_id": room_id,
        "check_in": "2030-07-10",
        "check_out": "2030-07-13",
        "adults": 2,
        "children": 0,
        "first_name": "Ion",
        "last_name": "Popescu",
        "email": "ion@example.com",
        "phone": "+40700000000",
    }
    payload.update(overrides)
    return payload
