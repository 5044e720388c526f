import pathlib
import sys
from datetime import datetime, timedelta, timezone

import jwt
import pytest
from fastapi.testclient import TestClient

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from batchqa.main import create_app
from batchqa.security import Actor, JwtSecurityConfig
from batchqa.settings import WorkflowSettings
from batchqa.store import InMemoryStore

JWT_SECRET = "jwt_test_secret"

MAKER = Actor(user_id="u_maker", role="MAKER", name="Mia Maker")
OTHER_MAKER = Actor(user_id="u_maker2", role="MAKER", name="Omar Other")
CHECKER = Actor(user_id="u_checker", role="CHECKER", name="Cara Checker")
CHECKER_2 = Actor(user_id="u_checker2", role="CHECKER", name="Chen Checker")
ADMIN = Actor(user_id="u_admin", role="ADMIN", name="Ada Admin")

REFERENCE_DATA = {
    "products": [
        {"product_id": "prd_juice", "name": "Mango Juice", "code": "MJ-01"},
    ],
    "categories": [
        {"category_id": "cat_chem", "name": "Chemical"},
        {"category_id": "cat_phys", "name": "Physical"},
        {"category_id": "cat_sens", "name": "Sensory"},
    ],
    "parameters": [
        {"parameter_id": "par_ph", "name": "pH", "category_id": "cat_chem", "data_type": "FLOAT"},
        {"parameter_id": "par_brix", "name": "Brix", "category_id": "cat_chem", "data_type": "FLOAT"},
        {"parameter_id": "par_moisture", "name": "Moisture", "category_id": "cat_phys", "data_type": "PERCENTAGE"},
        {"parameter_id": "par_color", "name": "Color", "category_id": "cat_sens", "data_type": "TEXT"},
        {"parameter_id": "par_odor", "name": "Odor", "category_id": "cat_sens", "data_type": "TEXT"},
    ],
    "standards": [
        {"standard_id": "std_fssai", "name": "FSSAI", "status": "ACTIVE"},
        {"standard_id": "std_legacy", "name": "Legacy", "status": "INACTIVE"},
    ],
    "standard_definitions": [
        {
            "definition_id": "def_ph_old",
            "parameter_id": "par_ph",
            "standard_value": "6.0-6.5",
            "unit_id": "unit_ph",
            "methodology_id": "met_titration",
            "status": "ACTIVE",
            "updated_at": "2025-01-01T00:00:00+00:00",
        },
        {
            "definition_id": "def_ph",
            "parameter_id": "par_ph",
            "standard_value": "5.5-7.5",
            "unit_id": "unit_ph",
            "methodology_id": "met_meter",
            "status": "ACTIVE",
            "updated_at": "2026-01-01T00:00:00+00:00",
        },
        {
            "definition_id": "def_ph_retired",
            "parameter_id": "par_ph",
            "standard_value": "1-2",
            "unit_id": "unit_ph",
            "methodology_id": None,
            "status": "INACTIVE",
            "updated_at": "2026-06-01T00:00:00+00:00",
        },
        {
            "definition_id": "def_brix",
            "parameter_id": "par_brix",
            "standard_value": ">= 12",
            "unit_id": "unit_brix",
            "methodology_id": "met_refractometer",
            "status": "ACTIVE",
            "updated_at": "2026-01-01T00:00:00+00:00",
        },
        {
            "definition_id": "def_moisture",
            "parameter_id": "par_moisture",
            "standard_value": "max: 5",
            "unit_id": "unit_pct",
            "methodology_id": None,
            "status": "ACTIVE",
            "updated_at": "2026-01-01T00:00:00+00:00",
        },
        {
            "definition_id": "def_color",
            "parameter_id": "par_color",
            "standard_value": "Golden",
            "unit_id": None,
            "methodology_id": None,
            "status": "ACTIVE",
            "updated_at": "2026-01-01T00:00:00+00:00",
        },
    ],
    "methodologies": [
        {"methodology_id": "met_meter", "name": "pH Meter"},
        {"methodology_id": "met_titration", "name": "Titration"},
        {"methodology_id": "met_refractometer", "name": "Refractometer"},
    ],
    "units": [
        {"unit_id": "unit_ph", "name": "pH units", "symbol": "pH"},
        {"unit_id": "unit_brix", "name": "Degrees Brix", "symbol": "°Bx"},
        {"unit_id": "unit_pct", "name": "Percent", "symbol": "%"},
    ],
    "users": [
        {"user_id": "u_maker", "name": "Mia Maker", "role": "MAKER"},
        {"user_id": "u_maker2", "name": "Omar Other", "role": "MAKER"},
        {"user_id": "u_checker", "name": "Cara Checker", "role": "CHECKER"},
        {"user_id": "u_checker2", "name": "Chen Checker", "role": "CHECKER"},
        {"user_id": "u_admin", "name": "Ada Admin", "role": "ADMIN"},
    ],
}


class RecordingNotificationSink:
    """Records every notification and forwards it to the wrapped sink."""

    def __init__(self, delegate=None):
        self.delegate = delegate
        self.calls: list[dict] = []

    def notify(self, *, user_id: str, batch_id: str, message: str, notification_type: str) -> None:
        call = {
            "user_id": user_id,
            "batch_id": batch_id,
            "message": message,
            "notification_type": notification_type,
        }
        self.calls.append(call)
        if self.delegate is not None:
            self.delegate.notify(**call)


def batch_payload(**overrides) -> dict:
    payload = {
        "batch_number": "B-001",
        "initial_status": "DRAFT",
        "product_id": "prd_juice",
        "date_of_production": "2026-03-01",
        "best_before_date": "2026-09-01",
        "standard_ids": ["std_fssai"],
        "methodology_ids": ["met_meter"],
        "unit_ids": ["unit_ph"],
        "parameter_values": [
            {"parameter_id": "par_ph", "value": "6.8", "unit_id": "unit_ph"},
        ],
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def settings() -> WorkflowSettings:
    return WorkflowSettings.from_env({})


@pytest.fixture
def store(settings: WorkflowSettings) -> InMemoryStore:
    store = InMemoryStore(settings=settings)
    store.notification_sink = RecordingNotificationSink(delegate=store.notification_sink)
    store.seed_reference_data(REFERENCE_DATA)
    return store


@pytest.fixture
def sink(store: InMemoryStore) -> RecordingNotificationSink:
    return store.notification_sink


@pytest.fixture
def draft_batch(store: InMemoryStore) -> dict:
    return store.create_batch(actor=MAKER, payload=batch_payload())


@pytest.fixture
def submitted_batch(store: InMemoryStore) -> dict:
    return store.create_batch(actor=MAKER, payload=batch_payload(initial_status="SUBMITTED"))


def _issue_token(*, actor: Actor, secret: str = JWT_SECRET, expires_in: int = 1800, **extra) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": actor.user_id,
        "role": actor.role,
        "name": actor.name,
        "exp": int((now + timedelta(seconds=expires_in)).timestamp()),
        "iat": int(now.timestamp()),
        "iss": "test-issuer",
        "aud": "test-audience",
    }
    payload.update(extra)
    return jwt.encode(payload, secret, algorithm="HS256")


class AuthenticatedClient:
    def __init__(self, client: TestClient, *, jwt_secret: str):
        self._client = client
        self._jwt_secret = jwt_secret

    def request(self, method: str, url: str, *, actor: Actor | None = MAKER, **kwargs):
        headers = dict(kwargs.pop("headers", {}) or {})
        if actor is not None and "Authorization" not in headers:
            token = _issue_token(actor=actor, secret=self._jwt_secret)
            headers["Authorization"] = f"Bearer {token}"
        return self._client.request(method, url, headers=headers, **kwargs)

    def __getattr__(self, name: str):
        return getattr(self._client, name)

    def get(self, url: str, **kwargs):
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs):
        return self.request("POST", url, **kwargs)

    def put(self, url: str, **kwargs):
        return self.request("PUT", url, **kwargs)


@pytest.fixture
def security_cfg() -> JwtSecurityConfig:
    return JwtSecurityConfig.from_env(
        {
            "JWT_SHARED_SECRET": JWT_SECRET,
            "JWT_ISSUER": "test-issuer",
            "JWT_AUDIENCE": "test-audience",
        }
    )


@pytest.fixture
def client(store: InMemoryStore, settings: WorkflowSettings, security_cfg: JwtSecurityConfig):
    app = create_app(store=store, settings=settings, security_cfg=security_cfg)
    return AuthenticatedClient(TestClient(app), jwt_secret=JWT_SECRET)
