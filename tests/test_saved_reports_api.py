from __future__ import annotations

import uuid
from collections.abc import Callable, Generator
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from backoffice import audit
from backoffice.core.auth import AuthUser, get_current_user
from backoffice.core.config import get_settings
from backoffice.core.database import Base, get_db
from backoffice.crm.models import Account, Donation
from backoffice.main import app
from backoffice.reporting.models import SavedReport


OWNER = AuthUser(sub="user-1", roles=["staff"])
COLLEAGUE = AuthUser(sub="user-2", roles=["staff"])
FUNDRAISER = AuthUser(sub="user-3", roles=["fundraising"])
ADMIN = AuthUser(sub="root", roles=["admin"])

DEFINITION = {
    "entity": "donations",
    "fields": ["donation_number", "amount"],
    "sort": [{"field": "donation_number", "direction": "asc"}],
}


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_stubs() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    get_settings.cache_clear()


@pytest.fixture()
def seeded(db_session: Session) -> uuid.UUID:
    account = Account(account_name="Hope Foundation", account_type="organization")
    db_session.add(account)
    db_session.flush()
    db_session.add_all(
        [
            Donation(donation_number="D-1", account_id=account.id, amount=Decimal("100.00"), donation_date=date(2026, 5, 1)),
            Donation(donation_number="D-2", account_id=account.id, amount=Decimal("40.00"), donation_date=date(2026, 5, 2)),
            Donation(donation_number="D-3", amount=Decimal("15.00"), donation_date=date(2026, 5, 3)),
        ]
    )
    db_session.commit()
    return account.id


@pytest.fixture()
def client(db_session: Session) -> Generator[tuple[TestClient, Callable[[AuthUser], None]], None, None]:
    state = {"user": OWNER}

    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> AuthUser:
        return state["user"]

    def set_user(user: AuthUser) -> None:
        state["user"] = user

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client, set_user
    app.dependency_overrides.clear()


def _create(test_client: TestClient, name: str = "Major Donors", definition: dict | None = None) -> dict:
    response = test_client.post(
        "/reports/saved",
        json={"name": name, "description": "Top gifts", "definition": definition or DEFINITION},
    )
    assert response.status_code == 201, response.text
    return response.json()


def test_create_saved_report_is_private(client: tuple[TestClient, Callable[[AuthUser], None]]) -> None:
    test_client, _ = client
    created = _create(test_client)

    assert created["owner_user_id"] == "user-1"
    assert created["entity"] == "donations"
    assert created["sharing_state"] == "private"
    assert created["is_public"] is False
    assert created["public_token"] is None
    assert created["can_edit"] is True
    assert created["definition"]["fields"] == ["donation_number", "amount"]

    entries = audit.entries_for("reports.saved", created["id"])
    assert [entry["action"] for entry in entries] == ["saved_report.created"]
    assert entries[0]["actor_user_id"] == "user-1"


def test_create_rejects_invalid_definition(client: tuple[TestClient, Callable[[AuthUser], None]]) -> None:
    test_client, _ = client

    response = test_client.post("/reports/saved", json={"name": "Broken", "definition": {"entity": "donations", "fields": []}})
    assert response.status_code == 400
    assert response.json()["error"] == "At least one field must be selected"

    response = test_client.post("/reports/saved", json={"name": "Broken", "definition": {"entity": "pledges", "fields": ["id"]}})
    assert response.status_code == 400
    assert response.json()["code"] == "UNKNOWN_ENTITY"

    response = test_client.post("/reports/saved", json={"name": "", "definition": DEFINITION})
    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_ERROR"


def test_share_unshare_lifecycle(client: tuple[TestClient, Callable[[AuthUser], None]]) -> None:
    test_client, set_user = client
    report_id = _create(test_client)["id"]

    set_user(COLLEAGUE)
    assert test_client.get(f"/reports/saved/{report_id}").status_code == 404

    set_user(OWNER)
    shared = test_client.post(f"/reports/saved/{report_id}/share", json={"user_ids": ["user-2"]})
    assert shared.status_code == 200
    assert shared.json()["sharing_state"] == "shared"
    assert [(item["grantee_type"], item["grantee_id"]) for item in shared.json()["shares"]] == [("user", "user-2")]

    set_user(COLLEAGUE)
    visible = test_client.get(f"/reports/saved/{report_id}")
    assert visible.status_code == 200
    assert visible.json()["can_edit"] is False
    assert visible.json()["shares"] == []

    response = test_client.patch(f"/reports/saved/{report_id}", json={"name": "Renamed"})
    assert response.status_code == 403
    assert response.json()["code"] == "FORBIDDEN"

    response = test_client.post(f"/reports/saved/{report_id}/share", json={"user_ids": ["user-9"]})
    assert response.status_code == 403
    assert response.json()["error"] == "Only the owner can share this saved report"

    set_user(OWNER)
    unshared = test_client.post(f"/reports/saved/{report_id}/unshare", json={"user_ids": ["user-2"]})
    assert unshared.status_code == 200
    assert unshared.json()["sharing_state"] == "revoked"
    assert unshared.json()["shares"] == []

    set_user(COLLEAGUE)
    assert test_client.get(f"/reports/saved/{report_id}").status_code == 404

    set_user(OWNER)
    response = test_client.post(f"/reports/saved/{report_id}/public-link")
    assert response.status_code == 409
    assert response.json()["code"] == "SHARING_CONFLICT"
    assert response.json()["details"] == {"from_state": "revoked", "to_state": "public"}

    reshared = test_client.post(f"/reports/saved/{report_id}/share", json={"role_names": ["fundraising"]})
    assert reshared.json()["sharing_state"] == "shared"

    trail = test_client.get(f"/reports/saved/{report_id}/audit")
    assert [entry["action"] for entry in trail.json()] == [
        "saved_report.created",
        "saved_report.shared",
        "saved_report.unshared",
        "saved_report.shared",
    ]
    assert trail.json()[1]["before"]["sharing_state"] == "private"
    assert trail.json()[1]["after"]["sharing_state"] == "shared"


def test_share_requires_a_grantee(client: tuple[TestClient, Callable[[AuthUser], None]]) -> None:
    test_client, _ = client
    report_id = _create(test_client)["id"]

    response = test_client.post(f"/reports/saved/{report_id}/share", json={"user_ids": ["  "]})

    assert response.status_code == 400
    assert response.json()["error"] == "At least one user or role must be named to share a report"


def test_revoking_a_private_report_conflicts(client: tuple[TestClient, Callable[[AuthUser], None]]) -> None:
    test_client, _ = client
    report_id = _create(test_client)["id"]

    response = test_client.delete(f"/reports/saved/{report_id}/public-link")

    assert response.status_code == 409
    assert response.json()["details"] == {"from_state": "private", "to_state": "revoked"}


def test_revoked_report_can_return_to_private(client: tuple[TestClient, Callable[[AuthUser], None]]) -> None:
    test_client, set_user = client
    report_id = _create(test_client)["id"]

    response = test_client.post(f"/reports/saved/{report_id}/private")
    assert response.status_code == 409
    assert response.json()["details"] == {"from_state": "private", "to_state": "private"}

    test_client.post(f"/reports/saved/{report_id}/share", json={"user_ids": ["user-2"]})
    test_client.post(f"/reports/saved/{report_id}/unshare", json={"user_ids": ["user-2"]})

    set_user(COLLEAGUE)
    assert test_client.post(f"/reports/saved/{report_id}/private").status_code == 404

    set_user(OWNER)
    restored = test_client.post(f"/reports/saved/{report_id}/private")
    assert restored.status_code == 200
    assert restored.json()["sharing_state"] == "private"

    published = test_client.post(f"/reports/saved/{report_id}/public-link")
    assert published.status_code == 200

    trail = test_client.get(f"/reports/saved/{report_id}/audit").json()
    assert trail[-2]["action"] == "saved_report.made_private"
    assert trail[-2]["before"]["sharing_state"] == "revoked"

def test_public_link_publish_rotate_and_revoke(client: tuple[TestClient, Callable[[AuthUser], None]]) -> None:
    test_client, _ = client
    report_id = _create(test_client)["id"]

    first = test_client.post(f"/reports/saved/{report_id}/public-link")
    assert first.status_code == 200
    token = first.json()["token"]
    assert first.json()["path"] == f"/reports/public/{token}"
    assert first.json()["expires_at"] is None

    public = test_client.get(f"/reports/public/{token}")
    assert public.status_code == 200
    assert public.json()["name"] == "Major Donors"
    assert public.json()["definition"]["entity"] == "donations"
    assert "data" not in public.json()

    shared = test_client.post(f"/reports/saved/{report_id}/share", json={"user_ids": ["user-2"]})
    assert shared.json()["sharing_state"] == "public"

    rotated = test_client.post(f"/reports/saved/{report_id}/public-link").json()["token"]
    assert rotated != token
    assert test_client.get(f"/reports/public/{token}").status_code == 404
    assert test_client.get(f"/reports/public/{rotated}").status_code == 200

    revoked = test_client.delete(f"/reports/saved/{report_id}/public-link")
    assert revoked.status_code == 200
    assert revoked.json()["sharing_state"] == "revoked"
    assert revoked.json()["is_public"] is False
    assert revoked.json()["shares"] == []
    assert test_client.get(f"/reports/public/{rotated}").status_code == 404

    assert test_client.delete(f"/reports/saved/{report_id}/public-link").status_code == 409


def test_expired_public_link_is_not_found(
    client: tuple[TestClient, Callable[[AuthUser], None]],
    db_session: Session,
) -> None:
    test_client, _ = client
    report_id = _create(test_client)["id"]
    published = test_client.post(f"/reports/saved/{report_id}/public-link", json={"expires_in_days": 7})
    token = published.json()["token"]
    assert published.json()["expires_at"] is not None
    assert test_client.get(f"/reports/public/{token}").status_code == 200

    report = db_session.scalar(select(SavedReport).where(SavedReport.id == uuid.UUID(report_id)))
    report.public_token_expires_at = datetime.now(timezone.utc) - timedelta(minutes=1)
    db_session.commit()

    response = test_client.get(f"/reports/public/{token}")
    assert response.status_code == 404
    assert response.json()["error"] == "Saved report not found"


def test_public_link_rejects_bad_expiry(client: tuple[TestClient, Callable[[AuthUser], None]]) -> None:
    test_client, _ = client
    report_id = _create(test_client)["id"]

    response = test_client.post(f"/reports/saved/{report_id}/public-link", json={"expires_in_days": 0})

    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_ERROR"


def test_role_grant_with_edit_allows_update(client: tuple[TestClient, Callable[[AuthUser], None]]) -> None:
    test_client, set_user = client
    report_id = _create(test_client)["id"]
    test_client.post(f"/reports/saved/{report_id}/share", json={"role_names": ["fundraising"], "can_edit": True})

    set_user(FUNDRAISER)
    response = test_client.patch(
        f"/reports/saved/{report_id}",
        json={"name": "Major Donors 2026", "definition": {**DEFINITION, "fields": ["donation_number"]}},
    )

    assert response.status_code == 200
    assert response.json()["name"] == "Major Donors 2026"
    assert response.json()["definition"]["fields"] == ["donation_number"]
    assert response.json()["can_edit"] is True

    response = test_client.delete(f"/reports/saved/{report_id}")
    assert response.status_code == 403


def test_update_validates_new_definition(client: tuple[TestClient, Callable[[AuthUser], None]]) -> None:
    test_client, _ = client
    report_id = _create(test_client)["id"]

    response = test_client.patch(
        f"/reports/saved/{report_id}",
        json={"definition": {"entity": "donations", "fields": ["amount"], "sort": [{"field": "notes"}]}},
    )

    assert response.status_code == 400
    assert response.json()["details"][0]["code"] == "unknown_field"


def test_expired_grant_hides_report(client: tuple[TestClient, Callable[[AuthUser], None]]) -> None:
    test_client, set_user = client
    report_id = _create(test_client)["id"]
    past = (datetime.now(timezone.utc) - timedelta(days=1)).isoformat()
    test_client.post(f"/reports/saved/{report_id}/share", json={"user_ids": ["user-2"], "expires_at": past})

    set_user(COLLEAGUE)
    assert test_client.get(f"/reports/saved/{report_id}").status_code == 404
    assert test_client.get("/reports/saved").json() == []


def test_list_respects_visibility_and_entity(client: tuple[TestClient, Callable[[AuthUser], None]]) -> None:
    test_client, set_user = client
    donations_id = _create(test_client)["id"]
    contacts_id = _create(test_client, "Contact List", {"entity": "contacts", "fields": ["first_name"]})["id"]
    test_client.post(f"/reports/saved/{contacts_id}/share", json={"user_ids": ["user-2"]})

    owner_ids = {item["id"] for item in test_client.get("/reports/saved").json()}
    assert owner_ids == {donations_id, contacts_id}
    assert [item["id"] for item in test_client.get("/reports/saved", params={"entity": "contacts"}).json()] == [contacts_id]

    set_user(COLLEAGUE)
    assert [item["id"] for item in test_client.get("/reports/saved").json()] == [contacts_id]

    set_user(ADMIN)
    assert {item["id"] for item in test_client.get("/reports/saved").json()} == {donations_id, contacts_id}


def test_run_uses_callers_scope_and_paging(
    client: tuple[TestClient, Callable[[AuthUser], None]],
    seeded: uuid.UUID,
) -> None:
    test_client, set_user = client
    report_id = _create(test_client)["id"]

    page = test_client.post(f"/reports/saved/{report_id}/run", json={"limit": 1, "offset": 1})
    assert page.status_code == 200
    assert page.json()["total"] == 3
    assert [row["donation_number"] for row in page.json()["data"]] == ["D-2"]

    scoped = test_client.post(f"/reports/saved/{report_id}/run", headers={"x-scope-account-ids": str(seeded)})
    assert [row["donation_number"] for row in scoped.json()["data"]] == ["D-1", "D-2"]

    test_client.post(f"/reports/saved/{report_id}/public-link")
    set_user(COLLEAGUE)
    public_run = test_client.post(f"/reports/saved/{report_id}/run", headers={"x-scope-account-ids": ""})
    assert public_run.status_code == 200
    assert public_run.json()["total"] == 0


def test_export_saved_report(
    client: tuple[TestClient, Callable[[AuthUser], None]],
    seeded: uuid.UUID,
) -> None:
    test_client, _ = client
    report_id = _create(test_client)["id"]

    response = test_client.post(f"/reports/saved/{report_id}/export", params={"format": "csv"})
    assert response.status_code == 200
    assert response.headers["content-disposition"].startswith('attachment; filename="major-donors-')
    assert response.headers["x-report-row-count"] == "3"

    response = test_client.post(f"/reports/saved/{report_id}/export")
    assert response.status_code == 400
    assert response.json()["code"] == "UNSUPPORTED_FORMAT"


def test_soft_delete_hides_report(client: tuple[TestClient, Callable[[AuthUser], None]], db_session: Session) -> None:
    test_client, _ = client
    report_id = _create(test_client)["id"]
    token = test_client.post(f"/reports/saved/{report_id}/public-link").json()["token"]

    response = test_client.delete(f"/reports/saved/{report_id}")
    assert response.status_code == 204

    assert test_client.get(f"/reports/saved/{report_id}").status_code == 404
    assert test_client.get(f"/reports/public/{token}").status_code == 404
    assert test_client.get("/reports/saved").json() == []
    stored = db_session.scalar(select(SavedReport).where(SavedReport.id == uuid.UUID(report_id)))
    assert stored is not None
    assert stored.deleted_at is not None
    assert audit.entries_for("reports.saved", report_id)[-1]["action"] == "saved_report.deleted"


def test_hard_delete_removes_row(client: tuple[TestClient, Callable[[AuthUser], None]], db_session: Session) -> None:
    test_client, _ = client
    report_id = _create(test_client)["id"]
    test_client.post(f"/reports/saved/{report_id}/share", json={"user_ids": ["user-2"]})

    response = test_client.delete(f"/reports/saved/{report_id}", params={"hard": "true"})

    assert response.status_code == 204
    assert db_session.scalar(select(SavedReport).where(SavedReport.id == uuid.UUID(report_id))) is None
    assert audit.entries_for("reports.saved", report_id)[-1]["action"] == "saved_report.hard_deleted"


def test_unknown_and_malformed_ids(client: tuple[TestClient, Callable[[AuthUser], None]]) -> None:
    test_client, _ = client

    response = test_client.get(f"/reports/saved/{uuid.uuid4()}")
    assert response.status_code == 404
    assert response.json()["code"] == "NOT_FOUND"
    assert response.json()["correlation_id"] == response.headers["x-correlation-id"]

    response = test_client.get("/reports/saved/not-a-uuid")
    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_ERROR"
