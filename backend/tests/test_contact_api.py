import asyncio
import uuid
from typing import Dict

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from app.core.config import ContactPolicy, EmailPolicy
from app.core.security import create_access_token, hash_password
from app.db.base import Base
from app.db.session import get_session
from app.main import app
from app.models.audit import AdminAuditLog
from app.models.contact import ContactMessage
from app.models.user import User, UserRole
from app.services import email as email_service


@pytest.fixture
def test_app() -> Dict[str, object]:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    SessionLocal = async_sessionmaker(engine, expire_on_commit=False)

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())

    async def override_get_session():
        async with SessionLocal() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    original_policy = app.state.contact_policy
    client = TestClient(app)
    yield {"client": client, "session_factory": SessionLocal}
    client.close()
    app.state.contact_policy = original_policy
    app.dependency_overrides.clear()


def auth_headers(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def create_user_token(session_factory, *, email: str, role: UserRole) -> tuple[str, uuid.UUID]:
    async def _create() -> tuple[str, uuid.UUID]:
        async with session_factory() as session:
            user = User(email=email, hashed_password=hash_password("pass123"), name=email.split("@")[0], role=role)
            session.add(user)
            await session.commit()
            await session.refresh(user)
            return create_access_token(str(user.id)), user.id

    return asyncio.run(_create())


def _submit(client: TestClient, **overrides) -> dict:
    payload = {
        "name": "Jane Customer",
        "email": "jane@example.com",
        "message": "My order arrived damaged.",
        "terms_agreed": True,
    }
    payload.update(overrides)
    res = client.post("/api/v1/contact", json=payload)
    assert res.status_code == 201, res.text
    return res.json()


def _audit_actions(session_factory) -> list[str]:
    async def _load() -> list[str]:
        async with session_factory() as session:
            rows = (
                await session.execute(select(AdminAuditLog).where(AdminAuditLog.entity == "contact_message"))
            ).scalars().all()
            return sorted(r.action for r in rows)

    return asyncio.run(_load())


def test_contact_submission_requires_terms(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]

    res = client.post(
        "/api/v1/contact",
        json={"name": "Jane", "email": "jane@example.com", "message": "Hello", "terms_agreed": False},
    )
    assert res.status_code == 400

    res = client.post(
        "/api/v1/contact", json={"name": "Jane", "email": "not-an-email", "message": "Hi", "terms_agreed": True}
    )
    assert res.status_code == 422

    created = _submit(client)
    assert created["status"] == "new"
    assert created["responses"] == []

    assert client.get("/api/v1/metrics").json()["contact_messages"] == 1


def test_contact_submission_sends_emails_when_enabled(
    test_app: Dict[str, object], monkeypatch: pytest.MonkeyPatch
) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    sent: list[tuple[str, str]] = []

    async def _fake_send(policy, to_email, subject, text_body, html_body=None):
        sent.append((to_email, subject))
        return True

    monkeypatch.setattr(email_service, "send_email", _fake_send)
    app.state.contact_policy = ContactPolicy(support_email="support@shop.test", email=EmailPolicy(enabled=True))

    _submit(client, name="Jane")

    recipients = sorted(to for to, _ in sent)
    assert recipients == ["jane@example.com", "support@shop.test"]
    assert any("Jane" in subject for _, subject in sent)


def test_contact_submission_skips_emails_when_disabled(
    test_app: Dict[str, object], monkeypatch: pytest.MonkeyPatch
) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    sent: list[str] = []

    async def _fake_send(policy, to_email, subject, text_body, html_body=None):
        sent.append(to_email)
        return True

    monkeypatch.setattr(email_service, "send_email", _fake_send)
    app.state.contact_policy = ContactPolicy(support_email="support@shop.test", email=EmailPolicy(enabled=False))

    _submit(client)

    assert sent == []


def test_admin_contact_workflow(test_app: Dict[str, object], monkeypatch: pytest.MonkeyPatch) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    SessionLocal = test_app["session_factory"]  # type: ignore[assignment]
    support_token, support_id = create_user_token(SessionLocal, email="support@example.com", role=UserRole.support)
    customer_token, customer_id = create_user_token(SessionLocal, email="buyer@example.com", role=UserRole.customer)
    sent: list[tuple[str, str]] = []

    async def _fake_send(policy, to_email, subject, text_body, html_body=None):
        sent.append((to_email, text_body))
        return True

    monkeypatch.setattr(email_service, "send_email", _fake_send)
    created = _submit(client)
    app.state.contact_policy = ContactPolicy(email=EmailPolicy(enabled=True))
    message_id = created["id"]

    assert client.get("/api/v1/contact/admin", headers=auth_headers(customer_token)).status_code == 403

    res = client.patch(
        f"/api/v1/contact/admin/{message_id}/status",
        json={"status": "resolved"},
        headers=auth_headers(support_token),
    )
    assert res.status_code == 200, res.text
    assert res.json()["status"] == "resolved"
    assert sent and sent[-1][0] == "jane@example.com"

    res = client.post(
        f"/api/v1/contact/admin/{message_id}/assign",
        json={"assignee_id": str(support_id)},
        headers=auth_headers(support_token),
    )
    assert res.status_code == 200
    assert res.json()["assignee"]["id"] == str(support_id)

    res = client.post(
        f"/api/v1/contact/admin/{message_id}/assign",
        json={"assignee_id": str(customer_id)},
        headers=auth_headers(support_token),
    )
    assert res.status_code == 400

    res = client.post(
        f"/api/v1/contact/admin/{message_id}/respond",
        json={"message": "too short"},
        headers=auth_headers(support_token),
    )
    assert res.status_code == 400

    res = client.post(
        f"/api/v1/contact/admin/{message_id}/respond",
        json={"message": "We are sending a replacement today."},
        headers=auth_headers(support_token),
    )
    assert res.status_code == 200, res.text
    responses = res.json()["responses"]
    assert [r["message"] for r in responses] == ["We are sending a replacement today."]
    assert responses[0]["responder_user_id"] == str(support_id)
    assert "We are sending a replacement today." in sent[-1][1]

    assert _audit_actions(SessionLocal) == ["assign", "respond", "update_status"]


def test_admin_contact_list_filters_and_pagination(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    SessionLocal = test_app["session_factory"]  # type: ignore[assignment]
    admin_token, _ = create_user_token(SessionLocal, email="admin@example.com", role=UserRole.admin)
    first = _submit(client, name="Alice", email="alice@example.com", message="Where is my parcel?")
    _submit(client, name="Bob", email="bob@example.com", message="Invoice request")
    _submit(client, name="Carol", email="carol@example.com", message="Parcel never came")

    client.patch(
        f"/api/v1/contact/admin/{first['id']}/status",
        json={"status": "in_progress"},
        headers=auth_headers(admin_token),
    )

    res = client.get("/api/v1/contact/admin", params={"q": "parcel"}, headers=auth_headers(admin_token))
    assert res.status_code == 200
    assert sorted(i["name"] for i in res.json()["items"]) == ["Alice", "Carol"]

    res = client.get("/api/v1/contact/admin", params={"status": "in_progress"}, headers=auth_headers(admin_token))
    assert [i["name"] for i in res.json()["items"]] == ["Alice"]

    res = client.get("/api/v1/contact/admin", params={"limit": 2, "page": 2}, headers=auth_headers(admin_token))
    body = res.json()
    assert body["meta"] == {"total_items": 3, "total_pages": 2, "page": 2, "limit": 2}
    assert len(body["items"]) == 1


def test_admin_contact_soft_delete_restore_and_purge(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    SessionLocal = test_app["session_factory"]  # type: ignore[assignment]
    admin_token, _ = create_user_token(SessionLocal, email="admin@example.com", role=UserRole.admin)
    message_id = _submit(client)["id"]

    res = client.delete(f"/api/v1/contact/admin/{message_id}", headers=auth_headers(admin_token))
    assert res.status_code == 204
    assert client.get(f"/api/v1/contact/admin/{message_id}", headers=auth_headers(admin_token)).status_code == 404
    assert client.get("/api/v1/contact/admin", headers=auth_headers(admin_token)).json()["meta"]["total_items"] == 0

    res = client.post(f"/api/v1/contact/admin/{message_id}/restore", headers=auth_headers(admin_token))
    assert res.status_code == 200
    assert res.json()["id"] == message_id

    res = client.post(f"/api/v1/contact/admin/{message_id}/restore", headers=auth_headers(admin_token))
    assert res.status_code == 400

    res = client.delete(f"/api/v1/contact/admin/{message_id}/permanent", headers=auth_headers(admin_token))
    assert res.status_code == 204

    async def _count() -> int:
        async with SessionLocal() as session:
            return len((await session.execute(select(ContactMessage))).scalars().all())

    assert asyncio.run(_count()) == 0
    assert client.get(f"/api/v1/contact/admin/{message_id}", headers=auth_headers(admin_token)).status_code == 404
    assert _audit_actions(SessionLocal) == ["delete", "permanent_delete", "restore"]
