import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.db.database import Base, get_db
from app.db.models import Agent, Tenant, TenantIntegration, Trigger, WhatsAppAccount
from app.services.messaging_gateway_service import SendResult, messaging_gateway_service
from app.services.llm_service import openai_llm_service

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def client(db):
    from app.core.app import app

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def tenant(db):
    tenant = Tenant(name="Muster GmbH")
    db.add(tenant)
    db.commit()
    db.refresh(tenant)
    return tenant


@pytest.fixture
def account(db, tenant):
    account = WhatsAppAccount(tenant_id=tenant.id, instance_name="muster-main", status="connected")
    db.add(account)
    db.commit()
    db.refresh(account)
    return account


@pytest.fixture
def agent(db, tenant):
    agent = Agent(
        tenant_id=tenant.id,
        name="Vertrieb",
        agent_name="Lisa",
        script_steps=[
            {"step": 1, "goal": "Begrüßung", "message_template": "Hallo {{first_name}}, hier ist {{agent_name}}!"},
            {"step": 2, "goal": "Bedarf klären"},
            {"step": 3, "goal": "Termin vereinbaren"},
        ],
        faq_entries=[{"question": "Was kostet das?", "answer": "Ab 99 Euro im Monat."}],
        escalation_topics=[],
        disqualify_criteria=["kein interesse"],
    )
    db.add(agent)
    db.commit()
    db.refresh(agent)
    return agent


@pytest.fixture
def integration(db, tenant):
    row = TenantIntegration(tenant_id=tenant.id, settings={"pipedrive_api_token": "pd-token"})
    db.add(row)
    db.commit()
    return row


@pytest.fixture
def make_trigger(db, tenant, agent, account):
    def _make(**fields):
        values = {
            "tenant_id": tenant.id,
            "name": "Neue Leads",
            "type": "pipedrive",
            "trigger_event": "person_created",
            "agent_id": agent.id,
            "whatsapp_account_id": account.id,
            "crm_webhook_status": "active",
            "crm_webhook_id": "wh-1",
            "is_active": True,
        }
        values.update(fields)
        trigger = Trigger(**values)
        db.add(trigger)
        db.commit()
        db.refresh(trigger)
        return trigger
    return _make


@pytest.fixture
def sent_messages(monkeypatch):
    """Captures gateway sends instead of calling the messaging API."""
    sent = []

    async def fake_send_text(instance_name, phone, text):
        sent.append({"instance": instance_name, "phone": phone, "text": text})
        return SendResult(success=True, message_id=f"out-{len(sent)}")

    monkeypatch.setattr(messaging_gateway_service, "send_text", fake_send_text)
    return sent


@pytest.fixture
def llm_replies(monkeypatch):
    """Queue of canned LLM replies; every prompt is recorded."""
    state = {"replies": [], "prompts": []}

    async def fake_chat_completion(messages, model=None, max_tokens=None, temperature=None):
        state["prompts"].append(messages)
        if state["replies"]:
            return state["replies"].pop(0)
        return "Wie kann ich dir helfen?"

    monkeypatch.setattr(openai_llm_service, "chat_completion", fake_chat_completion)
    return state
