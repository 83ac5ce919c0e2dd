"""
SQLAlchemy models for database tables.
"""

import uuid
import enum
from datetime import datetime
from sqlalchemy import Column, String, DateTime, JSON, Boolean, Text, Integer, ForeignKey, Index, Uuid, text
from sqlalchemy.orm import relationship

from app.db.database import Base


class TriggerType(enum.Enum):
    """Source of the events a trigger listens to."""
    WEBHOOK = "webhook"
    PIPEDRIVE = "pipedrive"
    HUBSPOT = "hubspot"
    MONDAY = "monday"
    CLOSE = "close"
    ACTIVECAMPAIGN = "activecampaign"


CRM_TRIGGER_TYPES = [t.value for t in TriggerType if t != TriggerType.WEBHOOK]


class WebhookStatus(enum.Enum):
    """Provisioning state of a CRM trigger's native webhook."""
    PENDING = "pending"
    ACTIVE = "active"
    FAILED = "failed"
    NOT_SUPPORTED = "not_supported"


class ConversationStatus(enum.Enum):
    """Conversation lifecycle states."""
    ACTIVE = "active"
    PAUSED = "paused"
    ESCALATED = "escalated"
    COMPLETED = "completed"
    DISQUALIFIED = "disqualified"
    BOOKED = "booked"


class MessageDirection(enum.Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class SenderType(enum.Enum):
    CONTACT = "contact"
    AGENT = "agent"
    HUMAN = "human"


class MessageStatus(enum.Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


class QueueType(enum.Enum):
    """Why a message is waiting for a human."""
    ESCALATED = "escalated"
    OUTSIDE_HOURS = "outside_hours"


class QueueStatus(enum.Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"


class Tenant(Base):
    """Model for tenants table."""

    __tablename__ = "tenants"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    integrations = relationship("TenantIntegration", back_populates="tenant", cascade="all, delete-orphan")
    triggers = relationship("Trigger", back_populates="tenant", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Tenant(id='{self.id}', name='{self.name}')>"


class TenantIntegration(Base):
    """CRM credentials of a tenant (pipedrive_api_token, hubspot_access_token, ...)."""

    __tablename__ = "tenant_integrations"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid, ForeignKey("tenants.id"), nullable=False, index=True)
    settings = Column(JSON, nullable=False, default=dict)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    tenant = relationship("Tenant", back_populates="integrations")


class WhatsAppAccount(Base):
    """Messaging gateway instance a tenant sends from."""

    __tablename__ = "whatsapp_accounts"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid, ForeignKey("tenants.id"), nullable=False, index=True)
    instance_name = Column(String(255), nullable=False, unique=True, index=True)
    phone_number = Column(String(50), nullable=True)
    status = Column(String(50), nullable=False, default="disconnected")

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            "id": str(self.id),
            "tenantId": str(self.tenant_id),
            "instanceName": self.instance_name,
            "phoneNumber": self.phone_number,
            "status": self.status,
        }


class Agent(Base):
    """Scripted AI agent that drives conversations."""

    __tablename__ = "agents"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid, ForeignKey("tenants.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    agent_name = Column(String(255), nullable=True)  # name shown to contacts

    # Persona
    personality = Column(Text, nullable=True)
    goal = Column(Text, nullable=True)
    company_info = Column(Text, nullable=True)

    # Script: [{step, name, goal, message_template, conditions?}]
    script_steps = Column(JSON, nullable=False, default=list)
    # FAQ: [{question, answer}]
    faq_entries = Column(JSON, nullable=False, default=list)

    escalation_topics = Column(JSON, nullable=False, default=list)
    escalation_message = Column(Text, nullable=True)
    disqualify_criteria = Column(JSON, nullable=False, default=list)
    disqualify_message = Column(Text, nullable=True)

    # {enabled, timezone, schedule: {monday: {enabled, start, end}, ...}}
    office_hours = Column(JSON, nullable=True)
    outside_hours_message = Column(Text, nullable=True)

    response_delay_min = Column(Integer, nullable=False, default=0)
    response_delay_max = Column(Integer, nullable=False, default=0)
    max_messages_per_conversation = Column(Integer, nullable=False, default=50)

    booking_cta = Column(Text, nullable=True)
    calendly_link = Column(String(500), nullable=True)

    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def display_name(self) -> str:
        return self.agent_name or self.name

    def to_dict(self):
        return {
            "id": str(self.id),
            "name": self.name,
            "agentName": self.agent_name,
            "scriptSteps": self.script_steps or [],
            "faqEntries": self.faq_entries or [],
            "escalationTopics": self.escalation_topics or [],
            "disqualifyCriteria": self.disqualify_criteria or [],
            "officeHours": self.office_hours,
            "responseDelayMin": self.response_delay_min,
            "responseDelayMax": self.response_delay_max,
            "maxMessagesPerConversation": self.max_messages_per_conversation,
        }


class Trigger(Base):
    """Tenant rule binding a CRM event (plus filters) to an agent and first message."""

    __tablename__ = "triggers"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid, ForeignKey("tenants.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    type = Column(String(50), nullable=False, index=True)  # TriggerType value

    trigger_event = Column(String(100), nullable=True)
    event_filters = Column(JSON, nullable=False, default=dict)
    external_config = Column(JSON, nullable=False, default=dict)

    # Generic webhook triggers (type=webhook)
    webhook_id = Column(String(64), nullable=True, unique=True, index=True)
    webhook_secret = Column(String(128), nullable=True)

    # Native CRM webhook provisioning
    crm_webhook_id = Column(String(255), nullable=True)
    crm_webhook_status = Column(String(50), nullable=True)  # WebhookStatus value
    crm_webhook_error = Column(Text, nullable=True)

    # Polling watermark
    polling_enabled = Column(Boolean, nullable=False, default=False)
    last_polled_at = Column(DateTime, nullable=True)
    polling_cursor = Column(String(255), nullable=True)

    # Test capture session
    test_mode_until = Column(DateTime, nullable=True)
    test_started_at = Column(DateTime, nullable=True)

    agent_id = Column(Uuid, ForeignKey("agents.id"), nullable=True)
    whatsapp_account_id = Column(Uuid, ForeignKey("whatsapp_accounts.id"), nullable=True)
    first_message = Column(Text, nullable=True)
    first_message_delay_seconds = Column(Integer, nullable=False, default=0)

    is_active = Column(Boolean, default=True)
    total_triggered = Column(Integer, nullable=False, default=0)
    total_conversations = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    tenant = relationship("Tenant", back_populates="triggers")
    agent = relationship("Agent")
    whatsapp_account = relationship("WhatsAppAccount")
    events = relationship("CRMWebhookEvent", back_populates="trigger", cascade="all, delete-orphan")
    conversations = relationship("Conversation", back_populates="trigger")

    def __repr__(self):
        return f"<Trigger(id='{self.id}', type='{self.type}', event='{self.trigger_event}')>"

    @property
    def configured_event(self):
        """Event type, with the external_config override as fallback."""
        return self.trigger_event or (self.external_config or {}).get("trigger_event")

    def to_dict(self):
        return {
            "id": str(self.id),
            "tenantId": str(self.tenant_id),
            "name": self.name,
            "type": self.type,
            "triggerEvent": self.trigger_event,
            "eventFilters": self.event_filters or {},
            "externalConfig": self.external_config or {},
            "webhookId": self.webhook_id,
            "crmWebhookId": self.crm_webhook_id,
            "crmWebhookStatus": self.crm_webhook_status,
            "crmWebhookError": self.crm_webhook_error,
            "pollingEnabled": self.polling_enabled,
            "lastPolledAt": self.last_polled_at.isoformat() if self.last_polled_at else None,
            "pollingCursor": self.polling_cursor,
            "testModeUntil": self.test_mode_until.isoformat() if self.test_mode_until else None,
            "agentId": str(self.agent_id) if self.agent_id else None,
            "whatsappAccountId": str(self.whatsapp_account_id) if self.whatsapp_account_id else None,
            "firstMessage": self.first_message,
            "isActive": self.is_active,
            "totalTriggered": self.total_triggered,
            "totalConversations": self.total_conversations,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


class CRMWebhookEvent(Base):
    """Append-only audit record of received/polled CRM events."""

    __tablename__ = "crm_webhook_events"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    trigger_id = Column(Uuid, ForeignKey("triggers.id"), nullable=True, index=True)
    tenant_id = Column(Uuid, ForeignKey("tenants.id"), nullable=False, index=True)
    crm_type = Column(String(50), nullable=False)
    event_type = Column(String(100), nullable=True)
    raw_payload = Column(JSON, nullable=True)
    extracted_data = Column(JSON, nullable=True)
    is_test_event = Column(Boolean, nullable=False, default=False)
    error_message = Column(Text, nullable=True)
    processed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    trigger = relationship("Trigger", back_populates="events")

    def to_dict(self):
        return {
            "id": str(self.id),
            "triggerId": str(self.trigger_id) if self.trigger_id else None,
            "crmType": self.crm_type,
            "eventType": self.event_type,
            "rawPayload": self.raw_payload,
            "extractedData": self.extracted_data,
            "isTestEvent": self.is_test_event,
            "errorMessage": self.error_message,
            "processedAt": self.processed_at.isoformat() if self.processed_at else None,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


class Conversation(Base):
    """Messaging conversation with a single contact."""

    __tablename__ = "conversations"
    __table_args__ = (
        # At most one active conversation per tenant and phone
        Index(
            "uq_conversations_active_phone",
            "tenant_id",
            "contact_phone",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid, ForeignKey("tenants.id"), nullable=False, index=True)
    whatsapp_account_id = Column(Uuid, ForeignKey("whatsapp_accounts.id"), nullable=True)
    agent_id = Column(Uuid, ForeignKey("agents.id"), nullable=True)
    trigger_id = Column(Uuid, ForeignKey("triggers.id"), nullable=True)

    contact_phone = Column(String(50), nullable=False, index=True)
    contact_name = Column(String(255), nullable=True)
    contact_first_name = Column(String(255), nullable=True)
    contact_last_name = Column(String(255), nullable=True)
    crm_contact_id = Column(String(255), nullable=True)
    external_lead_id = Column(String(255), nullable=True)

    status = Column(String(20), nullable=False, default=ConversationStatus.ACTIVE.value, index=True)
    current_script_step = Column(Integer, nullable=False, default=1)
    trigger_data = Column(JSON, nullable=True)

    last_message_at = Column(DateTime, nullable=True)
    last_agent_message_at = Column(DateTime, nullable=True)
    last_contact_message_at = Column(DateTime, nullable=True)
    escalated_at = Column(DateTime, nullable=True)
    escalation_reason = Column(Text, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    agent = relationship("Agent")
    whatsapp_account = relationship("WhatsAppAccount")
    trigger = relationship("Trigger", back_populates="conversations")
    messages = relationship(
        "Message",
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by="Message.created_at"
    )
    queue_items = relationship("MessageQueueItem", back_populates="conversation", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Conversation(id='{self.id}', phone='{self.contact_phone}', status='{self.status}')>"

    def to_dict(self):
        return {
            "id": str(self.id),
            "tenantId": str(self.tenant_id),
            "agentId": str(self.agent_id) if self.agent_id else None,
            "triggerId": str(self.trigger_id) if self.trigger_id else None,
            "contactPhone": self.contact_phone,
            "contactName": self.contact_name,
            "contactFirstName": self.contact_first_name,
            "contactLastName": self.contact_last_name,
            "crmContactId": self.crm_contact_id,
            "status": self.status,
            "currentScriptStep": self.current_script_step,
            "escalationReason": self.escalation_reason,
            "escalatedAt": self.escalated_at.isoformat() if self.escalated_at else None,
            "lastMessageAt": self.last_message_at.isoformat() if self.last_message_at else None,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


class Message(Base):
    """Single inbound or outbound message. Only `status` changes after creation."""

    __tablename__ = "messages"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid, ForeignKey("tenants.id"), nullable=False, index=True)
    conversation_id = Column(Uuid, ForeignKey("conversations.id"), nullable=False, index=True)
    direction = Column(String(20), nullable=False)
    sender_type = Column(String(20), nullable=False)
    content = Column(Text, nullable=False)
    status = Column(String(20), nullable=False, default=MessageStatus.PENDING.value)
    external_message_id = Column(String(255), nullable=True, index=True)
    script_step_used = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    conversation = relationship("Conversation", back_populates="messages")

    def to_dict(self):
        return {
            "id": str(self.id),
            "conversationId": str(self.conversation_id),
            "direction": self.direction,
            "senderType": self.sender_type,
            "content": self.content,
            "status": self.status,
            "externalMessageId": self.external_message_id,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


class MessageQueueItem(Base):
    """Inbound message waiting for manual handling."""

    __tablename__ = "message_queue"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid, ForeignKey("tenants.id"), nullable=False, index=True)
    conversation_id = Column(Uuid, ForeignKey("conversations.id"), nullable=True, index=True)
    queue_type = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default=QueueStatus.PENDING.value, index=True)
    priority = Column(Integer, nullable=False, default=0)
    original_message = Column(Text, nullable=False)
    reason = Column(Text, nullable=True)
    suggested_response = Column(Text, nullable=True)
    scheduled_for = Column(DateTime, nullable=True)
    resolution_message = Column(Text, nullable=True)
    resolved_by = Column(String(255), nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    conversation = relationship("Conversation", back_populates="queue_items")

    def to_dict(self):
        return {
            "id": str(self.id),
            "conversationId": str(self.conversation_id) if self.conversation_id else None,
            "queueType": self.queue_type,
            "status": self.status,
            "priority": self.priority,
            "originalMessage": self.original_message,
            "reason": self.reason,
            "suggestedResponse": self.suggested_response,
            "scheduledFor": self.scheduled_for.isoformat() if self.scheduled_for else None,
            "resolvedBy": self.resolved_by,
            "resolvedAt": self.resolved_at.isoformat() if self.resolved_at else None,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }
