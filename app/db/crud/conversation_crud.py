"""
CRUD operations for conversations, messages and messaging accounts.
"""

import uuid
import logging
from datetime import datetime
from typing import List, Optional, Dict, Any, Tuple
from sqlalchemy import func, text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from app.db.models import (
    Conversation, ConversationStatus, Message, MessageDirection, SenderType, WhatsAppAccount
)

logger = logging.getLogger(__name__)

ACTIVE_WHERE = text("status = 'active'")


def phone_variants(phone: str) -> List[str]:
    """
    Forms a phone may be stored in.

    The messaging gateway delivers digits only while CRM numbers usually keep
    the leading plus, so both are looked up.
    """
    digits = (phone or "").lstrip("+")
    return [digits, f"+{digits}"]


# Conversation CRUD operations

def upsert_active_conversation(db: Session, values: Dict[str, Any]) -> Tuple[Conversation, bool]:
    """
    Create the active conversation for (tenant, phone) or reuse the existing one.

    Runs a single INSERT ... ON CONFLICT DO UPDATE against the partial unique
    index on active conversations, so concurrent deliveries of the same contact
    converge on one row.

    Args:
        db: Database session
        values: Conversation column values; must include tenant_id and contact_phone

    Returns:
        (conversation, created) where created is False when an active row existed
    """
    new_id = uuid.uuid4()
    now = datetime.utcnow()
    row = {
        "id": new_id,
        "status": ConversationStatus.ACTIVE.value,
        "current_script_step": 1,
        "created_at": now,
        "updated_at": now,
        **values,
    }

    dialect = db.get_bind().dialect.name
    insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
    table = Conversation.__table__
    stmt = insert(table).values(**row)
    stmt = stmt.on_conflict_do_update(
        index_elements=[table.c.tenant_id, table.c.contact_phone],
        index_where=ACTIVE_WHERE,
        set_={
            "updated_at": now,
            "contact_name": func.coalesce(stmt.excluded.contact_name, table.c.contact_name),
            "trigger_data": stmt.excluded.trigger_data,
        }
    ).returning(table.c.id)

    conversation_id = db.execute(stmt).scalar_one()
    db.commit()

    conversation = db.get(Conversation, conversation_id)
    created = conversation_id == new_id
    if created:
        logger.info(f"Created conversation {conversation_id} for {values.get('contact_phone')}")
    else:
        logger.info(f"Reusing active conversation {conversation_id} for {values.get('contact_phone')}")
    return conversation, created


def get_conversation(db: Session, conversation_id: Any) -> Optional[Conversation]:
    if not isinstance(conversation_id, uuid.UUID):
        try:
            conversation_id = uuid.UUID(str(conversation_id))
        except (TypeError, ValueError):
            return None
    return db.get(Conversation, conversation_id)


def find_conversation_by_phone(
    db: Session,
    tenant_id: uuid.UUID,
    phone: str,
    status: ConversationStatus
) -> Optional[Conversation]:
    """Most recently created conversation in `status` for any stored form of the phone."""
    return db.query(Conversation).filter(
        Conversation.tenant_id == tenant_id,
        Conversation.contact_phone.in_(phone_variants(phone)),
        Conversation.status == status.value
    ).order_by(Conversation.created_at.desc()).first()


def update_conversation(db: Session, conversation: Conversation, **fields) -> Conversation:
    for key, value in fields.items():
        setattr(conversation, key, value)
    conversation.updated_at = datetime.utcnow()
    db.commit()
    db.refresh(conversation)
    return conversation


# Message CRUD operations

def create_message(
    db: Session,
    conversation: Conversation,
    direction: MessageDirection,
    sender_type: SenderType,
    content: str,
    status: str,
    external_message_id: Optional[str] = None,
    script_step_used: Optional[int] = None
) -> Message:
    message = Message(
        tenant_id=conversation.tenant_id,
        conversation_id=conversation.id,
        direction=direction.value,
        sender_type=sender_type.value,
        content=content,
        status=status,
        external_message_id=external_message_id,
        script_step_used=script_step_used,
    )
    db.add(message)
    db.commit()
    db.refresh(message)
    return message


def get_message_by_external_id(db: Session, external_message_id: Optional[str]) -> Optional[Message]:
    if not external_message_id:
        return None
    return db.query(Message).filter(Message.external_message_id == external_message_id).first()


def get_recent_messages(db: Session, conversation_id: uuid.UUID, limit: int = 10) -> List[Message]:
    """Last `limit` messages in chronological order."""
    messages = db.query(Message).filter(
        Message.conversation_id == conversation_id
    ).order_by(Message.created_at.desc()).limit(limit).all()
    return list(reversed(messages))


def count_agent_messages(db: Session, conversation_id: uuid.UUID) -> int:
    return db.query(func.count(Message.id)).filter(
        Message.conversation_id == conversation_id,
        Message.direction == MessageDirection.OUTBOUND.value,
        Message.sender_type == SenderType.AGENT.value
    ).scalar() or 0


# Messaging account CRUD operations

def get_account_by_instance(db: Session, instance_name: str) -> Optional[WhatsAppAccount]:
    return db.query(WhatsAppAccount).filter(WhatsAppAccount.instance_name == instance_name).first()


def update_account_status(db: Session, account: WhatsAppAccount, status: str) -> WhatsAppAccount:
    account.status = status
    account.updated_at = datetime.utcnow()
    db.commit()
    db.refresh(account)
    return account
