"""
CRUD operations package.
"""

# Import from trigger crud module
from .trigger_crud import (
    parse_uuid, create_trigger, get_trigger, get_triggers, get_trigger_by_webhook_id,
    get_active_crm_triggers, get_polling_triggers, update_trigger, increment_trigger_stats,
    delete_trigger, get_integration_settings, record_event, get_test_events, delete_test_events,
    get_events
)

# Import from conversation crud module
from .conversation_crud import (
    phone_variants, upsert_active_conversation, get_conversation, find_conversation_by_phone,
    update_conversation, create_message, get_message_by_external_id,
    get_recent_messages, count_agent_messages, get_account_by_instance,
    update_account_status
)

# Import from queue crud module
from .queue_crud import (
    QUEUE_PRIORITIES, create_queue_item, get_queue_item, get_queue_items,
    get_due_outside_hours_items, close_queue_item, get_queue_stats
)
