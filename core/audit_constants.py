"""
Canonical audit event type strings.
"""

EVENT_FILE_ADDED = "file.added"
EVENT_FILE_DELETED = "file.deleted"
EVENT_CONVERSATION_ESCALATED = "conversation.escalated"
EVENT_CONVERSATION_RESOLVED = "conversation.resolved"
EVENT_CONVERSATION_STATUS_CHANGED = "conversation.status_changed"
EVENT_PLUGIN_CONNECTED = "plugin.connected"
EVENT_PLUGIN_REMOVED = "plugin.removed"
EVENT_SUBSCRIPTION_UPDATED = "subscription.updated"
EVENT_WIDGET_SETTINGS_UPDATED = "widget_settings.updated"

__all__ = [
    "EVENT_FILE_ADDED",
    "EVENT_FILE_DELETED",
    "EVENT_CONVERSATION_ESCALATED",
    "EVENT_CONVERSATION_RESOLVED",
    "EVENT_CONVERSATION_STATUS_CHANGED",
    "EVENT_PLUGIN_CONNECTED",
    "EVENT_PLUGIN_REMOVED",
    "EVENT_SUBSCRIPTION_UPDATED",
    "EVENT_WIDGET_SETTINGS_UPDATED",
]
