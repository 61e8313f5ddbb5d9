"""Core primitives shared by every flowsync component.

Modules
-------
errors      FlowSyncError hierarchy, ErrorCategory, ErrorContext
events      Event, EventBus protocol, InMemoryEventBus
logging     structlog configuration and context binding
settings    FlowSyncSettings (pydantic-settings) and get_settings()
"""
