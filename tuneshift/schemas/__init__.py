"""Pydantic models for bindings, EventSub payloads, state and HTTP messages."""
