"""
Session context shared by the token authority, the EventSub session and the
subscription reconciler. Diagnostics are mutated in place and republished on
every change; nothing here keeps history.
"""

from __future__ import annotations

from typing import Any, Optional

from tuneshift.core.publisher import Publisher
from tuneshift.schemas.state import DiagnosticsSnapshot

DIAGNOSTICS_TOPIC = "diagnostics"


class SessionContext:
    def __init__(self, publisher: Optional[Publisher] = None):
        self.publisher = publisher or Publisher()
        self.diagnostics = DiagnosticsSnapshot()
        self.session_id: Optional[str] = None
        # Set by a 403 from the subscription API; cleared on the next sign-in
        self.subscriptions_blocked = False

    def update_diagnostics(self, **changes: Any) -> DiagnosticsSnapshot:
        for field, value in changes.items():
            setattr(self.diagnostics, field, value)
        self.publish_diagnostics()
        return self.diagnostics

    def publish_diagnostics(self) -> None:
        self.publisher.publish(DIAGNOSTICS_TOPIC, self.diagnostics.model_dump())

    def set_session(self, session_id: Optional[str]) -> None:
        self.session_id = session_id
        self.update_diagnostics(session_id=session_id)

    def reset_connection(self, **changes: Any) -> None:
        self.session_id = None
        self.update_diagnostics(
            websocket_connected=False, session_id=None, subscriptions=0, **changes
        )
