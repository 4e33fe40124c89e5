"""
Test doubles shared across the suite: a settable clock and dispatchers that
record or fail on demand.
"""

from datetime import datetime, timedelta

from salesflow.agents.action_dispatcher import LocalActionDispatcher
from salesflow.db.connection import gen_id
from salesflow.db.entities import Contact
from salesflow.errors import DeliveryError


class FakeClock:
    """Settable clock; advance() moves time forward."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2026, 3, 2, 9, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, days: int = 0, hours: int = 0, seconds: int = 0):
        self.now = self.now + timedelta(days=days, hours=hours, seconds=seconds)
        return self.now


class RecordingDispatcher(LocalActionDispatcher):
    """Local dispatcher that remembers every send and task."""

    def __init__(self, registry=None):
        super().__init__(registry=registry)
        self.sent = []
        self.tasks = []

    def send_templated_message(self, contact, template_id, variables):
        self.sent.append((contact.id, template_id))
        return super().send_templated_message(contact, template_id, variables)

    def create_task(self, contact, title, description=""):
        task_id = super().create_task(contact, title, description)
        self.tasks.append((contact.id, task_id))
        return task_id


class FailingDispatcher(RecordingDispatcher):
    """Fails sends for the contact ids in fail_for, or reports every send as unsent."""

    def __init__(self, registry=None, fail_for=None, reply_unsent=False):
        super().__init__(registry=registry)
        self.fail_for = set(fail_for or [])
        self.reply_unsent = reply_unsent

    def send_templated_message(self, contact, template_id, variables):
        if contact.id in self.fail_for:
            raise DeliveryError(f"relay refused {contact.email}")
        if self.reply_unsent:
            return {"sent": False, "provider_id": None}
        return super().send_templated_message(contact, template_id, variables)


def make_contact(store, **overrides) -> Contact:
    """Create a contact with sensible defaults."""
    fields = {
        "email": f"{gen_id('mail')}@example.com",
        "first_name": "Jane",
        "last_name": "Doe",
        "company": "Acme Corp",
        "phone": "+15550100",
    }
    fields.update(overrides)
    return store.create_contact(Contact(**fields))
