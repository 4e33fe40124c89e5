"""
Salesflow - Action Dispatcher
The only way the engines reach the outside world: send a templated email,
open a human task, place a call, send an SMS.

Two implementations:
- LocalActionDispatcher: renders messages and keeps them in an in-process
  outbox. No network. Default when DISPATCH_WEBHOOK_URL is empty.
- WebhookActionDispatcher: POSTs each action as JSON to a delivery webhook
  (mail relay, telephony bridge, task tracker).

Any transient failure surfaces as DeliveryError. The caller decides whether
to retry; dispatchers never retry on their own.
"""

import logging
import threading
from abc import ABC, abstractmethod
from collections import deque
from typing import Optional

import requests

from salesflow.config import DISPATCH_TIMEOUT, DISPATCH_WEBHOOK_URL, LOCAL_OUTBOX_LIMIT
from salesflow.db.connection import gen_id
from salesflow.db.entities import Contact, to_iso, utcnow
from salesflow.errors import DeliveryError

logger = logging.getLogger("salesflow.agents.action_dispatcher")


class ActionDispatcher(ABC):

    @abstractmethod
    def send_templated_message(self, contact: Contact, template_id: str,
                               variables: dict) -> dict:
        """Send one templated email. Returns {sent, provider_id}."""

    @abstractmethod
    def create_task(self, contact: Contact, title: str, description: str = "") -> str:
        """Open a human task. Returns the task id."""

    @abstractmethod
    def place_call(self, contact: Contact, agent_phone: str = None) -> dict:
        """Start a call to the contact. Returns {success, call_id}."""

    @abstractmethod
    def send_sms(self, contact: Contact, message: str) -> dict:
        """Returns {sent, provider_id}."""


# ─── LOCAL ────────────────────────────────────────────────────

class LocalActionDispatcher(ActionDispatcher):
    """Renders through the template registry and appends to self.outbox.

    The outbox keeps the newest `outbox_limit` entries; older ones drop off.
    """

    def __init__(self, registry=None, outbox_limit: int = LOCAL_OUTBOX_LIMIT):
        self.registry = registry
        self.outbox = deque(maxlen=outbox_limit)
        self._lock = threading.Lock()

    def _record(self, kind: str, contact: Contact, payload: dict) -> str:
        provider_id = gen_id(kind)
        with self._lock:
            self.outbox.append({
                "id": provider_id,
                "kind": kind,
                "contact_id": contact.id,
                "at": to_iso(utcnow()),
                **payload,
            })
        return provider_id

    def send_templated_message(self, contact: Contact, template_id: str,
                               variables: dict) -> dict:
        if self.registry is not None:
            rendered = self.registry.render(template_id, variables)
        else:
            rendered = {"subject": template_id, "body": ""}
        provider_id = self._record("msg", contact, {
            "to": contact.email,
            "template_id": template_id,
            "subject": rendered["subject"],
            "body": rendered["body"],
        })
        logger.info("Email %s queued locally for %s", template_id, contact.email,
                    extra={"contact_id": contact.id})
        return {"sent": True, "provider_id": provider_id}

    def create_task(self, contact: Contact, title: str, description: str = "") -> str:
        task_id = gen_id("task")
        with self._lock:
            self.outbox.append({"id": task_id, "kind": "task", "contact_id": contact.id,
                                "at": to_iso(utcnow()), "title": title,
                                "description": description})
        logger.info("Task '%s' opened for %s", title, contact.id,
                    extra={"contact_id": contact.id, "task_id": task_id})
        return task_id

    def place_call(self, contact: Contact, agent_phone: str = None) -> dict:
        call_id = self._record("call", contact, {"to": contact.call_number,
                                                 "agent_phone": agent_phone})
        logger.info("Call to %s logged locally", contact.call_number,
                    extra={"contact_id": contact.id})
        return {"success": True, "call_id": call_id}

    def send_sms(self, contact: Contact, message: str) -> dict:
        provider_id = self._record("sms", contact, {"to": contact.call_number,
                                                    "message": message})
        return {"sent": True, "provider_id": provider_id}


# ─── WEBHOOK ──────────────────────────────────────────────────

class WebhookActionDispatcher(ActionDispatcher):
    """POST {action, contact, ...} to a delivery webhook; the response JSON carries ids."""

    def __init__(self, url: str = None, timeout: int = DISPATCH_TIMEOUT,
                 registry=None, session: Optional[requests.Session] = None):
        self.url = url or DISPATCH_WEBHOOK_URL
        if not self.url:
            raise ValueError("WebhookActionDispatcher needs a url")
        self.timeout = timeout
        self.registry = registry
        self.session = session or requests.Session()

    def _post(self, action: str, contact: Contact, payload: dict) -> dict:
        body = {
            "action": action,
            "contact": {
                "id": contact.id,
                "email": contact.email,
                "name": contact.full_name,
                "phone": contact.call_number,
            },
            **payload,
        }
        try:
            response = self.session.post(self.url, json=body, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            raise DeliveryError(f"{action} timed out after {self.timeout}s") from e
        except requests.exceptions.RequestException as e:
            raise DeliveryError(f"{action} failed: {e}") from e

        if response.status_code >= 300:
            raise DeliveryError(
                f"{action} rejected with HTTP {response.status_code}: {response.text[:200]}"
            )
        try:
            return response.json() or {}
        except ValueError:
            return {}

    def send_templated_message(self, contact: Contact, template_id: str,
                               variables: dict) -> dict:
        payload = {"template_id": template_id, "variables": variables}
        if self.registry is not None:
            payload.update(self.registry.render(template_id, variables))
        data = self._post("send_email", contact, payload)
        return {"sent": bool(data.get("sent", True)),
                "provider_id": data.get("provider_id") or data.get("id")}

    def create_task(self, contact: Contact, title: str, description: str = "") -> str:
        data = self._post("create_task", contact, {"title": title, "description": description})
        return data.get("task_id") or data.get("id") or gen_id("task")

    def place_call(self, contact: Contact, agent_phone: str = None) -> dict:
        data = self._post("place_call", contact, {"agent_phone": agent_phone})
        return {"success": bool(data.get("success", True)),
                "call_id": data.get("call_id") or data.get("id")}

    def send_sms(self, contact: Contact, message: str) -> dict:
        data = self._post("send_sms", contact, {"message": message})
        return {"sent": bool(data.get("sent", True)),
                "provider_id": data.get("provider_id") or data.get("id")}


def build_dispatcher(registry=None, url: str = None) -> ActionDispatcher:
    """Webhook dispatcher when a URL is configured, local otherwise."""
    url = url if url is not None else DISPATCH_WEBHOOK_URL
    if url:
        logger.info("Dispatching actions to webhook %s", url)
        return WebhookActionDispatcher(url=url, registry=registry)
    return LocalActionDispatcher(registry=registry)
