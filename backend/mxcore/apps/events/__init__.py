"""
Domain event publication.

Services park events on the session with ``outbox.enqueue``; they are
handed to the in-process broker only after the transaction commits.

``broker`` is the submodule; the process-wide instance is
``broker.broker`` (re-exported here as ``event_broker``).
"""

from . import outbox  # noqa: F401  (installs the session commit hooks)
from .broker import EventBroker, EventEnvelope, publish_event
from .broker import broker as event_broker

__all__ = ["EventBroker", "EventEnvelope", "event_broker", "publish_event"]
