"""MQTT topic helpers.

We keep topic construction in one place so the service, the desks and the
dashboards agree on naming.

Topic layout under a configurable namespace (default: `hospital/v1`):

Request/response:
- `<ns>/queue/requests`
    Registration desks, doctors and dashboards send every request here.
- `<ns>/queue/responses/<client_id>`
    Each client listens for its own replies.

Streaming:
- `<ns>/observers/<observer_id>/events`
    One stream per subscribed observer: INITIAL_QUEUE first, then
    NEW_REGISTRATION / STATUS_UPDATE in commit order.

Running several wards on one broker only needs different namespaces
(e.g. `--namespace hospital/ward-b`).
"""

from __future__ import annotations

DEFAULT_NAMESPACE = "hospital/v1"


def queue_requests(namespace: str = DEFAULT_NAMESPACE) -> str:
    return f"{namespace}/queue/requests"


def queue_responses(client_id: str, namespace: str = DEFAULT_NAMESPACE) -> str:
    return f"{namespace}/queue/responses/{client_id}"


def observer_events(observer_id: str, namespace: str = DEFAULT_NAMESPACE) -> str:
    """Per-observer event stream, written only by the service."""
    return f"{namespace}/observers/{observer_id}/events"
