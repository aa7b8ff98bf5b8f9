from __future__ import annotations

from funnelcrm import events
from funnelcrm.core.events import InProcessEventBus, InternalEvent


def test_exact_and_prefix_subscribers_both_receive_events() -> None:
    bus = InProcessEventBus()
    exact: list[str] = []
    prefixed: list[str] = []

    def on_exact(event: InternalEvent) -> None:
        exact.append(event.name)

    def on_prefix(event: InternalEvent) -> None:
        prefixed.append(event.name)

    bus.subscribe("crm.lead.created", on_exact)
    bus.subscribe("crm.lead.*", on_prefix)
    bus.subscribe("crm.lead.*", on_prefix)

    assert bus.publish("crm.lead.created", {"lead_id": 1}) == 2
    assert bus.publish("crm.lead.stage_changed", {"lead_id": 1}) == 1
    assert bus.publish("crm.funnel.deleted", {"funnel_id": 1}) == 0

    assert exact == ["crm.lead.created"]
    assert prefixed == ["crm.lead.created", "crm.lead.stage_changed"]


def test_broader_prefix_matches_nested_names() -> None:
    bus = InProcessEventBus()
    seen: list[str] = []

    def handler(event: InternalEvent) -> None:
        seen.append(event.name)

    bus.subscribe("crm.*", handler)
    bus.publish("crm.funnel.restored", {})
    bus.unsubscribe("crm.*", handler)
    bus.publish("crm.funnel.deleted", {})

    assert seen == ["crm.funnel.restored"]


def test_envelope_is_recorded_and_stamped() -> None:
    events.published_events.clear()
    envelope = events.build_envelope("crm.funnel.deleted", company_id=100, actor_user_id=None, payload={"funnel_id": 3})

    events.publish(envelope)

    [recorded] = events.published_events
    assert recorded["event_type"] == "crm.funnel.deleted"
    assert recorded["version"] == 1
    assert recorded["company_id"] == 100
    assert recorded["payload"] == {"funnel_id": 3}
    events.published_events.clear()
