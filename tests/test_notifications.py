"""
Notification Fan-out Tests

Audience selection, best-effort delivery, push pruning and the
change-driven notification policies.
"""

import asyncio

import httpx
import pytest

from complaints import ComplaintService
from errors import SubscriptionGone, TransportFailure
from notifications import (
    HttpPushSender,
    NotificationCenter,
    NotificationLog,
    Principal,
    PushRegistry,
    WebSocketRegistry,
)

from .fixtures import FakeTransport, make_hostel

ADMIN_A = Principal("u1", "admin", "hA")
ADMIN_B = Principal("u2", "admin", "hB")
TENANT_A = Principal("u3", "tenant", "hA")
MASTER = Principal("u4", "master_admin", None)
RECEPTION_A = Principal("u5", "receptionist", "hA")


class RecordingSocket:
    def __init__(self, broken=False):
        self.broken = broken
        self.sent = []

    async def send_json(self, payload):
        if self.broken:
            raise RuntimeError("socket closed")
        self.sent.append(payload)


class TestAudience:

    def test_role_and_hostel_must_match(self):
        transport = FakeTransport([ADMIN_A, ADMIN_B, TENANT_A])
        center = NotificationCenter([transport])

        delivered = center.notify("complaint_created", "admin", "hA", title="New Complaint")

        assert delivered == 1
        assert transport.events_for("u1") == ["complaint_created"]
        assert transport.events_for("u2") == []
        assert transport.events_for("u3") == []

    def test_no_hostel_broadcasts_to_the_role(self):
        transport = FakeTransport([ADMIN_A, ADMIN_B, MASTER])
        center = NotificationCenter([transport])

        assert center.notify("platform_notice", "admin", None) == 2

    def test_user_ids_narrow_the_audience(self):
        other_tenant = Principal("u9", "tenant", "hA")
        transport = FakeTransport([TENANT_A, other_tenant])
        center = NotificationCenter([transport])

        center.notify("complaint_status_changed", "tenant", "hA", user_ids=["u3"])

        assert transport.events_for("u3") == ["complaint_status_changed"]
        assert transport.events_for("u9") == []

    def test_empty_user_ids_reach_nobody(self):
        transport = FakeTransport([TENANT_A])
        center = NotificationCenter([transport])

        assert center.notify("payment_approved", "tenant", "hA", user_ids=[None]) == 0
        assert transport.delivered == []

    def test_in_audience(self):
        assert NotificationCenter.in_audience(ADMIN_A, "admin", "hA")
        assert NotificationCenter.in_audience(ADMIN_A, "admin")
        assert not NotificationCenter.in_audience(ADMIN_A, "admin", "hB")
        assert not NotificationCenter.in_audience(ADMIN_A, "tenant", "hA")


class TestDelivery:

    def test_failing_recipient_does_not_stop_others(self):
        second = Principal("u6", "admin", "hA")
        transport = FakeTransport([ADMIN_A, second], failing={"u1"})
        center = NotificationCenter([transport])

        delivered = center.notify("complaint_created", "admin", "hA")

        assert delivered == 1
        assert transport.events_for("u6") == ["complaint_created"]

    def test_crashing_transport_is_absorbed(self):
        class Exploding(FakeTransport):
            def deliver(self, principal, payload):
                raise KeyError("bug")

        healthy = FakeTransport([ADMIN_A])
        center = NotificationCenter([Exploding([ADMIN_A]), healthy])

        assert center.notify("complaint_created", "admin", "hA") == 1
        assert healthy.events_for("u1") == ["complaint_created"]

    def test_clear_empties_transports_and_log(self):
        transport = FakeTransport([ADMIN_A])
        center = NotificationCenter([transport])
        center.notify("complaint_created", "admin", "hA")

        center.clear()

        assert transport.connected() == []
        assert center.recent(ADMIN_A) == []


class TestNotificationLog:

    def test_recent_is_filtered_and_newest_first(self):
        center = NotificationCenter([], log=NotificationLog(maxlen=10))
        center.notify("first", "admin", "hA")
        center.notify("other_hostel", "admin", "hB")
        center.notify("second", "admin", "hA")

        assert [entry["event"] for entry in center.recent(ADMIN_A)] == ["second", "first"]

    def test_log_is_bounded(self):
        center = NotificationCenter([], log=NotificationLog(maxlen=3))
        for n in range(5):
            center.notify(f"event{n}", "admin", "hA")

        assert [entry["event"] for entry in center.recent(ADMIN_A)] == ["event4", "event3", "event2"]


class TestPush:

    def test_gone_subscription_is_pruned(self):
        calls = []

        def sender(subscription, payload):
            calls.append(subscription["endpoint"])
            if subscription["endpoint"].endswith("/expired"):
                raise SubscriptionGone(subscription["endpoint"])

        registry = PushRegistry(sender)
        registry.subscribe(TENANT_A, {"endpoint": "https://push.example/expired"})
        registry.subscribe(TENANT_A, {"endpoint": "https://push.example/live"})

        registry.deliver(TENANT_A, {"event": "notice_posted"})

        assert calls == ["https://push.example/expired", "https://push.example/live"]
        assert registry.subscriptions(TENANT_A) == [{"endpoint": "https://push.example/live"}]

    def test_all_subscriptions_gone_is_a_failure(self):
        def sender(subscription, payload):
            raise SubscriptionGone(subscription["endpoint"])

        registry = PushRegistry(sender)
        registry.subscribe(TENANT_A, {"endpoint": "https://push.example/a"})

        with pytest.raises(TransportFailure):
            registry.deliver(TENANT_A, {})
        assert registry.connected() == []

    def test_resubscribing_replaces_endpoint(self):
        registry = PushRegistry(lambda subscription, payload: None)
        registry.subscribe(TENANT_A, {"endpoint": "https://push.example/a", "keys": {"auth": "1"}})
        registry.subscribe(TENANT_A, {"endpoint": "https://push.example/a", "keys": {"auth": "2"}})

        assert registry.subscriptions(TENANT_A) == [{"endpoint": "https://push.example/a", "keys": {"auth": "2"}}]

    def test_http_sender_maps_410_to_gone(self, monkeypatch):
        request = httpx.Request("POST", "https://push.example/a")
        monkeypatch.setattr(httpx, "post", lambda *args, **kwargs: httpx.Response(410, request=request))

        with pytest.raises(SubscriptionGone):
            HttpPushSender()({"endpoint": "https://push.example/a"}, {"event": "x"})

    def test_http_sender_reports_server_errors(self, monkeypatch):
        request = httpx.Request("POST", "https://push.example/a")
        monkeypatch.setattr(httpx, "post", lambda *args, **kwargs: httpx.Response(503, request=request))

        with pytest.raises(TransportFailure) as excinfo:
            HttpPushSender()({"endpoint": "https://push.example/a"}, {"event": "x"})
        assert not isinstance(excinfo.value, SubscriptionGone)

    def test_http_sender_wraps_network_errors(self, monkeypatch):
        def refuse(*args, **kwargs):
            raise httpx.ConnectError("refused")

        monkeypatch.setattr(httpx, "post", refuse)

        with pytest.raises(TransportFailure):
            HttpPushSender()({"endpoint": "https://push.example/a"}, {"event": "x"})


class TestWebSocketRegistry:

    def test_delivery_without_socket_fails(self):
        with pytest.raises(TransportFailure):
            WebSocketRegistry().deliver(ADMIN_A, {})

    def test_send_on_owning_loop_delivers(self):
        registry = WebSocketRegistry()
        socket = RecordingSocket()

        async def scenario():
            registry.register(ADMIN_A, socket, asyncio.get_running_loop())
            registry.deliver(ADMIN_A, {"event": "complaint_created"})
            await asyncio.sleep(0)
            await asyncio.sleep(0)

        asyncio.run(scenario())

        assert socket.sent == [{"event": "complaint_created"}]
        assert registry.connected() == [ADMIN_A]
        assert not registry._tasks

    def test_failed_send_on_owning_loop_drops_socket(self):
        registry = WebSocketRegistry()

        async def scenario():
            registry.register(ADMIN_A, RecordingSocket(broken=True), asyncio.get_running_loop())
            registry.deliver(ADMIN_A, {"event": "complaint_created"})
            await asyncio.sleep(0)
            await asyncio.sleep(0)

        asyncio.run(scenario())

        assert registry.connected() == []
        assert not registry._tasks

    def test_unregister_forgets_principal(self):
        registry = WebSocketRegistry()
        socket = object()
        registry.register(ADMIN_A, socket, loop=None)

        assert registry.connected() == [ADMIN_A]
        registry.unregister(ADMIN_A, socket)
        assert registry.connected() == []


class TestChangePolicies:

    @pytest.fixture
    def hostel(self, repository):
        return make_hostel(repository)

    @pytest.fixture
    def wired(self, repository, hostel):
        hid = hostel["id"]
        transport = FakeTransport([
            Principal("admin1", "admin", hid),
            Principal("recep1", "receptionist", hid),
            Principal("tenantuser", "tenant", hid),
            Principal("otheruser", "tenant", hid),
            Principal("master", "master_admin", None),
            Principal("admin-other", "admin", "elsewhere"),
        ])
        center = NotificationCenter([transport], repository=repository)
        repository.subscribe(center.handle_change)
        return transport

    def test_complaint_lifecycle_notifications(self, repository, hostel, wired):
        complaints = ComplaintService(repository)
        tenant_actor = {"id": "tenantuser", "name": "Ravi", "role": "tenant"}

        complaint = complaints.create({"title": "Fan broken", "hostelId": hostel["id"]}, actor=tenant_actor)
        complaints.change_status(complaint["id"], "in-progress", {"name": "Asha", "role": "admin"})
        complaints.add_comment(complaint["id"], "Ravi", "tenant", "Any update?")
        complaints.add_comment(complaint["id"], "Asha", "admin", "Tomorrow")
        complaints.change_status(complaint["id"], "resolved", {"name": "Asha", "role": "admin"})

        assert wired.events_for("admin1") == ["complaint_created", "comment_added"]
        assert wired.events_for("tenantuser") == [
            "complaint_status_changed", "comment_added", "complaint_status_changed",
        ]
        assert wired.events_for("otheruser") == []
        assert wired.events_for("admin-other") == []

    def test_tenant_resolved_through_tenant_record(self, repository, hostel, wired):
        tenant = repository.create("tenants", {"name": "Ravi", "hostelId": hostel["id"], "userId": "tenantuser"})
        payment = repository.create("payments", {
            "hostelId": hostel["id"], "tenantId": tenant["id"], "amount": 6000, "status": "pending",
        })

        repository.update("payments", payment["id"], {"status": "paid"})

        assert wired.events_for("admin1") == ["payment_created"]
        assert wired.events_for("recep1") == ["payment_created"]
        assert wired.events_for("tenantuser") == ["payment_recorded", "payment_approved"]

    def test_tenant_recorded_payment_is_not_echoed_back(self, repository, hostel, wired):
        tenant = repository.create("tenants", {"name": "Ravi", "hostelId": hostel["id"], "userId": "tenantuser"})

        repository.create("payments", {
            "hostelId": hostel["id"], "tenantId": tenant["id"], "amount": 6000,
            "status": "pending", "lastModifiedByRole": "tenant",
        })

        assert wired.events_for("tenantuser") == []
        assert wired.events_for("admin1") == ["payment_created"]

    def test_hostel_request_goes_to_master_admin(self, repository, wired):
        repository.create("hostelRequests", {"name": "Anil", "hostelName": "Moonlight PG", "email": "a@b.com"})

        assert wired.events_for("master") == ["hostel_request_created"]
        assert wired.events_for("admin1") == []

    def test_hostel_status_change(self, repository, hostel, wired):
        repository.update("hostels", hostel["id"], {"status": "inactive"})

        assert wired.events_for("admin1") == ["hostel_deactivated"]
        assert wired.events_for("recep1") == ["hostel_deactivated"]
        assert wired.events_for("admin-other") == []

    def test_notice_reaches_tenants_of_the_hostel(self, repository, hostel, wired):
        repository.create("notices", {"hostelId": hostel["id"], "title": "Water cut", "message": "10am-2pm"})

        assert wired.events_for("tenantuser") == ["notice_posted"]
        assert wired.events_for("otheruser") == ["notice_posted"]
        assert wired.events_for("admin1") == []

    def test_broken_transport_does_not_fail_the_write(self, repository, hostel):
        transport = FakeTransport([Principal("admin1", "admin", hostel["id"])], failing={"admin1"})
        center = NotificationCenter([transport], repository=repository)
        repository.subscribe(center.handle_change)

        complaint = ComplaintService(repository).create({"title": "Leak", "hostelId": hostel["id"]})

        assert repository.get("complaints", complaint["id"])["status"] == "open"
