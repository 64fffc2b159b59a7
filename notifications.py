import asyncio
import logging
import threading
from collections import deque
from dataclasses import dataclass

import httpx

from errors import HostelError, SubscriptionGone, TransportFailure
from repository import ChangeEvent, EntityRepository, utc_now

logger = logging.getLogger(__name__)

ADMIN_ROLES = ("admin", "receptionist")


@dataclass(frozen=True)
class Principal:
    """A connected identity notifications can be addressed to."""
    user_id: str
    role: str
    hostel_id: str | None = None

    @classmethod
    def from_user(cls, user: dict) -> "Principal":
        hostel_id = user.get("hostelId")
        return cls(str(user["id"]), user.get("role") or "", str(hostel_id) if hostel_id else None)


# --- Transports ---

class WebSocketRegistry:
    """Open WebSocket connections, keyed by user. A user may hold several sockets."""

    name = "websocket"

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout
        self._connections = {}
        self._tasks = set()
        self._lock = threading.Lock()

    def register(self, principal: Principal, websocket, loop: asyncio.AbstractEventLoop):
        with self._lock:
            self._connections.setdefault(principal.user_id, (principal, []))[1].append((websocket, loop))
        logger.info("WebSocket connected for user %s (%s)", principal.user_id, principal.role)

    def unregister(self, principal: Principal, websocket):
        with self._lock:
            entry = self._connections.get(principal.user_id)
            if entry is None:
                return
            sockets = [(ws, loop) for ws, loop in entry[1] if ws is not websocket]
            if sockets:
                self._connections[principal.user_id] = (entry[0], sockets)
            else:
                del self._connections[principal.user_id]
        logger.info("WebSocket disconnected for user %s", principal.user_id)

    def connected(self) -> list:
        with self._lock:
            return [principal for principal, _ in self._connections.values()]

    def _send(self, principal: Principal, websocket, loop, payload: dict):
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        coroutine = websocket.send_json(payload)
        if running is loop:
            # Already on the socket's loop: the send completes after we return.
            task = loop.create_task(coroutine)
            self._tasks.add(task)
            task.add_done_callback(lambda done: self._send_finished(principal, websocket, done))
            return
        asyncio.run_coroutine_threadsafe(coroutine, loop).result(self.timeout)

    def _send_finished(self, principal: Principal, websocket, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.info("Dropping dead socket for user %s: %s", principal.user_id, error)
            self.unregister(principal, websocket)

    def deliver(self, principal: Principal, payload: dict):
        with self._lock:
            entry = self._connections.get(principal.user_id)
            sockets = list(entry[1]) if entry else []
        if not sockets:
            raise TransportFailure(f"user {principal.user_id} has no open socket")

        sent = 0
        for websocket, loop in sockets:
            try:
                self._send(principal, websocket, loop, payload)
                sent += 1
            except Exception as error:
                logger.info("Dropping dead socket for user %s: %s", principal.user_id, error)
                self.unregister(principal, websocket)
        if not sent:
            raise TransportFailure(f"no socket accepted the message for user {principal.user_id}")

    def clear(self):
        with self._lock:
            self._connections.clear()


class HttpPushSender:
    """
    Posts a notification to a push subscription endpoint.

    Payload encryption and VAPID signing belong to the push provider SDK and are
    not done here. 404 and 410 replies mean the subscription is gone.
    """

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout

    def __call__(self, subscription: dict, payload: dict):
        endpoint = subscription.get("endpoint")
        if not endpoint:
            raise SubscriptionGone("subscription has no endpoint")
        try:
            response = httpx.post(endpoint, json=payload, timeout=self.timeout, headers={"TTL": "86400"})
        except httpx.HTTPError as error:
            raise TransportFailure(f"push to {endpoint} failed: {error}") from error
        if response.status_code in (404, 410):
            raise SubscriptionGone(endpoint)
        if response.status_code >= 400:
            raise TransportFailure(f"push to {endpoint} returned {response.status_code}")


class PushRegistry:
    """Push subscriptions per user. Subscriptions the provider reports as gone are pruned."""

    name = "push"

    def __init__(self, sender=None):
        self.sender = sender or HttpPushSender()
        self._subscriptions = {}
        self._lock = threading.Lock()

    def subscribe(self, principal: Principal, subscription: dict):
        endpoint = subscription.get("endpoint")
        if not endpoint:
            raise ValueError("push subscription requires an endpoint")
        with self._lock:
            _, subscriptions = self._subscriptions.get(principal.user_id, (principal, []))
            subscriptions = [s for s in subscriptions if s.get("endpoint") != endpoint] + [subscription]
            self._subscriptions[principal.user_id] = (principal, subscriptions)

    def unsubscribe(self, principal: Principal, endpoint: str | None = None):
        with self._lock:
            entry = self._subscriptions.get(principal.user_id)
            if entry is None:
                return
            remaining = [] if endpoint is None else [s for s in entry[1] if s.get("endpoint") != endpoint]
            if remaining:
                self._subscriptions[principal.user_id] = (entry[0], remaining)
            else:
                del self._subscriptions[principal.user_id]

    def subscriptions(self, principal: Principal) -> list:
        with self._lock:
            entry = self._subscriptions.get(principal.user_id)
            return list(entry[1]) if entry else []

    def connected(self) -> list:
        with self._lock:
            return [principal for principal, _ in self._subscriptions.values()]

    def deliver(self, principal: Principal, payload: dict):
        sent = 0
        for subscription in self.subscriptions(principal):
            try:
                self.sender(subscription, payload)
                sent += 1
            except SubscriptionGone:
                logger.info("Pruning expired push subscription for user %s", principal.user_id)
                self.unsubscribe(principal, subscription.get("endpoint"))
            except TransportFailure as error:
                logger.info("Push delivery to user %s failed: %s", principal.user_id, error)
        if not sent:
            raise TransportFailure(f"no push subscription accepted the message for user {principal.user_id}")

    def clear(self):
        with self._lock:
            self._subscriptions.clear()


class NotificationLog:
    """Recent notifications kept in memory so users can catch up after reconnecting."""

    def __init__(self, maxlen: int = 500):
        self._entries = deque(maxlen=maxlen)
        self._lock = threading.Lock()

    def append(self, entry: dict):
        with self._lock:
            self._entries.append(entry)

    def for_principal(self, principal: Principal, limit: int = 50) -> list:
        with self._lock:
            entries = list(self._entries)
        visible = [entry for entry in entries if NotificationCenter.in_audience(
            principal, entry["targetRole"], entry["hostelId"], entry["userIds"]
        )]
        return list(reversed(visible))[:limit]

    def clear(self):
        with self._lock:
            self._entries.clear()


# --- Fan-out ---

class NotificationCenter:
    """
    Computes the audience of a domain event and delivers to it over every transport.

    Delivery is best effort: a failure for one recipient never stops the others
    and is never raised to the caller.
    """

    def __init__(self, transports: list, log: NotificationLog | None = None, repository: EntityRepository | None = None):
        self.transports = list(transports)
        self.log = log or NotificationLog()
        self.repository = repository
        self._next_id = 0
        self._id_lock = threading.Lock()
        self._policies = {
            "complaints": self._on_complaint,
            "payments": self._on_payment,
            "hostelRequests": self._on_hostel_request,
            "hostels": self._on_hostel,
            "notices": self._on_notice,
            "checkoutRequests": self._on_checkout_request,
            "supportTickets": self._on_support_ticket,
        }

    @staticmethod
    def in_audience(principal: Principal, target_role: str, hostel_id=None, user_ids=None) -> bool:
        if principal.role != target_role:
            return False
        if hostel_id is not None and principal.hostel_id != str(hostel_id):
            return False
        if user_ids is not None and principal.user_id not in user_ids:
            return False
        return True

    def notify(self, event: str, target_role: str, hostel_id=None, *, title: str = "", message: str = "",
               user_ids=None, data: dict | None = None) -> int:
        """
        Sends `event` to every connected principal with `target_role` in `hostel_id`.

        A `hostel_id` of None broadcasts across hostels. `user_ids` narrows the
        audience further. Returns the number of successful deliveries.
        """
        if user_ids is not None:
            user_ids = {str(user_id) for user_id in user_ids if user_id}
            if not user_ids:
                return 0
        with self._id_lock:
            self._next_id += 1
            notification_id = self._next_id
        payload = {
            "type": "notification",
            "id": notification_id,
            "event": event,
            "title": title,
            "message": message,
            "data": data or {},
            "createdAt": utc_now(),
        }
        self.log.append({
            **payload,
            "targetRole": target_role,
            "hostelId": str(hostel_id) if hostel_id is not None else None,
            "userIds": sorted(user_ids) if user_ids is not None else None,
        })

        delivered = 0
        for transport in self.transports:
            for principal in transport.connected():
                if not self.in_audience(principal, target_role, hostel_id, user_ids):
                    continue
                try:
                    transport.deliver(principal, payload)
                    delivered += 1
                except TransportFailure as error:
                    logger.info("%s delivery of %s to %s failed: %s", transport.name, event, principal.user_id, error)
                except Exception:
                    logger.exception("%s delivery of %s to %s crashed", transport.name, event, principal.user_id)
        logger.debug("Notification %s (%s) delivered %d time(s)", event, target_role, delivered)
        return delivered

    def recent(self, principal: Principal, limit: int = 50) -> list:
        return self.log.for_principal(principal, limit)

    def clear(self):
        for transport in self.transports:
            transport.clear()
        self.log.clear()

    # --- change policy ---

    def handle_change(self, change: ChangeEvent):
        policy = self._policies.get(change.collection)
        if policy is not None:
            policy(change)

    def _tenant_user_id(self, record: dict) -> str | None:
        for field in ("tenantUserId", "submittedById"):
            if record.get(field):
                return str(record[field])
        tenant_id = record.get("tenantId")
        if tenant_id and self.repository is not None:
            try:
                return self.repository.get("tenants", tenant_id).get("userId")
            except HostelError:
                return None
        return None

    def _notify_staff(self, event, hostel_id, **kwargs):
        for role in ADMIN_ROLES:
            self.notify(event, role, hostel_id, **kwargs)

    def _on_complaint(self, change: ChangeEvent):
        complaint = change.after or change.before
        hostel_id = complaint.get("hostelId")
        data = {"complaintId": complaint["id"]}
        if change.action == "created":
            who = complaint.get("tenantName") or complaint.get("submittedBy") or "A tenant"
            self.notify("complaint_created", "admin", hostel_id, title="New Complaint Submitted",
                        message=f'{who} submitted: "{complaint.get("title", "")}"', data=data)
            return
        if change.action != "updated":
            return
        if change.changed("status"):
            old, new = change.before.get("status"), complaint.get("status")
            self.notify("complaint_status_changed", "tenant", hostel_id, title="Complaint Status Updated",
                        message=f'Complaint "{complaint.get("title", complaint["id"])}" changed from {old} to {new}',
                        user_ids=[self._tenant_user_id(complaint)], data={**data, "oldStatus": old, "newStatus": new})
        before_comments = change.before.get("comments") or []
        after_comments = complaint.get("comments") or []
        if len(after_comments) > len(before_comments):
            comment = after_comments[-1]
            if comment.get("role") == "system":
                return
            message = f'{comment.get("author")} commented on complaint "{complaint.get("title", complaint["id"])}"'
            if comment.get("role") == "tenant":
                self.notify("comment_added", "admin", hostel_id, title="New Comment Added", message=message, data=data)
            else:
                self.notify("comment_added", "tenant", hostel_id, title="New Comment Added", message=message,
                            user_ids=[self._tenant_user_id(complaint)], data=data)

    def _on_payment(self, change: ChangeEvent):
        payment = change.after
        if payment is None:
            return
        hostel_id = payment.get("hostelId")
        data = {"paymentId": payment["id"], "amount": payment.get("amount"), "status": payment.get("status")}
        settled = payment.get("status") in ("paid", "approved")
        if change.action == "created":
            self._notify_staff("payment_created", hostel_id, title="Payment Recorded",
                               message=f'Payment of {payment.get("amount")} recorded for {payment.get("tenantName") or payment.get("tenantId")}',
                               data=data)
            if not settled and payment.get("lastModifiedByRole") != "tenant":
                self.notify("payment_recorded", "tenant", hostel_id, title="Payment Recorded",
                            message=f'A payment of {payment.get("amount")} was recorded for you',
                            user_ids=[self._tenant_user_id(payment)], data=data)
        if settled and (change.action == "created" or change.changed("status")):
            self.notify("payment_approved", "tenant", hostel_id, title="Payment Confirmed",
                        message=f'Your payment of {payment.get("amount")} is {payment.get("status")}',
                        user_ids=[self._tenant_user_id(payment)], data=data)

    def _on_hostel_request(self, change: ChangeEvent):
        if change.action == "created":
            request = change.after
            self.notify("hostel_request_created", "master_admin", None, title="New Hostel Request",
                        message=f'{request.get("name")} requested "{request.get("hostelName") or request.get("name")}"',
                        data={"requestId": request["id"]})

    def _on_hostel(self, change: ChangeEvent):
        if change.action != "updated" or not change.changed("status"):
            return
        hostel = change.after
        active = hostel.get("status") == "active"
        event = "hostel_activated" if active else "hostel_deactivated"
        self._notify_staff(event, hostel["id"], title="Hostel Activated" if active else "Hostel Deactivated",
                           message=f'{hostel.get("name")} is now {hostel.get("status")}', data={"hostelId": hostel["id"]})

    def _on_notice(self, change: ChangeEvent):
        if change.action == "created":
            notice = change.after
            self.notify("notice_posted", "tenant", notice.get("hostelId"), title=notice.get("title", "Notice"),
                        message=notice.get("message", ""), data={"noticeId": notice["id"]})

    def _on_checkout_request(self, change: ChangeEvent):
        if change.action == "created":
            request = change.after
            self.notify("checkout_requested", "admin", request.get("hostelId"), title="Checkout Requested",
                        message=f'{request.get("tenantName") or request.get("tenantId")} requested checkout',
                        data={"checkoutRequestId": request["id"]})

    def _on_support_ticket(self, change: ChangeEvent):
        if change.action == "created":
            ticket = change.after
            self.notify("support_ticket_created", "master_admin", None, title="New Support Ticket",
                        message=ticket.get("subject") or ticket.get("title") or "", data={"ticketId": ticket["id"]})
