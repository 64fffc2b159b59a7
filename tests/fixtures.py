"""
Shared test data builders.

Plain functions so tests can build exactly the records they need.
"""

from cryptography.fernet import Fernet

from config import Settings


def make_settings(tmp_path, **overrides) -> Settings:
    values = {
        "data_file": str(tmp_path / "store.json"),
        "jwt_secret_key": "test-secret",
        "credential_key": Fernet.generate_key().decode(),
        "log_level": "WARNING",
    }
    values.update(overrides)
    return Settings(**values)


def make_hostel(repository, name="Sunrise PG", **extra) -> dict:
    data = {"name": name, "status": "active", "emailDomain": "sunrisepg.com"}
    data.update(extra)
    return repository.create("hostels", data)


def make_tenant(repository, hostel_id, name="Ravi Kumar", **extra) -> dict:
    data = {"name": name, "hostelId": hostel_id}
    data.update(extra)
    return repository.create("tenants", data)


def make_room(repository, hostel_id, room_number="R001", **extra) -> dict:
    data = {"roomNumber": room_number, "hostelId": hostel_id, "capacity": 2, "rent": 6000}
    data.update(extra)
    return repository.create("rooms", data)


def make_complaint(repository, hostel_id, title="Leaking tap", **extra) -> dict:
    data = {"title": title, "hostelId": hostel_id, "status": "open", "comments": []}
    data.update(extra)
    return repository.create("complaints", data)


class FakeTransport:
    """In-memory transport recording deliveries; principals in `failing` always fail."""

    name = "fake"

    def __init__(self, principals=(), failing=()):
        self.principals = list(principals)
        self.failing = set(failing)
        self.delivered = []

    def connected(self):
        return list(self.principals)

    def deliver(self, principal, payload):
        from errors import TransportFailure

        if principal.user_id in self.failing:
            raise TransportFailure(f"{principal.user_id} is gone")
        self.delivered.append((principal, payload))

    def events_for(self, user_id):
        return [payload["event"] for principal, payload in self.delivered if principal.user_id == user_id]

    def clear(self):
        self.principals.clear()
        self.delivered.clear()
