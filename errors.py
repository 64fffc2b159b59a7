class HostelError(Exception):
    """Base class for errors that are reported back to the caller."""

    status_code = 500

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        body = {"error": self.message}
        body.update({key: value for key, value in self.details.items() if value is not None})
        return body


class NotFound(HostelError):
    status_code = 404

    def __init__(self, collection: str, record_id: str):
        super().__init__(f"{collection} record '{record_id}' not found", collection=collection, id=record_id)


class Conflict(HostelError):
    status_code = 409

    def __init__(self, message: str, field: str | None = None, scope: str | None = None, **details):
        super().__init__(message, field=field, scope=scope, **details)
        self.field = field
        self.scope = scope


class ValidationError(HostelError):
    status_code = 400


class AuthenticationError(HostelError):
    """Login refusal. `reason` tells a bad password apart from a domain or lock problem."""

    status_code = 401

    def __init__(self, message: str, reason: str):
        super().__init__(message, reason=reason)
        self.reason = reason
        if reason in ("account_locked", "inactive"):
            self.status_code = 403


class PermissionDenied(HostelError):
    status_code = 403


# --- Internal errors: recovered or absorbed, never returned to a client ---

class StoreCorruption(Exception):
    pass


class TransportFailure(Exception):
    pass


class SubscriptionGone(TransportFailure):
    """The push provider reports the subscription no longer exists."""
