import logging

from errors import ValidationError
from repository import EntityRepository, utc_now

logger = logging.getLogger(__name__)

COLLECTION = "complaints"

OPEN = "open"
IN_PROGRESS = "in-progress"
RESOLVED = "resolved"
REOPEN = "reopen"
STATUSES = (OPEN, IN_PROGRESS, RESOLVED, REOPEN)

# "reopen" sits at the same stage as "open": both move forward to in-progress or resolved.
_STAGE = {OPEN: 0, REOPEN: 0, IN_PROGRESS: 1, RESOLVED: 2}

RESOLVED_COMMENT = "Complaint marked as resolved by admin"

_ALIASES = {
    "inprogress": IN_PROGRESS,
    "in_progress": IN_PROGRESS,
    "in progress": IN_PROGRESS,
    "reopened": REOPEN,
    "re-open": REOPEN,
    "closed": RESOLVED,
}


def normalize_status(value) -> str:
    if value is None:
        return OPEN
    status = str(value).strip().lower()
    status = _ALIASES.get(status, status)
    if status not in STATUSES:
        raise ValidationError(f"Unknown complaint status '{value}'", field="status")
    return status


def can_transition(current: str, target: str) -> bool:
    """
    Whether a complaint may move from `current` to `target`.

    Forward moves are allowed, a resolved complaint may be reopened, and
    nothing may ever go back to "open".
    """
    if current == target:
        return True
    if target == REOPEN:
        return current == RESOLVED
    return _STAGE[target] > _STAGE[current]


def check_transition(current: str, target: str):
    if not can_transition(current, target):
        raise ValidationError(
            f"Complaint status cannot change from '{current}' to '{target}'",
            field="status",
            current=current,
            requested=target,
        )


class ComplaintService:
    """Complaint operations layered on the repository, enforcing the status lifecycle."""

    collection = COLLECTION

    def __init__(self, repository: EntityRepository):
        self.repository = repository

    def list(self, **filters) -> list:
        return self.repository.list(COLLECTION, **filters)

    def get(self, complaint_id) -> dict:
        return self.repository.get(COLLECTION, complaint_id)

    def create(self, data: dict, actor: dict | None = None) -> dict:
        record = dict(data)
        if normalize_status(record.get("status")) != OPEN:
            raise ValidationError("New complaints must start as 'open'", field="status")
        record["status"] = OPEN
        record["comments"] = []
        if actor:
            record.setdefault("submittedBy", actor.get("name") or actor.get("id"))
            if actor.get("role") == "tenant":
                record.setdefault("submittedById", actor.get("id"))
        with self.repository.transaction(COLLECTION) as tx:
            complaint = tx.insert(COLLECTION, record)
        logger.info("Complaint %s opened in hostel %s", complaint["id"], complaint.get("hostelId"))
        return complaint

    def update(self, complaint_id, changes: dict, actor: dict | None = None) -> dict:
        changes = dict(changes)
        # Comments only grow through add_comment.
        changes.pop("comments", None)
        with self.repository.transaction(COLLECTION) as tx:
            current = tx.find(COLLECTION, complaint_id)
            if "status" in changes:
                self._apply_transition(current, normalize_status(changes["status"]), changes, actor)
            complaint = tx.update(COLLECTION, complaint_id, changes)
        return complaint

    def change_status(self, complaint_id, status: str, actor: dict | None = None) -> dict:
        return self.update(complaint_id, {"status": status}, actor=actor)

    def add_comment(self, complaint_id, author: str, role: str, message: str) -> dict:
        if not message or not str(message).strip():
            raise ValidationError("Comment message is required", field="message")
        with self.repository.transaction(COLLECTION) as tx:
            current = tx.find(COLLECTION, complaint_id)
            comments = list(current.get("comments") or [])
            comments.append(self._comment(author, role, str(message).strip()))
            complaint = tx.update(COLLECTION, complaint_id, {"comments": comments})
        return complaint

    def delete(self, complaint_id, force: bool = False) -> dict:
        return self.repository.delete(COLLECTION, complaint_id, force=force)

    def _comment(self, author: str, role: str, message: str) -> dict:
        return {
            "id": self.repository.next_id(),
            "author": author,
            "role": role,
            "message": message,
            "createdAt": utc_now(),
        }

    def _apply_transition(self, current: dict, target: str, changes: dict, actor: dict | None):
        source = normalize_status(current.get("status"))
        check_transition(source, target)
        changes["status"] = target
        if source == target:
            return

        actor_name = (actor or {}).get("name") or "admin"
        if target == RESOLVED:
            changes.setdefault("resolvedAt", utc_now())
            changes.setdefault("resolvedBy", actor_name)
            if not changes.get("reopenedBy"):
                comments = list(current.get("comments") or [])
                comments.append(self._comment("System", "system", RESOLVED_COMMENT))
                changes["comments"] = comments
        elif target == REOPEN:
            changes["reopenedAt"] = utc_now()
            changes["reopenCount"] = int(current.get("reopenCount") or 0) + 1
            changes.setdefault("reopenedBy", actor_name)
        logger.info("Complaint %s moved %s -> %s", current["id"], source, target)
