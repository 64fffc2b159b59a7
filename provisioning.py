import hmac
import logging
import re
import secrets
import string
from datetime import datetime, timedelta, timezone

from config import ROLES, Settings
from errors import AuthenticationError, Conflict, PermissionDenied, ValidationError
from repository import CollectionService, EntityRepository, utc_now
from security import CredentialVault, create_access_token, hash_password, verify_password

logger = logging.getLogger(__name__)

PASSWORD_ALPHABET = string.ascii_letters + string.digits
PASSWORD_LENGTH = 10
TRIAL_DAYS = 30

# Fields that never leave the service layer.
SECRET_FIELDS = ("passwordHash", "password")


# --- Helpers ---
def sanitize(text) -> str:
    """Lowercases and strips everything but letters and digits: 'Sunrise PG' -> 'sunrisepg'."""
    return re.sub(r"[^a-z0-9]", "", str(text or "").lower())


def email_domain(email) -> str:
    email = str(email or "").strip().lower()
    return email.rsplit("@", 1)[1] if "@" in email else ""


def hostel_domain(hostel: dict, tld: str = "com") -> str:
    """The login domain of a hostel: its configured emailDomain, else `{name}.{tld}`."""
    configured = str(hostel.get("emailDomain") or "").strip().lower().lstrip("@")
    if configured:
        return configured
    base = sanitize(hostel.get("name")) or f"hostel{sanitize(hostel.get('id'))}"
    return f"{base}.{tld}"


def generate_password(length: int = PASSWORD_LENGTH) -> str:
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))


def public_user(user: dict) -> dict:
    return {key: value for key, value in user.items() if key not in SECRET_FIELDS}


def staff_login_role(staff: dict) -> str:
    return "receptionist" if "receptionist" in str(staff.get("role") or "").lower() else "staff"


class AccountService:
    """Creates login accounts for hostels, tenants and staff, and authenticates them."""

    def __init__(self, repository: EntityRepository, vault: CredentialVault, settings: Settings):
        self.repository = repository
        self.vault = vault
        self.settings = settings

    # --- credentials ---

    def _issue(self, user: dict, password: str) -> dict:
        """Plaintext credentials for the one response that creates them, plus a sealed copy."""
        token = self.vault.seal({"userId": user["id"], "email": user["email"], "password": password})
        return {"email": user["email"], "password": password, "token": token}

    @staticmethod
    def _unique_login_email(tx, local_part: str, domain: str) -> str:
        base = sanitize(local_part) or "user"
        candidate = f"{base}@{domain}"
        suffix = 2
        while tx.find_by("users", "email", candidate) is not None:
            candidate = f"{base}{suffix}@{domain}"
            suffix += 1
        return candidate

    @staticmethod
    def _new_user(name, email, role, hostel, password, **extra) -> dict:
        user = {
            "name": name,
            "email": email,
            "role": role,
            "hostelId": hostel["id"] if hostel else None,
            "hostelName": hostel.get("name") if hostel else None,
            "status": "active",
            "failedLoginAttempts": 0,
            "isLocked": False,
            "passwordHash": hash_password(password),
        }
        user.update(extra)
        return user

    # --- users ---

    def create_user(self, data: dict) -> dict:
        data = dict(data)
        data.pop("passwordHash", None)
        role = data.get("role")
        if role not in ROLES:
            raise ValidationError(f"Unknown role '{role}'", field="role")
        if role != "master_admin" and not data.get("hostelId"):
            raise ValidationError(f"{role} users require a hostelId", field="hostelId")
        if not data.get("email"):
            raise ValidationError("email is required", field="email")

        password = data.pop("password", None)
        generated = not password
        if generated:
            password = generate_password()
        data["email"] = str(data["email"]).strip().lower()
        data.setdefault("status", "active")
        data.setdefault("failedLoginAttempts", 0)
        data.setdefault("isLocked", False)
        data["passwordHash"] = hash_password(password)

        with self.repository.transaction("users") as tx:
            user = tx.insert("users", data)
        response = public_user(user)
        if generated:
            response["credentials"] = self._issue(user, password)
        return response

    def update_user(self, user_id, changes: dict) -> dict:
        changes = dict(changes)
        changes.pop("passwordHash", None)
        password = changes.pop("password", None)
        if password:
            changes["passwordHash"] = hash_password(password)
        if "email" in changes and changes["email"]:
            changes["email"] = str(changes["email"]).strip().lower()
        if "role" in changes and changes["role"] not in ROLES:
            raise ValidationError(f"Unknown role '{changes['role']}'", field="role")
        return public_user(self.repository.update("users", user_id, changes))

    def unlock_user(self, user_id, actor: dict | None = None) -> dict:
        changes = {
            "isLocked": False,
            "failedLoginAttempts": 0,
            "lockedAt": None,
            "lockedBy": None,
            "unlockedBy": (actor or {}).get("name"),
            "unlockedAt": utc_now(),
        }
        user = self.repository.update("users", user_id, changes)
        logger.info("User %s unlocked", user_id)
        return public_user(user)

    # --- tenants and staff ---

    def provision_member(self, collection: str, data: dict, role: str | None = None) -> dict:
        """
        Creates a tenant or staff record together with its login account.

        The login email is `{name}@{hostel domain}`; the generated password is
        only ever returned in the result's `credentials`.
        """
        data = dict(data)
        if not str(data.get("name") or "").strip():
            raise ValidationError(f"{collection} records require a name", field="name")
        if not data.get("hostelId"):
            raise ValidationError(f"{collection} records require a hostelId", field="hostelId")

        with self.repository.transaction(collection, "users") as tx:
            hostel = tx.find("hostels", data.get("hostelId"))
            if role is None:
                role = staff_login_role(data) if collection == "staff" else "tenant"
            login_email = self._unique_login_email(tx, data["name"], hostel_domain(hostel, self.settings.email_tld))
            user_id = self.repository.next_id()
            data["userId"] = user_id
            data["loginEmail"] = login_email
            member = tx.insert(collection, data)

            password = generate_password()
            link_field = "tenantId" if collection == "tenants" else "staffId"
            user = tx.insert("users", self._new_user(
                member["name"],
                login_email,
                role,
                hostel,
                password,
                id=user_id,
                phone=member.get("phone"),
                contactEmail=member.get("email"),
                **{link_field: member["id"]},
            ))

        logger.info("Provisioned %s account %s for %s %s", role, user["id"], collection, member["id"])
        return {**member, "credentials": self._issue(user, password)}

    def deactivate_member(self, collection: str, record_id) -> dict:
        """Deletes a tenant or staff record and disables its login account."""
        with self.repository.transaction(collection, "users") as tx:
            member = tx.delete(collection, record_id)
            user_id = member.get("userId")
            if user_id and any(str(u.get("id")) == str(user_id) for u in tx.all("users")):
                tx.update("users", user_id, {"status": "inactive"})
        return member

    # --- hostel requests ---

    def approve_hostel_request(self, request_id, actor: dict | None = None, notes: str | None = None) -> dict:
        """
        Promotes a pending request into an active hostel plus its admin account.

        Hostel, admin user and the request stamp are written in one commit.
        """
        now = datetime.now(timezone.utc)
        with self.repository.transaction("hostelRequests", "hostels", "users") as tx:
            request = tx.find("hostelRequests", request_id)
            if request.get("status") == "approved":
                raise Conflict(
                    f"Hostel request {request_id} is already approved",
                    field="status",
                    hostelId=request.get("hostelId"),
                )
            hostel_name = request.get("hostelName") or request.get("name")
            if not hostel_name:
                raise ValidationError("Hostel request has no hostel name", field="hostelName")

            plan_type = request.get("planType") or "free_trial"
            hostel_data = {
                "name": hostel_name,
                "address": request.get("address"),
                "planType": plan_type,
                "planStatus": "trial" if plan_type == "free_trial" else "active",
                "status": "active",
                "adminName": request.get("name"),
                "adminEmail": request.get("email"),
                "adminPhone": request.get("phone"),
                "requestId": request["id"],
            }
            if plan_type == "free_trial":
                hostel_data["trialExpiryDate"] = (now + timedelta(days=TRIAL_DAYS)).isoformat()
            hostel_data["emailDomain"] = hostel_domain(hostel_data, self.settings.email_tld)
            hostel = tx.insert("hostels", hostel_data)

            password = generate_password()
            login_email = self._unique_login_email(tx, "admin", hostel["emailDomain"])
            admin = tx.insert("users", self._new_user(
                request.get("name") or f"{hostel_name} Admin",
                login_email,
                "admin",
                hostel,
                password,
                phone=request.get("phone"),
                contactEmail=request.get("email"),
            ))
            credentials = self._issue(admin, password)

            stamped = tx.update("hostelRequests", request_id, {
                "status": "approved",
                "processedAt": now.isoformat(),
                "processedBy": (actor or {}).get("name"),
                "notes": notes if notes is not None else request.get("notes"),
                "hostelId": hostel["id"],
                "adminUserId": admin["id"],
                "credentials": {"email": login_email, "token": credentials["token"], "issuedAt": now.isoformat()},
            })

        logger.info("Hostel request %s approved as hostel %s", request_id, hostel["id"])
        return {**stamped, "hostel": hostel, "admin": public_user(admin), "credentials": credentials}

    def reject_hostel_request(self, request_id, actor: dict | None = None, notes: str | None = None) -> dict:
        with self.repository.transaction("hostelRequests") as tx:
            request = tx.find("hostelRequests", request_id)
            if request.get("status") == "approved":
                raise Conflict(f"Hostel request {request_id} is already approved", field="status")
            rejected = tx.update("hostelRequests", request_id, {
                "status": "rejected",
                "processedAt": utc_now(),
                "processedBy": (actor or {}).get("name"),
                "notes": notes if notes is not None else request.get("notes"),
            })
        return rejected

    # --- login ---

    def _allowed_domains(self, hostel: dict) -> set:
        allowed = set(self.settings.allowed_login_domains)
        if hostel.get("emailDomain"):
            allowed.add(str(hostel["emailDomain"]).strip().lower().lstrip("@"))
        contact = email_domain(hostel.get("contactEmail"))
        if contact:
            allowed.add(contact)
        if allowed:
            # Provisioned logins live at the derived domain when none is configured.
            allowed.add(hostel_domain(hostel, self.settings.email_tld))
        return allowed

    def _check_domain(self, user: dict, hostel: dict):
        allowed = self._allowed_domains(hostel)
        # A hostel with no configured domain and no allow-list does not restrict logins.
        if allowed and email_domain(user.get("email")) not in allowed:
            raise AuthenticationError(
                f"Email domain '{email_domain(user.get('email'))}' is not allowed for {hostel.get('name')}",
                reason="domain_mismatch",
            )

    @staticmethod
    def _check_password(user: dict, password: str) -> tuple[bool, dict]:
        if user.get("passwordHash"):
            return verify_password(password or "", user["passwordHash"]), {}
        legacy = user.get("password")
        if legacy and hmac.compare_digest(str(legacy), str(password or "")):
            # Plaintext passwords from older stores are upgraded on first successful login.
            return True, {"passwordHash": hash_password(password), "password": None}
        return False, {}

    def authenticate(self, email: str, password: str) -> dict:
        failure = None
        with self.repository.transaction("users") as tx:
            user = tx.find_by("users", "email", str(email or "").strip())
            if user is None:
                raise AuthenticationError("Invalid email or password", reason="invalid_credentials")
            if user.get("isLocked"):
                raise AuthenticationError("Account is locked; contact your administrator", reason="account_locked")
            if user.get("status", "active") != "active":
                raise AuthenticationError("Account is inactive", reason="inactive")

            if user.get("role") != "master_admin":
                hostel = next((h for h in tx.all("hostels") if str(h.get("id")) == str(user.get("hostelId"))), None)
                if hostel is None or hostel.get("status", "active") != "active":
                    raise AuthenticationError("Hostel is inactive", reason="inactive")
                self._check_domain(user, hostel)

            ok, upgrade = self._check_password(user, password)
            if ok:
                changes = {"failedLoginAttempts": 0, "lastLoginAt": utc_now(), **upgrade}
            else:
                attempts = int(user.get("failedLoginAttempts") or 0) + 1
                changes = {"failedLoginAttempts": attempts}
                if attempts >= self.settings.max_failed_logins:
                    changes.update({"isLocked": True, "lockedAt": utc_now(), "lockedBy": "system"})
                    failure = AuthenticationError(
                        "Too many failed attempts; account is now locked", reason="account_locked"
                    )
                    logger.warning("User %s locked after %d failed logins", user["id"], attempts)
                else:
                    failure = AuthenticationError("Invalid email or password", reason="invalid_credentials")
            user = tx.update("users", user["id"], changes)

        # Raised after the commit so the failed-attempt counter is persisted.
        if failure is not None:
            raise failure
        return public_user(user)

    def login(self, email: str, password: str) -> dict:
        user = self.authenticate(email, password)
        token = create_access_token(
            {"sub": user["id"], "role": user.get("role"), "hostelId": user.get("hostelId")},
            self.settings.jwt_secret_key,
            expires_delta=timedelta(minutes=self.settings.access_token_expire_minutes),
        )
        return {"access_token": token, "token_type": "bearer", "user": user}


# --- Collection services backed by AccountService ---

class UserService(CollectionService):
    def __init__(self, repository: EntityRepository, accounts: AccountService):
        super().__init__(repository, "users")
        self.accounts = accounts

    def list(self, **filters) -> list:
        return [public_user(user) for user in super().list(**filters)]

    def get(self, record_id) -> dict:
        return public_user(super().get(record_id))

    @staticmethod
    def _check_role_grant(data: dict, actor: dict | None):
        if actor and actor.get("role") != "master_admin" and data.get("role") == "master_admin":
            raise PermissionDenied("Only a master admin can grant the master_admin role")

    def create(self, data: dict, actor: dict | None = None) -> dict:
        self._check_role_grant(data, actor)
        return self.accounts.create_user(data)

    def update(self, record_id, changes: dict, actor: dict | None = None) -> dict:
        self._check_role_grant(changes, actor)
        return self.accounts.update_user(record_id, self._stamp(changes, actor))

    def delete(self, record_id, force: bool = False) -> dict:
        return public_user(super().delete(record_id, force=force))


class MemberService(CollectionService):
    """Tenants and staff: creation provisions a login account, deletion disables it."""

    def __init__(self, repository: EntityRepository, collection: str, accounts: AccountService):
        super().__init__(repository, collection)
        self.accounts = accounts

    def create(self, data: dict, actor: dict | None = None) -> dict:
        return self.accounts.provision_member(self.collection, self._stamp(data, actor))

    def delete(self, record_id, force: bool = False) -> dict:
        return self.accounts.deactivate_member(self.collection, record_id)


class HostelRequestService(CollectionService):
    def __init__(self, repository: EntityRepository, accounts: AccountService):
        super().__init__(repository, "hostelRequests")
        self.accounts = accounts

    def create(self, data: dict, actor: dict | None = None) -> dict:
        data = dict(data)
        data["status"] = "pending"
        data.setdefault("isRead", False)
        data.setdefault("submittedAt", utc_now())
        return self.repository.create(self.collection, data)

    def update(self, record_id, changes: dict, actor: dict | None = None) -> dict:
        status = str(changes.get("status") or "").lower()
        if status == "approved":
            return self.accounts.approve_hostel_request(record_id, actor=actor, notes=changes.get("notes"))
        if status == "rejected":
            return self.accounts.reject_hostel_request(record_id, actor=actor, notes=changes.get("notes"))
        return super().update(record_id, changes, actor=actor)
