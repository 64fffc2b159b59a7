import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import List

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from complaints import ComplaintService
from config import COLLECTIONS, HOSTEL_SCOPED, ROLES, Settings, configure_logging
from errors import HostelError, NotFound, PermissionDenied
from models import *
from notifications import (
    HttpPushSender, NotificationCenter, NotificationLog, Principal, PushRegistry, WebSocketRegistry
)
from provisioning import AccountService, HostelRequestService, MemberService, UserService
from repository import CollectionService, EntityRepository
from security import CredentialVault, decode_access_token, get_current_user, session_refusal
from store import DurableStore, WriteSerializer

logger = logging.getLogger(__name__)

ADMIN_ROLES = ("master_admin", "admin")
STAFF_ROLES = ("master_admin", "admin", "receptionist")

# collection -> (create model, update model, roles that may create, roles that may update/delete)
# A create role of None means the endpoint is public.
RESOURCES = {
    "hostels": (HostelCreate, HostelUpdate, ("master_admin",), ("master_admin",)),
    "users": (UserCreate, UserUpdate, ADMIN_ROLES, ADMIN_ROLES),
    "tenants": (TenantCreate, TenantUpdate, STAFF_ROLES, STAFF_ROLES),
    "rooms": (RoomCreate, RoomUpdate, STAFF_ROLES, STAFF_ROLES),
    "payments": (PaymentCreate, PaymentUpdate, ROLES, STAFF_ROLES),
    "complaints": (ComplaintCreate, ComplaintUpdate, ROLES, ROLES),
    "staff": (StaffCreate, StaffUpdate, ADMIN_ROLES, ADMIN_ROLES),
    "expenses": (ExpenseCreate, ExpenseUpdate, STAFF_ROLES, STAFF_ROLES),
    "notices": (NoticeCreate, NoticeUpdate, STAFF_ROLES, STAFF_ROLES),
    "hostelRequests": (HostelRequestCreate, HostelRequestUpdate, None, ("master_admin",)),
    "checkoutRequests": (CheckoutRequestCreate, CheckoutRequestUpdate, ROLES, STAFF_ROLES),
    "hostelSettings": (HostelSettingsCreate, HostelSettingsUpdate, ADMIN_ROLES, ADMIN_ROLES),
    "supportTickets": (SupportTicketCreate, SupportTicketUpdate, ROLES, ("master_admin",)),
}

# Collections only some roles may read at all.
READ_ROLES = {"hostelRequests": ("master_admin",)}

# Tenants only see their own rows in these collections: collection -> field holding the tenant id.
TENANT_OWNED = {"tenants": "id", "payments": "tenantId", "complaints": "tenantId", "checkoutRequests": "tenantId"}


# --- Access Helpers ---
def require_role(*roles):
    def dependency(current_user: dict = Depends(get_current_user)) -> dict:
        if current_user.get("role") not in roles:
            raise HTTPException(status_code=403, detail="You do not have access to this resource")
        return current_user
    return dependency


def scope_filters(user: dict, collection: str) -> dict:
    """Field filters confining a non-master user to their own hostel (and, for tenants, their own rows)."""
    if user.get("role") == "master_admin":
        return {}
    filters = {}
    if collection == "hostels":
        filters["id"] = user.get("hostelId")
    elif collection in HOSTEL_SCOPED or collection in ("users", "supportTickets"):
        filters["hostelId"] = user.get("hostelId")
    if user.get("role") == "tenant" and collection in TENANT_OWNED:
        filters[TENANT_OWNED[collection]] = user.get("tenantId")
    return filters


def ensure_in_scope(user: dict, collection: str, record: dict):
    for field, value in scope_filters(user, collection).items():
        if str(record.get(field)) != str(value):
            raise NotFound(collection, str(record.get("id")))


def apply_scope(user: dict, collection: str, data: dict) -> dict:
    """Pins the hostel (and tenant) of a record a non-master user creates."""
    if user is None or user.get("role") == "master_admin":
        return data
    data = dict(data)
    if collection in HOSTEL_SCOPED or collection in ("users", "supportTickets"):
        data["hostelId"] = user.get("hostelId")
    if user.get("role") == "tenant" and collection in TENANT_OWNED and collection != "tenants":
        data[TENANT_OWNED[collection]] = user.get("tenantId")
    # Tenants report payments; only staff settle them.
    if user.get("role") == "tenant" and collection == "payments":
        data["status"] = "pending"
    return data


# --- GENERIC CRUD FACTORY ---
def create_crud_endpoints(router: APIRouter, service, create_model, update_model, create_roles, change_roles):
    """A factory to create standard CRUD endpoints for a given collection."""
    collection = service.collection
    read_dependency = require_role(*READ_ROLES[collection]) if collection in READ_ROLES else get_current_user

    @router.get("", response_model=List[dict])
    def get_records(current_user: dict = Depends(read_dependency)):
        return service.list(**scope_filters(current_user, collection))

    @router.get("/{item_id}", response_model=dict)
    def get_record(item_id: str, current_user: dict = Depends(read_dependency)):
        record = service.get(item_id)
        ensure_in_scope(current_user, collection, record)
        return record

    if create_roles is None:
        @router.post("", status_code=201)
        def add_public_record(data: create_model):
            return service.create(dump(data))
    else:
        @router.post("", status_code=201)
        def add_record(data: create_model, current_user: dict = Depends(require_role(*create_roles))):
            return service.create(apply_scope(current_user, collection, dump(data)), actor=current_user)

    @router.put("/{item_id}")
    def update_record(item_id: str, data: update_model, current_user: dict = Depends(require_role(*change_roles))):
        ensure_in_scope(current_user, collection, service.get(item_id))
        changes = dump(data, partial=True)
        if current_user.get("role") != "master_admin":
            changes.pop("hostelId", None)
        return service.update(item_id, changes, actor=current_user)

    @router.delete("/{item_id}")
    def delete_record(item_id: str, force: bool = Query(False),
                      current_user: dict = Depends(require_role(*change_roles))):
        ensure_in_scope(current_user, collection, service.get(item_id))
        if force and current_user.get("role") not in ADMIN_ROLES:
            raise PermissionDenied("Only administrators may force a delete")
        service.delete(item_id, force=force)
        return {"message": "Item deleted", "id": item_id}


# --- Feature Routers ---
def build_auth_router(accounts: AccountService) -> APIRouter:
    router = APIRouter(prefix="/api", tags=["Authentication"])

    @router.post("/auth/login")
    def login(body: LoginRequest):
        return accounts.login(body.email, body.password)

    @router.get("/me")
    def read_users_me(current_user: dict = Depends(get_current_user)):
        """Gets the details of the currently logged-in user."""
        return current_user

    @router.post("/credentials/redeem")
    def redeem_credentials(body: RedeemRequest):
        """Returns one-time credentials sealed at provisioning; each token works once."""
        return accounts.vault.redeem(body.token)

    @router.post("/users/{user_id}/unlock")
    def unlock_user(user_id: str, current_user: dict = Depends(require_role(*ADMIN_ROLES))):
        ensure_in_scope(current_user, "users", accounts.repository.get("users", user_id))
        return accounts.unlock_user(user_id, actor=current_user)

    return router


def build_workflow_router(accounts: AccountService, complaints: ComplaintService) -> APIRouter:
    router = APIRouter(prefix="/api", tags=["Workflows"])

    @router.post("/hostelRequests/{request_id}/approve")
    def approve_hostel_request(request_id: str, body: DecisionRequest | None = None,
                               current_user: dict = Depends(require_role("master_admin"))):
        return accounts.approve_hostel_request(request_id, actor=current_user, notes=body.notes if body else None)

    @router.post("/hostelRequests/{request_id}/reject")
    def reject_hostel_request(request_id: str, body: DecisionRequest | None = None,
                              current_user: dict = Depends(require_role("master_admin"))):
        return accounts.reject_hostel_request(request_id, actor=current_user, notes=body.notes if body else None)

    @router.post("/complaints/{complaint_id}/comments", status_code=201)
    def add_comment(complaint_id: str, body: CommentCreate, current_user: dict = Depends(get_current_user)):
        ensure_in_scope(current_user, "complaints", complaints.get(complaint_id))
        return complaints.add_comment(complaint_id, current_user.get("name"), current_user.get("role"), body.message)

    return router


def build_notification_router(notifications: NotificationCenter, push: PushRegistry) -> APIRouter:
    router = APIRouter(prefix="/api/notifications", tags=["Notifications"])

    @router.get("")
    def recent_notifications(limit: int = Query(50, ge=1, le=500), current_user: dict = Depends(get_current_user)):
        return notifications.recent(Principal.from_user(current_user), limit)

    @router.post("/subscription", status_code=201)
    def subscribe(body: PushSubscriptionIn, current_user: dict = Depends(get_current_user)):
        push.subscribe(Principal.from_user(current_user), body.model_dump())
        return {"success": True}

    @router.delete("/subscription")
    def unsubscribe(endpoint: str | None = None, current_user: dict = Depends(get_current_user)):
        push.unsubscribe(Principal.from_user(current_user), endpoint)
        return {"success": True}

    return router


# --- App Factory ---
def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)

    store = DurableStore(settings.data_file)
    repository = EntityRepository(store, WriteSerializer(store))
    vault = CredentialVault(settings.credential_key, settings.credential_ttl_seconds)
    accounts = AccountService(repository, vault, settings)
    complaints = ComplaintService(repository)

    sockets = WebSocketRegistry(timeout=settings.notification_timeout)
    push = PushRegistry(HttpPushSender(timeout=settings.notification_timeout))
    notifications = NotificationCenter([sockets, push], NotificationLog(), repository)
    repository.subscribe(notifications.handle_change)

    services = {name: CollectionService(repository, name) for name in COLLECTIONS}
    services.update({
        "users": UserService(repository, accounts),
        "tenants": MemberService(repository, "tenants", accounts),
        "staff": MemberService(repository, "staff", accounts),
        "complaints": complaints,
        "hostelRequests": HostelRequestService(repository, accounts),
    })

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Loading up front repairs a damaged store before the first request.
        counts = {name: len(repository.list(name)) for name in ("hostels", "users", "tenants")}
        logger.info("Store %s loaded: %s", settings.data_file, counts)
        yield
        notifications.clear()
        repository.close()
        logger.info("Store writer stopped")

    app = FastAPI(
        title="Hostel Management API",
        description="Hostel/PG management backed by a single JSON document store.",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.repository = repository
    app.state.accounts = accounts
    app.state.notifications = notifications
    app.state.sockets = sockets
    app.state.push = push

    @app.exception_handler(HostelError)
    async def handle_hostel_error(request: Request, exc: HostelError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.get("/", tags=["Health"])
    def read_root():
        return {"message": "Hostel Management API running", "collections": list(COLLECTIONS)}

    @app.websocket("/ws")
    async def realtime(websocket: WebSocket, token: str = Query(...)):
        payload = decode_access_token(token, settings.jwt_secret_key)
        user = None
        if payload and payload.get("sub"):
            try:
                user = repository.get("users", payload["sub"])
            except HostelError:
                user = None
        if user is None or session_refusal(repository, user):
            await websocket.close(code=1008)
            return

        principal = Principal.from_user(user)
        await websocket.accept()
        sockets.register(principal, websocket, asyncio.get_running_loop())
        try:
            await websocket.send_json({"type": "connected", "userId": principal.user_id, "role": principal.role})
            while True:
                message = await websocket.receive_text()
                if message == "ping":
                    await websocket.send_json({"type": "pong"})
        except WebSocketDisconnect:
            pass
        finally:
            sockets.unregister(principal, websocket)

    app.include_router(build_auth_router(accounts))
    app.include_router(build_workflow_router(accounts, complaints))
    app.include_router(build_notification_router(notifications, push))

    # --- CREATE AND INCLUDE ROUTERS FOR EACH COLLECTION ---
    for collection, (create_model, update_model, create_roles, change_roles) in RESOURCES.items():
        router = APIRouter()
        create_crud_endpoints(router, services[collection], create_model, update_model, create_roles, change_roles)
        app.include_router(router, prefix=f"/api/{collection}", tags=[collection])

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
