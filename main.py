import csv
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta, timezone
from io import StringIO
from typing import Any, Dict, List, Optional
from uuid import uuid4

import jwt
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from passlib.context import CryptContext
from pydantic import BaseModel, EmailStr, Field

from config import get_settings
from database import MongoDocumentStore, get_document_store, new_id
from errors import (
    InvalidStatusTransitionError, NotAuthenticatedError, OwnershipError, RecordNotFoundError,
    RemoteOperationError, ValidationError, WorkspaceError,
)
from filters import (
    filter_tasks, invoice_stats, search_invoices, search_notes, search_tasks,
    search_time_entries, task_stats, time_stats,
)
from invoicing import InvoiceDraft
from logging_config import LogContext, configure_logging, get_logger
from schemas import Priority, User
from session import WorkspaceSession
from timetracking import format_duration
from workspace import Workspace, WorkspaceRegistry

settings = get_settings()
configure_logging(level=settings.log_level, fmt=settings.log_format)
logger = get_logger("api")

_registry: Optional[WorkspaceRegistry] = None


def get_registry() -> WorkspaceRegistry:
    global _registry
    if _registry is None:
        _registry = WorkspaceRegistry(get_document_store())
    return _registry


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    if _registry is not None:
        await _registry.close()


# App and CORS
app = FastAPI(title="Workspace API", version="0.1.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Auth and Security
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
auth_scheme = HTTPBearer()

# Simple in-memory rate limiting bucket per IP
_rate_bucket: Dict[str, List[float]] = {}


async def rate_limit(request: Request):
    ip = request.client.host if request.client else "unknown"
    now = datetime.now().timestamp()
    window_start = now - 60
    bucket = _rate_bucket.get(ip, [])
    bucket = [t for t in bucket if t > window_start]
    if len(bucket) >= settings.rate_limit_per_min:
        raise HTTPException(status_code=429, detail="Rate limit exceeded")
    bucket.append(now)
    _rate_bucket[ip] = bucket


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    return pwd_context.verify(password, hashed)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.access_token_expire_minutes)
    )
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")


class RegisterBody(BaseModel):
    name: str
    email: EmailStr
    password: str = Field(min_length=8)


class LoginBody(BaseModel):
    email: EmailStr
    password: str


class NoteBody(BaseModel):
    title: str
    content: str = ""


class NoteUpdateBody(BaseModel):
    title: Optional[str] = None
    content: Optional[str] = None


class TaskBody(BaseModel):
    title: str
    description: Optional[str] = None
    priority: Priority = "medium"
    due_date: Optional[date] = None
    completed: bool = False


class TaskUpdateBody(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    priority: Optional[Priority] = None
    due_date: Optional[date] = None
    completed: Optional[bool] = None


class TimeEntryBody(BaseModel):
    project_name: str
    description: Optional[str] = None


class TimeEntryUpdateBody(BaseModel):
    project_name: Optional[str] = None
    description: Optional[str] = None


class ClientBody(BaseModel):
    name: str
    email: str = ""
    address: str = ""


class InvoiceItemBody(BaseModel):
    id: Optional[str] = None
    description: str = ""
    # Coerced by the invoice engine, so raw form values are accepted
    quantity: Any = 1
    rate: Any = 0


class InvoiceBody(BaseModel):
    client: ClientBody
    invoice_date: Optional[date] = None
    due_date: Optional[date] = None
    items: List[InvoiceItemBody] = []
    tax_rate: Any = 0


class InvoiceUpdateBody(BaseModel):
    client: Optional[ClientBody] = None
    invoice_date: Optional[date] = None
    due_date: Optional[date] = None
    items: Optional[List[InvoiceItemBody]] = None
    tax_rate: Any = None


class InvoiceStatusBody(BaseModel):
    status: str


# Error mapping
_STATUS_BY_ERROR = {
    ValidationError: 422,
    NotAuthenticatedError: 401,
    OwnershipError: 403,
    RecordNotFoundError: 404,
    InvalidStatusTransitionError: 409,
    RemoteOperationError: 502,
}


@app.exception_handler(WorkspaceError)
async def workspace_error_handler(request: Request, exc: WorkspaceError):
    status = next((code for cls, code in _STATUS_BY_ERROR.items() if isinstance(exc, cls)), 400)
    return JSONResponse(status_code=status, content={"detail": exc.message, "code": exc.code})


# Dependencies: current user -> explicit session -> that user's workspace
async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
    registry: WorkspaceRegistry = Depends(get_registry),
) -> Dict[str, Any]:
    payload = decode_token(credentials.credentials)
    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token payload")
    user = await registry.store.find_one(User.collection, id=user_id)
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return user


async def get_session(user=Depends(get_current_user)) -> WorkspaceSession:
    LogContext.set(user_id=user["id"])
    return WorkspaceSession.signed_in(user["id"])


async def get_workspace(
    session: WorkspaceSession = Depends(get_session),
    registry: WorkspaceRegistry = Depends(get_registry),
) -> Workspace:
    return await registry.for_session(session)


@app.middleware("http")
async def apply_rate_limit(request: Request, call_next):
    try:
        await rate_limit(request)
    except HTTPException as e:
        return JSONResponse(status_code=e.status_code, content={"detail": e.detail})
    with LogContext.bind(request_id=uuid4().hex[:12]):
        response = await call_next(request)
    return response


def _dump(records) -> List[Dict[str, Any]]:
    return [r.model_dump(mode="json") for r in records]


def _confirm_delete(confirm: bool) -> None:
    if not confirm:
        raise HTTPException(status_code=400, detail="Deletion must be confirmed with confirm=true")


@app.get("/")
def root():
    return {"message": "Workspace API", "version": app.version}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "store": settings.store_backend,
        "database": "❌ Not Available",
        "database_url": "✅ Set" if settings.database_url else "❌ Not Set",
        "database_name": "✅ Set" if settings.database_name else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        store = get_registry().store
        if isinstance(store, MongoDocumentStore):
            response["database"] = "✅ Available"
            response["collections"] = store.db.list_collection_names()
            response["connection_status"] = "Connected"
        else:
            response["database"] = "✅ In memory"
            response["collections"] = sorted(store.collections)
            response["connection_status"] = "Local"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"
    return response


# Auth routes
@app.post("/auth/register")
async def register(body: RegisterBody, registry: WorkspaceRegistry = Depends(get_registry)):
    existing = await registry.store.find_one(User.collection, email=body.email)
    if existing:
        raise HTTPException(status_code=400, detail="Email already registered")
    user = User(name=body.name, email=body.email, password_hash=hash_password(body.password))
    uid = await registry.store.insert(User.collection, {
        **user.model_dump(),
        "created_at": datetime.now(timezone.utc).isoformat(),
    })
    logger.info("User registered", extra={"user_id": uid})
    token = create_access_token({"sub": uid})
    return {"token": token, "user": {"id": uid, "name": body.name, "email": body.email}}


@app.post("/auth/login")
async def login(body: LoginBody, registry: WorkspaceRegistry = Depends(get_registry)):
    user = await registry.store.find_one(User.collection, email=body.email)
    if not user or not verify_password(body.password, user.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    token = create_access_token({"sub": user["id"]})
    return {"token": token, "user": {"id": user["id"], "name": user.get("name"), "email": user.get("email")}}


@app.get("/me")
def me(user=Depends(get_current_user)):
    return {"id": user["id"], "name": user.get("name"), "email": user.get("email")}


@app.get("/dashboard")
def dashboard(ws: Workspace = Depends(get_workspace)):
    return ws.dashboard()


# Notes
@app.get("/notes")
async def list_notes(q: str = "", refresh: bool = False,
                     session: WorkspaceSession = Depends(get_session),
                     ws: Workspace = Depends(get_workspace)):
    if refresh:
        await ws.notes.load(session)
    return _dump(search_notes(ws.notes.snapshot, q))


@app.post("/notes")
async def create_note(body: NoteBody, session: WorkspaceSession = Depends(get_session),
                      ws: Workspace = Depends(get_workspace)):
    note = await ws.notes.create(session, body.model_dump())
    return note.model_dump(mode="json")


@app.put("/notes/{note_id}")
async def update_note(note_id: str, body: NoteUpdateBody,
                      session: WorkspaceSession = Depends(get_session),
                      ws: Workspace = Depends(get_workspace)):
    note = await ws.notes.update(session, note_id, body.model_dump(exclude_unset=True))
    return note.model_dump(mode="json")


@app.delete("/notes/{note_id}")
async def delete_note(note_id: str, confirm: bool = False,
                      session: WorkspaceSession = Depends(get_session),
                      ws: Workspace = Depends(get_workspace)):
    _confirm_delete(confirm)
    await ws.notes.delete(session, note_id)
    return {"ok": True}


# Tasks
@app.get("/tasks")
async def list_tasks(q: str = "", status: str = "all", refresh: bool = False,
                     session: WorkspaceSession = Depends(get_session),
                     ws: Workspace = Depends(get_workspace)):
    if refresh:
        await ws.tasks.load(session)
    return _dump(filter_tasks(search_tasks(ws.tasks.snapshot, q), status))


@app.get("/tasks/stats")
def tasks_stats(ws: Workspace = Depends(get_workspace)):
    return task_stats(ws.tasks.snapshot, ws.clock.now())._asdict()


@app.post("/tasks")
async def create_task(body: TaskBody, session: WorkspaceSession = Depends(get_session),
                      ws: Workspace = Depends(get_workspace)):
    task = await ws.tasks.create(session, body.model_dump())
    return task.model_dump(mode="json")


@app.put("/tasks/{task_id}")
async def update_task(task_id: str, body: TaskUpdateBody,
                      session: WorkspaceSession = Depends(get_session),
                      ws: Workspace = Depends(get_workspace)):
    task = await ws.tasks.update(session, task_id, body.model_dump(exclude_unset=True))
    return task.model_dump(mode="json")


@app.post("/tasks/{task_id}/toggle")
async def toggle_task(task_id: str, session: WorkspaceSession = Depends(get_session),
                      ws: Workspace = Depends(get_workspace)):
    task = await ws.tasks.toggle(session, task_id)
    return task.model_dump(mode="json")


@app.delete("/tasks/{task_id}")
async def delete_task(task_id: str, confirm: bool = False,
                      session: WorkspaceSession = Depends(get_session),
                      ws: Workspace = Depends(get_workspace)):
    _confirm_delete(confirm)
    await ws.tasks.delete(session, task_id)
    return {"ok": True}


# Invoices
def _items_payload(items: List[InvoiceItemBody]) -> List[Dict[str, Any]]:
    return [{**item.model_dump(), "id": item.id or new_id()} for item in items]


def _draft_from_body(body: InvoiceBody, ws: Workspace) -> InvoiceDraft:
    draft = InvoiceDraft(clock=ws.clock, tax_rate=body.tax_rate)
    draft.client_name = body.client.name
    draft.client_email = body.client.email
    draft.client_address = body.client.address
    if body.invoice_date is not None:
        draft.invoice_date = body.invoice_date
    draft.due_date = body.due_date
    for index, item in enumerate(body.items):
        target = draft.items[0] if index == 0 else draft.add_item()
        draft.update_item(target.id, description=item.description,
                          quantity=item.quantity, rate=item.rate)
    return draft


@app.get("/invoices")
async def list_invoices(q: str = "", refresh: bool = False,
                        session: WorkspaceSession = Depends(get_session),
                        ws: Workspace = Depends(get_workspace)):
    if refresh:
        await ws.invoices.load(session)
    return _dump(search_invoices(ws.invoices.snapshot, q))


@app.get("/invoices/stats")
def invoices_stats(ws: Workspace = Depends(get_workspace)):
    return invoice_stats(ws.invoices.snapshot)._asdict()


@app.post("/invoices")
async def create_invoice(body: InvoiceBody, session: WorkspaceSession = Depends(get_session),
                         ws: Workspace = Depends(get_workspace)):
    invoice = await ws.invoices.create(session, _draft_from_body(body, ws))
    return invoice.model_dump(mode="json")


@app.put("/invoices/{invoice_id}")
async def update_invoice(invoice_id: str, body: InvoiceUpdateBody,
                         session: WorkspaceSession = Depends(get_session),
                         ws: Workspace = Depends(get_workspace)):
    patch = body.model_dump(exclude={"items"}, exclude_unset=True)
    if body.items is not None:
        patch["items"] = _items_payload(body.items)
    invoice = await ws.invoices.update(session, invoice_id, patch)
    return invoice.model_dump(mode="json")


@app.post("/invoices/{invoice_id}/status")
async def set_invoice_status(invoice_id: str, body: InvoiceStatusBody,
                             session: WorkspaceSession = Depends(get_session),
                             ws: Workspace = Depends(get_workspace)):
    invoice = await ws.invoices.set_status(session, invoice_id, body.status)
    return invoice.model_dump(mode="json")


@app.delete("/invoices/{invoice_id}")
async def delete_invoice(invoice_id: str, confirm: bool = False,
                         session: WorkspaceSession = Depends(get_session),
                         ws: Workspace = Depends(get_workspace)):
    _confirm_delete(confirm)
    await ws.invoices.delete(session, invoice_id)
    return {"ok": True}


# Time tracking
def _timer_state(ws: Workspace) -> Dict[str, Any]:
    active = ws.timer.active
    elapsed = ws.timer.elapsed_seconds()
    return {
        "state": ws.timer.state,
        "entry": active.model_dump(mode="json") if active else None,
        "elapsed_seconds": elapsed,
        "elapsed": format_duration(elapsed),
    }


@app.get("/time-entries")
async def list_time_entries(q: str = "", refresh: bool = False,
                            session: WorkspaceSession = Depends(get_session),
                            ws: Workspace = Depends(get_workspace)):
    if refresh:
        await ws.timer.sync(session)
    return _dump(search_time_entries(ws.time_entries.snapshot, q))


@app.get("/time-entries/stats")
def time_entries_stats(ws: Workspace = Depends(get_workspace)):
    stats = time_stats(ws.time_entries.snapshot, ws.clock.now())
    return {
        **stats._asdict(),
        "total": format_duration(stats.total_seconds),
        "today": format_duration(stats.today_seconds),
    }


@app.get("/time-entries/active")
def active_time_entry(ws: Workspace = Depends(get_workspace)):
    return _timer_state(ws)


@app.post("/time-entries")
async def create_time_entry(body: TimeEntryBody, session: WorkspaceSession = Depends(get_session),
                            ws: Workspace = Depends(get_workspace)):
    entry = await ws.time_entries.create(session, body.model_dump())
    return entry.model_dump(mode="json")


@app.post("/time-entries/quick-start")
async def quick_start_timer(body: TimeEntryBody, session: WorkspaceSession = Depends(get_session),
                            ws: Workspace = Depends(get_workspace)):
    await ws.timer.quick_start(session, body.project_name, body.description)
    return _timer_state(ws)


@app.post("/time-entries/stop")
async def stop_timer(session: WorkspaceSession = Depends(get_session),
                     ws: Workspace = Depends(get_workspace)):
    stopped = await ws.timer.stop(session)
    return {"stopped": stopped.model_dump(mode="json") if stopped else None, **_timer_state(ws)}


@app.post("/time-entries/{entry_id}/start")
async def start_timer(entry_id: str, session: WorkspaceSession = Depends(get_session),
                      ws: Workspace = Depends(get_workspace)):
    await ws.timer.start(session, entry_id)
    return _timer_state(ws)


@app.put("/time-entries/{entry_id}")
async def update_time_entry(entry_id: str, body: TimeEntryUpdateBody,
                            session: WorkspaceSession = Depends(get_session),
                            ws: Workspace = Depends(get_workspace)):
    entry = await ws.time_entries.update(session, entry_id, body.model_dump(exclude_unset=True))
    return entry.model_dump(mode="json")


@app.delete("/time-entries/{entry_id}")
async def delete_time_entry(entry_id: str, confirm: bool = False,
                            session: WorkspaceSession = Depends(get_session),
                            ws: Workspace = Depends(get_workspace)):
    _confirm_delete(confirm)
    await ws.timer.discard(session, entry_id)
    return {"ok": True}


# Exports
@app.get("/export/time-entries/csv")
def export_csv(ws: Workspace = Depends(get_workspace)):
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(["entry_id", "project_name", "description", "start_time", "end_time", "duration_seconds"])
    for e in ws.time_entries.snapshot:
        doc = e.to_document()
        writer.writerow([e.id, e.project_name, e.description or "", doc["start_time"],
                         doc.get("end_time") or "", e.duration if e.duration is not None else ""])
    return {"filename": "time_entries.csv", "content": output.getvalue()}


@app.get("/export/task/{task_id}/markdown")
def export_task_markdown(task_id: str, ws: Workspace = Depends(get_workspace)):
    task = ws.tasks.get(task_id)
    md = [f"# {task.title}", "", task.description or "", "",
          f"- [{'x' if task.completed else ' '}] Completed",
          f"- Priority: {task.priority}"]
    if task.due_date:
        md.append(f"- Due: {task.due_date.isoformat()}")
    return {"filename": f"task-{task_id}.md", "content": "\n".join(md)}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.port)
