import os
import re
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from fastapi import Depends, FastAPI, Form, Request
from fastapi.templating import Jinja2Templates
from itsdangerous import BadSignature, URLSafeSerializer
from starlette.middleware.sessions import SessionMiddleware
from starlette.responses import RedirectResponse, Response
from starlette.status import HTTP_303_SEE_OTHER

import config
from backend_client import BackendError, PetrollClient, RequestRejected
from models import ROLES, Pet, Role, User
from qr_pass import InvalidQRCode, parse_scan, qr_payload, render_pass_pdf, share_url
from role_switch import RoleSwitcher, SwitchError
from session_guard import SessionCheck, guard
from session_store import PetSelection, SessionStore

config.setup_logging()
logger = logging.getLogger(__name__)

LANDING_ROUTE = "/"
LOGIN_ROUTE = "/login"
HOME_ROUTE = "/homeScreen"

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PASSWORD_RE = re.compile(r"^(?=.*[0-9])(?=.*[a-zA-Z]).{6,45}$")
OTP_VERIFIED_KEY = "otpVerifiedEmail"

# --- App Setup ---
app = FastAPI(title="Petroll Web")

app.add_middleware(
    SessionMiddleware,
    secret_key=config.SESSION_SECRET,
    session_cookie=config.SESSION_COOKIE_NAME,
    max_age=config.SESSION_MAX_AGE,
    same_site=config.SESSION_SAME_SITE,
    https_only=config.SESSION_HTTPS_ONLY,
)

templates = Jinja2Templates(directory=os.path.join(os.path.dirname(os.path.abspath(__file__)), "templates"))

# Simple in-memory rate limiter for the login proxy (per-IP)
LOGIN_ATTEMPTS: Dict[str, List[float]] = {}

# Activity log of user-visible events (most recent last)
logs: List[str] = []
MAX_LOG_ENTRIES = 200


def record(event: str) -> None:
    logs.append(f"{datetime.now(timezone.utc).isoformat()} {event}")
    del logs[:-MAX_LOG_ENTRIES]


# --- Tab-scoped storage ---
# A second signed cookie without Max-Age: the browser forgets it when the
# browsing session ends, unlike the durable session cookie.
_tab_serializer = URLSafeSerializer(config.SESSION_SECRET, salt="petroll-tab")


def load_tab_storage(raw: Optional[str]) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        data = _tab_serializer.loads(raw)
    except BadSignature:
        logger.info("Discarding tab storage cookie with a bad signature")
        return {}
    return data if isinstance(data, dict) else {}


@app.middleware("http")
async def tab_storage_middleware(request: Request, call_next):
    storage = load_tab_storage(request.cookies.get(config.TAB_COOKIE_NAME))
    request.state.tab_storage = storage
    before = dict(storage)

    response = await call_next(request)

    if storage != before:
        if storage:
            response.set_cookie(
                config.TAB_COOKIE_NAME,
                _tab_serializer.dumps(storage),
                httponly=True,
                samesite=config.SESSION_SAME_SITE,
                secure=config.SESSION_HTTPS_ONLY,
            )
        else:
            response.delete_cookie(config.TAB_COOKIE_NAME)
    return response


# --- Dependencies ---
_backend: Optional[PetrollClient] = None
_role_switcher: Optional[RoleSwitcher] = None
# Sync dependencies run on the thread pool; both singletons are built under this lock
_dependency_lock = threading.Lock()


def get_backend() -> PetrollClient:
    global _backend
    with _dependency_lock:
        if _backend is None:
            _backend = PetrollClient()
        return _backend


def get_role_switcher(backend: PetrollClient = Depends(get_backend)) -> RoleSwitcher:
    # One switcher per backend so its in-flight guard is shared by all requests
    global _role_switcher
    with _dependency_lock:
        if _role_switcher is None or _role_switcher.backend is not backend:
            _role_switcher = RoleSwitcher(backend)
        return _role_switcher


@app.on_event("shutdown")
def _close_backend():
    global _backend
    if _backend is not None:
        _backend.close()
        _backend = None


@dataclass
class SessionContext:
    """Everything a page needs to know about the current browser session."""

    store: SessionStore
    pets: PetSelection
    backend: PetrollClient
    check: SessionCheck

    @property
    def user(self) -> Optional[User]:
        return self.store.user

    @property
    def token(self) -> Optional[str]:
        return self.store.token

    @property
    def authenticated(self) -> bool:
        return self.check is SessionCheck.VALID and self.store.is_authenticated

    @property
    def selected_pet_id(self) -> Optional[str]:
        return self.pets.get(self.user.user_id) if self.user else None


def session_context(request: Request, backend: PetrollClient = Depends(get_backend)) -> SessionContext:
    """Seed the session from the cookies and run the validity guard.

    Runs on every request, so an expired credential is evicted on the first
    navigation after its lifetime ends.
    """
    store = SessionStore(request.session)
    check = guard(store)
    if check is SessionCheck.EXPIRED:
        record("Session expired; credential purged.")
    return SessionContext(
        store=store,
        pets=PetSelection(request.state.tab_storage),
        backend=backend,
        check=check,
    )


# --- Utility Functions ---
def redirect(path: str, **params) -> RedirectResponse:
    query = urlencode({k: v for k, v in params.items() if v is not None})
    return RedirectResponse(url=f"{path}?{query}" if query else path, status_code=HTTP_303_SEE_OTHER)


def safe_next(target: Optional[str], default: str = HOME_ROUTE) -> str:
    """Only allow redirects back into this site."""
    if target and target.startswith("/") and not target.startswith("//"):
        return target.split("?", 1)[0]
    return default


def render(request: Request, template: str, ctx: Optional[SessionContext], **context):
    context.update({
        "current_user": ctx.user if ctx else None,
        "authenticated": bool(ctx and ctx.authenticated),
        "roles": ROLES,
        "error": request.query_params.get("error"),
        "success": request.query_params.get("success"),
        "menu_open": request.query_params.get("menu") == "roles",
        "path": request.url.path,
    })
    response = templates.TemplateResponse(request, template, context)
    if ctx and ctx.authenticated:
        # Back-navigation after logout must hit the server (and the guard) again
        response.headers["Cache-Control"] = "no-store"
    return response


def sign_in(request: Request, ctx: SessionContext, user: User, token: str) -> RedirectResponse:
    client_host = request.client.host if request.client else "unknown"
    LOGIN_ATTEMPTS.pop(client_host, None)
    ctx.store.set_user(user)
    ctx.store.set_token(token)
    record(f"User {user.user_email} signed in as {user.user_type}.")
    return redirect(HOME_ROUTE)


# --- 1. Core Pages ---

@app.get("/", tags=["Core Pages"])
def read_root(request: Request, ctx: SessionContext = Depends(session_context)):
    """Renders the unauthenticated landing page."""
    return render(request, "landing.html", ctx)


# --- 2. Authentication ---

@app.get("/login", tags=["Authentication"])
def read_login_page(request: Request, ctx: SessionContext = Depends(session_context)):
    return render(request, "login.html", ctx)


@app.post("/login", tags=["Authentication"])
def process_login(
    request: Request,
    user_email: str = Form(""),
    password: str = Form(""),
    ctx: SessionContext = Depends(session_context),
):
    if not user_email or not password:
        return redirect(LOGIN_ROUTE, error="All fields are required")
    if not EMAIL_RE.match(user_email):
        return redirect(LOGIN_ROUTE, error="Please enter a valid email")

    # Rate limit check (per-IP)
    client_host = request.client.host if request.client else "unknown"
    now_ts = datetime.now(timezone.utc).timestamp()
    attempts = [ts for ts in LOGIN_ATTEMPTS.get(client_host, []) if now_ts - ts < config.LOGIN_WINDOW]
    if len(attempts) >= config.LOGIN_MAX_ATTEMPTS:
        LOGIN_ATTEMPTS[client_host] = attempts
        return redirect(LOGIN_ROUTE, error="Too many login attempts")

    try:
        result = ctx.backend.login(user_email, password)
    except RequestRejected:
        attempts.append(now_ts)
        LOGIN_ATTEMPTS[client_host] = attempts
        return redirect(LOGIN_ROUTE, error="Invalid login credentials. Please check your email and password.")
    except BackendError as e:
        logger.warning("Login failed: %s", e)
        return redirect(LOGIN_ROUTE, error="Something went wrong. Check network connection.")

    return sign_in(request, ctx, result.user, result.token)


@app.post("/logout", tags=["Authentication"])
def process_logout(request: Request, ctx: SessionContext = Depends(session_context)):
    """Ends the session and lands on the login page."""
    email = ctx.user.user_email if ctx.user else None
    request.session.clear()
    ctx.pets.clear()
    ctx.store.logout()
    if email:
        record(f"User {email} logged out.")
    # 303 replaces the POST in history; authenticated pages are served no-store
    return redirect(LOGIN_ROUTE)


@app.get("/register", tags=["Authentication"])
def read_register_page(request: Request, ctx: SessionContext = Depends(session_context)):
    email = request.query_params.get("email", "")
    return render(
        request,
        "register.html",
        ctx,
        email=email,
        otp_sent=request.query_params.get("otp_sent") == "1",
        otp_verified=bool(email) and request.state.tab_storage.get(OTP_VERIFIED_KEY) == email,
    )


@app.post("/send-otp", tags=["Authentication"])
def process_send_otp(
    email: str = Form(""),
    next_page: str = Form("/register", alias="next"),
    ctx: SessionContext = Depends(session_context),
):
    target = safe_next(next_page, "/register")
    if not EMAIL_RE.match(email):
        return redirect(target, error="Enter valid email before verification")
    try:
        ctx.backend.send_otp(email)
    except RequestRejected:
        return redirect(target, email=email, error="Failed to send OTP")
    except BackendError as e:
        logger.warning("Sending OTP failed: %s", e)
        return redirect(target, email=email, error="Server error while sending OTP")
    return redirect(target, email=email, otp_sent="1")


@app.post("/verify-otp", tags=["Authentication"])
def process_verify_otp(
    request: Request,
    email: str = Form(""),
    otp: str = Form(""),
    next_page: str = Form("/register", alias="next"),
    ctx: SessionContext = Depends(session_context),
):
    target = safe_next(next_page, "/register")
    if not otp:
        return redirect(target, email=email, otp_sent="1", error="Please enter OTP.")
    try:
        verified = ctx.backend.verify_otp(email, otp)
    except BackendError as e:
        logger.warning("OTP verification failed: %s", e)
        return redirect(target, email=email, otp_sent="1", error="OTP verification failed")
    if not verified:
        return redirect(target, email=email, otp_sent="1", error="Invalid OTP")
    request.state.tab_storage[OTP_VERIFIED_KEY] = email
    return redirect(target, email=email, success="Email verified.")


@app.post("/register", tags=["Authentication"])
def process_registration(
    request: Request,
    user_name: str = Form(""),
    user_email: str = Form(""),
    password: str = Form(""),
    confirm_password: str = Form(""),
    user_type: str = Form(Role.OWNER.value),
    ctx: SessionContext = Depends(session_context),
):
    def fail(message: str):
        return redirect("/register", email=user_email or None, error=message)

    if not user_name or not user_email or not password or not confirm_password:
        return fail("All fields are required")
    if not EMAIL_RE.match(user_email):
        return fail("Please enter a valid email")
    if not PASSWORD_RE.match(password):
        return fail("Password must contain letters & numbers (6-45 chars)")
    if password != confirm_password:
        return fail("Passwords do not match")
    try:
        role = Role.parse(user_type)
    except ValueError:
        return fail("Please choose a valid role")
    if request.state.tab_storage.get(OTP_VERIFIED_KEY) != user_email:
        return fail("Please verify your email before registering.")

    try:
        ctx.backend.register(user_name, user_email, password, role)
    except RequestRejected as e:
        return fail(e.detail or "Registration failed")
    except BackendError as e:
        logger.warning("Registration failed: %s", e)
        return fail("Server error. Please try again later.")

    request.state.tab_storage.pop(OTP_VERIFIED_KEY, None)
    record(f"New user registered: {user_name} ({user_email}) as {role.value}")
    return redirect(LOGIN_ROUTE, success="Registration successful! Please log in.")


@app.post("/auth/google", tags=["Authentication"])
def process_google_auth(
    request: Request,
    credential: str = Form(""),
    user_type: str = Form(Role.OWNER.value),
    ctx: SessionContext = Depends(session_context),
):
    if not credential:
        return redirect("/register", error="Google token missing")
    try:
        role = Role.parse(user_type)
    except ValueError:
        return redirect("/register", error="Please choose a valid role")
    try:
        result = ctx.backend.google_auth(credential, role)
    except RequestRejected as e:
        return redirect("/register", error=e.detail or "Google signup failed")
    except BackendError as e:
        logger.warning("Google authentication failed: %s", e)
        return redirect("/register", error="Google authentication error")
    return sign_in(request, ctx, result.user, result.token)


@app.get("/forgotPassword", tags=["Authentication"])
def read_forgot_password_page(request: Request, ctx: SessionContext = Depends(session_context)):
    email = request.query_params.get("email", "")
    return render(
        request,
        "forgot_password.html",
        ctx,
        email=email,
        otp_sent=request.query_params.get("otp_sent") == "1",
        otp_verified=bool(email) and request.state.tab_storage.get(OTP_VERIFIED_KEY) == email,
    )


@app.post("/forgotPassword", tags=["Authentication"])
def process_forgot_password(
    request: Request,
    email: str = Form(""),
    new_password: str = Form(""),
    confirm_password: str = Form(""),
    ctx: SessionContext = Depends(session_context),
):
    def fail(message: str):
        return redirect("/forgotPassword", email=email or None, error=message)

    if request.state.tab_storage.get(OTP_VERIFIED_KEY) != email:
        return fail("Please verify your email first.")
    if not new_password or not confirm_password:
        return fail("All fields are required.")
    if not PASSWORD_RE.match(new_password):
        return fail("Password must contain letters & numbers (6-45 chars)")
    if new_password != confirm_password:
        return fail("Passwords do not match.")
    try:
        ctx.backend.reset_password(email, new_password)
    except RequestRejected:
        return fail("Failed to reset password.")
    except BackendError as e:
        logger.warning("Password reset failed: %s", e)
        return fail("Server error. Please try again.")

    request.state.tab_storage.pop(OTP_VERIFIED_KEY, None)
    record(f"Password reset for {email}.")
    return redirect(LOGIN_ROUTE, success="Password reset successfully. Please login.")


# --- 3. Session pages (guarded) ---

@app.get("/homeScreen", tags=["Pets"])
def read_home_screen(request: Request, pet_id: Optional[int] = None, ctx: SessionContext = Depends(session_context)):
    """Shows the pet in focus, falling back to the user's latest pet."""
    if not ctx.authenticated:
        return redirect(LANDING_ROUTE)

    user = ctx.user
    selected = str(pet_id) if pet_id is not None else ctx.selected_pet_id
    pet: Optional[Pet] = None
    load_error = None
    try:
        if selected:
            pet = ctx.backend.get_pet(selected)
        else:
            pet = ctx.backend.latest_pet_by_user(user.user_id)
    except BackendError as e:
        logger.warning("Loading pet for user %s failed: %s", user.user_id, e)
        load_error = "Could not load your pet."

    if pet is not None and pet.pet_id is not None:
        ctx.pets.set(user.user_id, pet.pet_id)

    return render(request, "home.html", ctx, pet=pet, load_error=load_error)


@app.get("/myPets", tags=["Pets"])
def read_my_pets(request: Request, ctx: SessionContext = Depends(session_context)):
    """Owned pets for owners, pets joined under the active role otherwise."""
    if not ctx.authenticated:
        return redirect(LANDING_ROUTE)

    user = ctx.user
    role = user.role or Role.OWNER
    pets: List[Pet] = []
    load_error = None
    try:
        if role is Role.OWNER:
            pets = ctx.backend.owned_pets(user.user_id)
        else:
            pets = ctx.backend.joined_pets(user.user_id, role)
    except BackendError as e:
        logger.warning("Loading pets for user %s failed: %s", user.user_id, e)
        load_error = "Could not load your pets."

    return render(request, "my_pets.html", ctx, pets=pets, selected_pet_id=ctx.selected_pet_id, load_error=load_error)


@app.post("/myPets/select", tags=["Pets"])
def select_pet(pet_id: int = Form(...), ctx: SessionContext = Depends(session_context)):
    if not ctx.authenticated:
        return redirect(LANDING_ROUTE)
    ctx.pets.set(ctx.user.user_id, pet_id)
    return redirect(HOME_ROUTE)


@app.post("/role", tags=["Pets"])
def switch_role(
    role: str = Form(""),
    next_page: str = Form(HOME_ROUTE, alias="next"),
    ctx: SessionContext = Depends(session_context),
    switcher: RoleSwitcher = Depends(get_role_switcher),
):
    """Role menu: switch the active role after the backend confirms eligibility."""
    if not ctx.authenticated:
        return redirect(LANDING_ROUTE)
    target_page = safe_next(next_page)

    try:
        target = Role.parse(role)
    except ValueError:
        return redirect(target_page, menu="roles", error="Please choose a valid role.")

    result = switcher.switch(ctx.store, ctx.pets, target)
    if result.ok:
        record(f"User {ctx.user.user_email} switched role to {result.role}.")
        return redirect(target_page)
    if result.error is SwitchError.NOT_AUTHENTICATED:
        return redirect(LANDING_ROUTE)
    return redirect(target_page, menu="roles", error=result.message)


@app.get("/scanPet", tags=["Pets"])
def read_scan_pet(request: Request, ctx: SessionContext = Depends(session_context)):
    if not ctx.authenticated:
        return redirect(LANDING_ROUTE)
    return render(request, "scan_pet.html", ctx, scan=None, join_roles=ROLES[1:])


@app.post("/scanPet", tags=["Pets"])
def process_scan(request: Request, code: str = Form(""), ctx: SessionContext = Depends(session_context)):
    """Interpret scanned QR text: a link to a pet profile or a join invitation."""
    if not ctx.authenticated:
        return redirect(LANDING_ROUTE)
    try:
        scan = parse_scan(code)
    except InvalidQRCode as e:
        return redirect("/scanPet", error=str(e))

    if not scan.is_link and scan.owner_id == ctx.user.user_id:
        return redirect(
            "/scanPet",
            error=f"You are the owner of this pet: {scan.pet_name}. You cannot join with a new role.",
        )
    return render(request, "scan_pet.html", ctx, scan=scan, join_roles=ROLES[1:])


@app.post("/scanPet/join", tags=["Pets"])
def process_join_pet(
    pet_id: int = Form(...),
    owner_id: int = Form(...),
    pet_name: str = Form(""),
    role: str = Form(""),
    ctx: SessionContext = Depends(session_context),
):
    if not ctx.authenticated:
        return redirect(LANDING_ROUTE)
    user = ctx.user
    if owner_id == user.user_id:
        return redirect("/scanPet", error=f"You are the owner of this pet: {pet_name}. You cannot join with a new role.")
    if not role:
        return redirect("/scanPet", error="Please select a role to join as.")
    try:
        join_role = Role.parse(role)
    except ValueError:
        return redirect("/scanPet", error="Please select a role to join as.")
    if join_role is Role.OWNER:
        return redirect("/scanPet", error="Please select a role to join as.")

    try:
        ctx.backend.join_pet(ctx.token, user.user_id, pet_id, owner_id, join_role)
    except BackendError as e:
        logger.warning("Join request for pet %s failed: %s", pet_id, e)
        return redirect("/scanPet", error="Unable to join pet")

    record(f"User {user.user_email} requested to join pet {pet_id} as {join_role.value}.")
    return redirect(
        "/scanPet",
        success=f"Request sent. Requested to join as {join_role.value}. Waiting for owner's approval.",
    )


@app.get("/pet-approvals", tags=["Pets"])
def read_pet_approvals(request: Request, ctx: SessionContext = Depends(session_context)):
    if not ctx.authenticated:
        return redirect(LANDING_ROUTE)
    approvals = []
    try:
        approvals = ctx.backend.pending_approvals(ctx.token, ctx.user.user_id)
    except BackendError as e:
        logger.warning("Loading pending approvals failed: %s", e)
    return render(request, "pet_approvals.html", ctx, approvals=approvals)


@app.post("/pet-approvals/{approval_id}/approve", tags=["Pets"])
def approve_join_request(approval_id: int, ctx: SessionContext = Depends(session_context)):
    if not ctx.authenticated:
        return redirect(LANDING_ROUTE)
    try:
        ctx.backend.approve(ctx.token, approval_id)
    except BackendError as e:
        logger.warning("Approving request %s failed: %s", approval_id, e)
        return redirect("/pet-approvals", error="Something went wrong while approving.")
    record(f"User {ctx.user.user_email} approved join request {approval_id}.")
    return redirect("/pet-approvals", success="Pet approved successfully!")


# --- 4. QR pass ---

def _owned_pet(ctx: SessionContext, pet_id: int) -> Optional[Pet]:
    pet = ctx.backend.get_pet(pet_id)
    if pet is None or pet.owner is None or pet.owner.user_id != ctx.user.user_id:
        return None
    return pet


@app.get("/qrPass", tags=["QR Pass"])
def read_qr_pass(request: Request, pet_id: Optional[int] = None, ctx: SessionContext = Depends(session_context)):
    if not ctx.authenticated:
        return redirect(LANDING_ROUTE)

    pets: List[Pet] = []
    selected: Optional[Pet] = None
    has_pass = False
    try:
        pets = ctx.backend.owned_pets(ctx.user.user_id)
        if pet_id is not None:
            selected = next((p for p in pets if p.pet_id == pet_id), None)
            if selected is not None:
                has_pass = ctx.backend.check_qr_pass(pet_id)
    except BackendError as e:
        logger.warning("Checking QR pass failed: %s", e)

    return render(
        request,
        "qr_pass.html",
        ctx,
        pets=pets,
        selected=selected,
        has_pass=has_pass,
        payload=qr_payload(selected) if selected else None,
        share_link=share_url(selected) if selected else None,
    )


@app.get("/qrPass/{pet_id}/pass.pdf", tags=["QR Pass"])
def download_qr_pass(pet_id: int, ctx: SessionContext = Depends(session_context)):
    if not ctx.authenticated:
        return redirect(LANDING_ROUTE)
    try:
        pet = _owned_pet(ctx, pet_id)
        if pet is None:
            return redirect("/qrPass", error="Only the owner can print this pet's QR pass.")
        if not ctx.backend.check_qr_pass(pet_id):
            return redirect("/qrPass", pet_id=pet_id, error="This pet has no QR pass yet.")
    except BackendError as e:
        logger.warning("Loading pet %s for QR pass failed: %s", pet_id, e)
        return redirect("/qrPass", error="Could not load this pet.")

    headers = {"Content-Disposition": f"attachment; filename=qr_pass_{pet_id}.pdf"}
    return Response(content=render_pass_pdf(pet), media_type="application/pdf", headers=headers)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=int(os.environ.get("PORT", "8000")))
