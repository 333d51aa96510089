import json

import httpx

import config
import main

from conftest import location, user_payload


def test_login_and_session_persists(client, backend, logged_in):
    r = client.get("/login")
    assert r.status_code == 200

    token = logged_in()
    backend.on("GET", "/getLatestPetByUserId", json={"petId": 3, "petName": "Mochi"})

    r = client.get("/homeScreen")
    assert r.status_code == 200
    assert "Mochi" in r.text
    assert "Maya" in r.text
    assert any("maya@petroll.co signed in" in entry for entry in main.logs)
    assert json.loads(backend.calls[0].read()) == {"userEmail": "maya@petroll.co", "password": "secret1"}
    assert token.count(".") == 2


def test_logout_clears_session_and_selected_pet(client, backend, logged_in):
    logged_in()
    r = client.post("/myPets/select", data={"pet_id": "9"}, follow_redirects=False)
    assert r.headers["location"] == "/homeScreen"
    assert client.cookies.get(config.TAB_COOKIE_NAME)
    assert client.cookies.get(config.SESSION_COOKIE_NAME)

    r = client.post("/logout", follow_redirects=False)
    assert r.status_code == 303
    assert r.headers["location"] == "/login"
    assert client.cookies.get(config.TAB_COOKIE_NAME) is None
    assert client.cookies.get(config.SESSION_COOKIE_NAME) is None

    # pages now bounce to the landing page
    r = client.get("/homeScreen", follow_redirects=False)
    assert r.status_code == 303
    assert r.headers["location"] == "/"
    assert any("logged out" in entry for entry in main.logs)


def test_logout_link_does_not_end_session(client, backend, logged_in):
    logged_in()
    r = client.get("/logout", follow_redirects=False)
    assert r.status_code == 405

    backend.on("GET", "/getLatestPetByUserId", json={"petId": 3, "petName": "Mochi"})
    r = client.get("/homeScreen", follow_redirects=False)
    assert r.status_code == 200
    assert not any("logged out" in entry for entry in main.logs)


def test_logout_when_anonymous_still_lands_on_login(client):
    r = client.post("/logout", follow_redirects=False)
    assert r.status_code == 303
    assert r.headers["location"] == "/login"


def test_login_requires_fields_and_valid_email(client, backend):
    r = client.post("/login", data={"user_email": "", "password": ""}, follow_redirects=False)
    assert location(r) == ("/login", {"error": "All fields are required"})

    r = client.post("/login", data={"user_email": "maya", "password": "secret1"}, follow_redirects=False)
    assert location(r) == ("/login", {"error": "Please enter a valid email"})
    assert backend.calls == []


def test_invalid_credentials(client, backend):
    backend.on("POST", "/login", status_code=401, text="Bad credentials")
    r = client.post("/login", data={"user_email": "maya@petroll.co", "password": "nope123"}, follow_redirects=False)

    path, params = location(r)
    assert path == "/login"
    assert params["error"].startswith("Invalid login credentials")


def test_backend_outage_is_not_counted_as_failed_attempt(client, backend):
    def down(request):
        raise httpx.ConnectError("refused", request=request)

    backend.on("POST", "/login", down)
    r = client.post("/login", data={"user_email": "maya@petroll.co", "password": "secret1"}, follow_redirects=False)

    assert location(r)[1]["error"] == "Something went wrong. Check network connection."
    assert main.LOGIN_ATTEMPTS == {}


def test_login_rate_limit(client, backend):
    backend.on("POST", "/login", status_code=401, text="Bad credentials")
    data = {"user_email": "maya@petroll.co", "password": "nope123"}
    for _ in range(config.LOGIN_MAX_ATTEMPTS):
        client.post("/login", data=data, follow_redirects=False)

    r = client.post("/login", data=data, follow_redirects=False)
    assert location(r)[1]["error"] == "Too many login attempts"
    assert len(backend.calls) == config.LOGIN_MAX_ATTEMPTS


def test_register_requires_verified_email(client, backend):
    form = {
        "user_name": "Maya",
        "user_email": "maya@petroll.co",
        "password": "secret1",
        "confirm_password": "secret1",
        "user_type": "Owner",
    }
    r = client.post("/register", data=form, follow_redirects=False)
    assert location(r)[1]["error"] == "Please verify your email before registering."

    backend.on("POST", "/send-otp", text="sent")
    backend.on("POST", "/verify-otp", text="Verified")
    backend.on("POST", "/register", text="Success")

    r = client.post("/send-otp", data={"email": "maya@petroll.co", "next": "/register"}, follow_redirects=False)
    assert location(r) == ("/register", {"email": "maya@petroll.co", "otp_sent": "1"})

    r = client.post(
        "/verify-otp",
        data={"email": "maya@petroll.co", "otp": "123456", "next": "/register"},
        follow_redirects=False,
    )
    assert location(r)[1]["success"] == "Email verified."

    r = client.post("/register", data=form, follow_redirects=False)
    assert location(r) == ("/login", {"success": "Registration successful! Please log in."})
    sent = json.loads(backend.calls[-1].read())
    assert sent["userType"] == "Owner" and sent["userName"] == "Maya"


def test_register_validates_password(client):
    form = {
        "user_name": "Maya",
        "user_email": "maya@petroll.co",
        "password": "letters",
        "confirm_password": "letters",
    }
    r = client.post("/register", data=form, follow_redirects=False)
    assert location(r)[1]["error"] == "Password must contain letters & numbers (6-45 chars)"


def test_wrong_otp(client, backend):
    backend.on("POST", "/verify-otp", status_code=400, text="Invalid")
    r = client.post("/verify-otp", data={"email": "maya@petroll.co", "otp": "000000"}, follow_redirects=False)
    assert location(r)[1]["error"] == "Invalid OTP"


def test_google_sign_in(client, backend, token_factory):
    backend.on("POST", "/auth/google", json={"user": user_payload(userType="Vet"), "token": token_factory()})
    r = client.post("/auth/google", data={"credential": "google-id-token", "user_type": "vet"}, follow_redirects=False)

    assert r.status_code == 303
    assert r.headers["location"] == "/homeScreen"
    assert json.loads(backend.calls[0].read()) == {"token": "google-id-token", "userType": "Vet"}

    r = client.get("/homeScreen")
    assert "Acting as <strong>Vet</strong>" in r.text


def test_forgot_password_flow(client, backend):
    backend.on("POST", "/verify-otp", text="Verified")
    backend.on("POST", "/forgot-password", text="ok")

    client.post(
        "/verify-otp",
        data={"email": "maya@petroll.co", "otp": "123456", "next": "/forgotPassword"},
        follow_redirects=False,
    )
    r = client.post(
        "/forgotPassword",
        data={"email": "maya@petroll.co", "new_password": "newpass9", "confirm_password": "newpass9"},
        follow_redirects=False,
    )

    assert location(r) == ("/login", {"success": "Password reset successfully. Please login."})
    assert json.loads(backend.calls[-1].read()) == {"userEmail": "maya@petroll.co", "newPassword": "newpass9"}
