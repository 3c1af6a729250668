"""
Authentication routes - login/logout for the admin API.
"""

import asyncio
import time
from collections import defaultdict
from fastapi import APIRouter, Request, Form
from fastapi.responses import JSONResponse

from ..config import settings
from ..dependencies import get_session_manager, check_auth
from ..auth import verify_password

router = APIRouter()

# Brute force protection: failed login attempts by IP
failed_attempts = defaultdict(list)
LOCKOUT_THRESHOLD = 5  # Lock after 5 failed attempts
LOCKOUT_DURATION = 300  # seconds


@router.get("/session")
async def session_status(request: Request):
    """Whether the caller holds a valid session."""
    return {"authenticated": check_auth(request)}


@router.post("/login")
async def login(request: Request, password: str = Form(...)):
    """Check the admin password and start a session."""
    session_manager = get_session_manager()
    client_ip = request.client.host if request.client else "unknown"
    current_time = time.time()

    failed_attempts[client_ip] = [
        attempt_time for attempt_time in failed_attempts[client_ip]
        if current_time - attempt_time < LOCKOUT_DURATION
    ]

    if len(failed_attempts[client_ip]) >= LOCKOUT_THRESHOLD:
        remaining = int(LOCKOUT_DURATION - (current_time - failed_attempts[client_ip][0]))
        return JSONResponse(
            {"detail": f"Too many failed attempts. Try again in {remaining} seconds."},
            status_code=429
        )

    if settings.admin_password_hash and verify_password(password, settings.admin_password_hash):
        failed_attempts.pop(client_ip, None)
        response = JSONResponse({"authenticated": True})
        session_manager.create_session(response)
        return response

    failed_attempts[client_ip].append(current_time)

    # Slow down repeated guesses
    await asyncio.sleep(min(len(failed_attempts[client_ip]) * 0.5, 3))

    return JSONResponse({"detail": "Invalid password"}, status_code=401)


@router.post("/logout")
async def logout():
    """End the session."""
    session_manager = get_session_manager()
    response = JSONResponse({"authenticated": False})
    session_manager.clear_session(response)
    return response
