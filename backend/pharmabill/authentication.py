"""Login backend for the SQLAdmin panel."""

import hmac

from sqladmin.authentication import AuthenticationBackend
from starlette.requests import Request

from .deps import get_settings


class SimpleAuth(AuthenticationBackend):
    """Single operator account from ADMIN_USERNAME / ADMIN_PASSWORD.

    With no ADMIN_PASSWORD configured the panel refuses every login.
    """

    async def login(self, request: Request) -> bool:
        form = await request.form()
        username = str(form.get("username") or "")
        password = str(form.get("password") or "")

        settings = get_settings()
        if not settings.ADMIN_PASSWORD:
            return False

        valid = hmac.compare_digest(username.encode(), settings.ADMIN_USERNAME.encode()) and hmac.compare_digest(
            password.encode(), settings.ADMIN_PASSWORD.encode()
        )
        if valid:
            request.session.update({"admin_user": username})
        return valid

    async def logout(self, request: Request) -> bool:
        request.session.clear()
        return True

    async def authenticate(self, request: Request) -> bool:
        return "admin_user" in request.session
