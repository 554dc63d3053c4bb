from __future__ import annotations

from datetime import timedelta
from typing import Optional, Protocol

from starlette.requests import Request
from starlette.responses import Response

VERIFICATION_EMAIL_COOKIE = "EmailForVerification"
REMEMBER_EMAIL_COOKIE = "UserEmail"
REMEMBER_PASSWORD_COOKIE = "UserPassword"


class CookieJar(Protocol):
    """Read incoming cookies and stage outgoing ones for a single request."""

    def get(self, name: str) -> Optional[str]: ...

    def set(self, name: str, value: str, max_age: timedelta) -> None: ...

    def delete(self, name: str) -> None: ...


class ResponseCookieJar:
    """CookieJar over a Starlette request/response pair.

    Every cookie is HttpOnly and SameSite=Strict; Secure follows ``secure``.
    """

    def __init__(self, request: Request, response: Response, *, secure: bool = True) -> None:
        self.request = request
        self.response = response
        self.secure = secure

    def get(self, name: str) -> Optional[str]:
        return self.request.cookies.get(name)

    def set(self, name: str, value: str, max_age: timedelta) -> None:
        self.response.set_cookie(
            name,
            value,
            max_age=int(max_age.total_seconds()),
            httponly=True,
            secure=self.secure,
            samesite="strict",
        )

    def delete(self, name: str) -> None:
        self.response.delete_cookie(
            name, httponly=True, secure=self.secure, samesite="strict"
        )
