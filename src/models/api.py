from pydantic import BaseModel

from models.generic import Count, EventCounts


class APIError(BaseModel):
    success: bool = False
    error_message: str


class APISuccess(BaseModel):
    success: bool = True
    message: str = "ok"


class AdminCredentials(BaseModel):
    token: str


class AuthenticationSuccess(BaseModel):
    token: str


class AuthenticationFailure(BaseModel):
    message: str


AuthenticationResult = AuthenticationSuccess | AuthenticationFailure


class CountResult(BaseModel):
    success: bool
    message: str
    data: EventCounts | None = None


class KeyUpdate(BaseModel):
    site: str
    page: str | None = None
    # None leaves the stored value alone
    pv: Count | None = None
    uv: Count | None = None
