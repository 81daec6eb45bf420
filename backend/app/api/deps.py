from __future__ import annotations

from typing import Any, Iterator

from fastapi import Depends, Header, Request
from sqlalchemy.orm import Session

from backend.app.core.context import AppContext


def get_ctx(request: Request) -> AppContext:
    return request.app.state.ctx


def get_db(ctx: AppContext = Depends(get_ctx)) -> Iterator[Session]:
    with ctx.session() as db:
        yield db


def get_company_id(x_company_id: int = Header(alias="X-Company-Id", gt=0)) -> int:
    """Tenant of the request. Authentication sits in front of this service."""
    return x_company_id


def ok(data: Any = None) -> dict[str, Any]:
    return {"success": True, "data": data}
