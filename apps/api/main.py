# FastAPI entrypoint: thin transport adapter over the request mediator

import os
import re
import uuid
from typing import Any, Callable, Dict, List, Optional

import dotenv
import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request
from loguru import logger
from pydantic import BaseModel, Field

from orchestrator.interfaces import Result
from orchestrator.mediator import RequestMediator
from orchestrator.observability import configure_logging, get_metrics
from orchestrator.registry import Registry
from orchestrator.settings import Settings
from security.errors import AccessDenied, InternalError, NotFound
from security.models import Caller, ProposedChange, Operation

dotenv.load_dotenv()

CORRELATION_HEADER = "X-Correlation-ID"

# Matches the audit_events.correlation_id column
CORRELATION_ID_PATTERN = re.compile(r"[A-Za-z0-9._:\-]{1,128}")

# ==================== REQUEST/RESPONSE MODELS ====================

class RecordCreateRequest(BaseModel):
    fields: Dict[str, Any] = Field(default_factory=dict)
    id: Optional[str] = None

class RecordUpdateRequest(BaseModel):
    fields: Dict[str, Any] = Field(default_factory=dict)
    expected_version: Optional[int] = None

class RecordResponse(BaseModel):
    operation: str
    entity_type: str
    record: Optional[Dict[str, Any]] = None
    correlation_id: str

# ==================== IDENTITY ====================

def get_caller(
    x_user_id: Optional[str] = Header(None),
    x_user_roles: Optional[str] = Header(None),
) -> Caller:
    """Caller identity as asserted by the upstream proxy."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing caller identity")
    roles: List[str] = [r.strip() for r in (x_user_roles or "").split(",") if r.strip()]
    return Caller.of(x_user_id, roles)

def get_mediator(request: Request) -> RequestMediator:
    mediator = getattr(request.app.state, "mediator", None)
    if mediator is None:
        raise HTTPException(status_code=503, detail="Service not initialized", headers={"Retry-After": "5"})
    return mediator

def _correlation_id(supplied: Optional[str]) -> str:
    """Client-supplied correlation id if well-formed, otherwise a fresh one."""
    if supplied and CORRELATION_ID_PATTERN.fullmatch(supplied):
        return supplied
    if supplied:
        logger.warning(f"Ignoring malformed {CORRELATION_HEADER} header ({len(supplied)} chars)")
    return str(uuid.uuid4())

# ==================== DISPATCH ====================

def _dispatch(request: Request, call: Callable[..., Result], **kwargs) -> RecordResponse:
    """Run one mediator call and translate its errors into HTTP responses."""
    correlation_id = request.state.correlation_id
    origin = request.client.host if request.client else None
    try:
        result = call(correlation_id=correlation_id, origin=origin, **kwargs)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except AccessDenied as e:
        raise HTTPException(status_code=403, detail=e.reason)
    except InternalError as e:
        headers = {"Retry-After": "1"} if e.retryable else None
        raise HTTPException(status_code=503, detail=str(e), headers=headers)
    return RecordResponse(**result.to_dict())

# ==================== RECORD ROUTER ====================

router = APIRouter(prefix="/api/records", tags=["records"])

@router.get("/{entity_type}/{record_id}", response_model=RecordResponse)
def read_record(
    entity_type: str,
    record_id: str,
    request: Request,
    caller: Caller = Depends(get_caller),
    mediator: RequestMediator = Depends(get_mediator),
):
    return _dispatch(request, mediator.handle, caller=caller, operation=Operation.READ,
                     entity_type=entity_type, instance_id=record_id)

@router.post("/{entity_type}", response_model=RecordResponse, status_code=201)
def create_record(
    entity_type: str,
    body: RecordCreateRequest,
    request: Request,
    caller: Caller = Depends(get_caller),
    mediator: RequestMediator = Depends(get_mediator),
):
    return _dispatch(request, mediator.handle, caller=caller, operation=Operation.CREATE,
                     entity_type=entity_type, instance_id=body.id, proposed_change=body.fields)

@router.patch("/{entity_type}/{record_id}", response_model=RecordResponse)
def update_record(
    entity_type: str,
    record_id: str,
    body: RecordUpdateRequest,
    request: Request,
    caller: Caller = Depends(get_caller),
    mediator: RequestMediator = Depends(get_mediator),
):
    change = ProposedChange(Operation.UPDATE, body.fields, body.expected_version)
    return _dispatch(request, mediator.handle, caller=caller, operation=Operation.UPDATE,
                     entity_type=entity_type, instance_id=record_id, proposed_change=change)

@router.delete("/{entity_type}/{record_id}", response_model=RecordResponse)
def delete_record(
    entity_type: str,
    record_id: str,
    request: Request,
    caller: Caller = Depends(get_caller),
    mediator: RequestMediator = Depends(get_mediator),
):
    return _dispatch(request, mediator.handle, caller=caller, operation=Operation.DELETE,
                     entity_type=entity_type, instance_id=record_id)

# ==================== APP FACTORY ====================

def create_app(mediator: Optional[RequestMediator] = None) -> FastAPI:
    """
    Build the API.

    Args:
        mediator: Pre-built mediator (tests). When omitted, startup builds
            one from environment settings.
    """
    app = FastAPI(
        title="Records Access API",
        description="Policy-mediated CRUD over tracker records with audit trail",
        version="1.0.0"
    )
    app.state.mediator = mediator
    app.state.registry = None

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next):
        request.state.correlation_id = _correlation_id(request.headers.get(CORRELATION_HEADER))
        response = await call_next(request)
        response.headers[CORRELATION_HEADER] = request.state.correlation_id
        return response

    app.include_router(router)              # /api/records

    @app.get("/health")
    def health_check():
        return {
            "status": "ok" if app.state.mediator is not None else "starting",
            "metrics": get_metrics(),
        }

    @app.on_event("startup")
    async def startup_event():
        """Assemble components from settings unless a mediator was injected."""
        if app.state.mediator is not None:
            return

        settings = Settings()
        configure_logging(settings.log_level, settings.log_file)
        registry = Registry(settings)
        app.state.registry = registry
        app.state.mediator = registry.mediator
        logger.info(f"✓ Policy loaded from {registry.config_path}")

    return app


app = create_app()


def main():
    uvicorn.run(
        "apps.api.main:app",
        host=os.getenv("API_HOST", "127.0.0.1"),
        port=int(os.getenv("API_PORT", "8000")),
    )


if __name__ == "__main__":
    main()
