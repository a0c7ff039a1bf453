"""
Fractal Registry Server

FastAPI front end for the access-grant registry.

- Mutations take the caller from API-key auth (see auth.py) and the time
  reference from the server clock; neither is client-controlled.
- Every failure is rendered as the RegistryError envelope with its status.
- Successful mutations answer with the call's notification lines.
"""

from __future__ import annotations

import argparse
import logging
import os
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .auth import ApiKeyAuth
from .clock import SystemTimeSource, TimeSource
from .config import RegistryConfig, build_registry
from .errors import FR_E_AUTH_REQUIRED, RegistryError, registry_error
from .models import MAX_LOCKED_UNTIL, CallContext, Grant
from .ops_stats import OpsStats
from .registry import FractalRegistry

logger = logging.getLogger("fractal_registry.server")


# ---------------------------
# Request/Response Models
# ---------------------------

class GrantRequest(BaseModel):
    """Insert/delete arguments. The owner is always the caller."""
    grantee: str
    data_id: str
    locked_until: Optional[int] = Field(default=None, ge=0, le=MAX_LOCKED_UNTIL)


class GrantModel(BaseModel):
    owner: str
    grantee: str
    data_id: str
    locked_until: int

    @classmethod
    def from_grant(cls, grant: Grant) -> "GrantModel":
        return cls(**grant.to_dict())


class CallResponse(BaseModel):
    logs: List[str]


# ---------------------------
# FastAPI App Factory
# ---------------------------

def create_app(
    registry: Optional[FractalRegistry] = None,
    *,
    config: Optional[RegistryConfig] = None,
    auth: Optional[ApiKeyAuth] = None,
    clock: Optional[TimeSource] = None,
) -> FastAPI:
    """Create the FastAPI application around a registry."""
    from . import __version__

    config = config or RegistryConfig.from_env()
    if registry is None:
        registry = build_registry(config)
    auth = auth or ApiKeyAuth.load_from_env()
    clock = clock or SystemTimeSource()
    stats = OpsStats()

    app = FastAPI(
        title="Fractal Registry",
        description="Access-grant registry",
        version=__version__,
    )
    app.state.registry = registry
    app.state.stats = stats

    @app.exception_handler(RegistryError)
    async def _registry_error_handler(request: Request, exc: RegistryError):
        stats.record_error(exc.code)
        if exc.http_status >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=int(exc.http_status or 400), content=exc.as_dict())

    def _caller(
        x_api_key: Optional[str] = Header(default=None),
        x_account_id: Optional[str] = Header(default=None),
    ) -> str:
        account_id, err = auth.resolve_caller(x_api_key, x_account_id)
        if err:
            raise registry_error(FR_E_AUTH_REQUIRED, err, http_status=401)
        return account_id

    def _ctx(caller: str = Depends(_caller)) -> CallContext:
        return CallContext(caller=caller, now_ns=clock.now_ns())

    @app.post("/v1/grants", response_model=CallResponse)
    def insert_grant(body: GrantRequest, ctx: CallContext = Depends(_ctx)):
        event = registry.insert_grant(ctx, body.grantee, body.data_id, body.locked_until)
        stats.record_insert()
        return CallResponse(logs=[event.to_log_line()])

    @app.post("/v1/grants/delete", response_model=CallResponse)
    def delete_grant(body: GrantRequest, ctx: CallContext = Depends(_ctx)):
        event = registry.delete_grant(ctx, body.grantee, body.data_id, body.locked_until)
        stats.record_delete()
        return CallResponse(logs=[event.to_log_line()])

    @app.get("/v1/grants", response_model=List[GrantModel])
    def find_grants(
        owner: Optional[str] = Query(default=None),
        grantee: Optional[str] = Query(default=None),
        data_id: Optional[str] = Query(default=None),
    ):
        grants = registry.find_grants(owner=owner, grantee=grantee, data_id=data_id)
        stats.record_query("find_grants")
        return [GrantModel.from_grant(g) for g in grants]

    @app.get("/v1/grants/for", response_model=List[GrantModel])
    def grants_for(grantee: str = Query(...), data_id: str = Query(...)):
        grants = registry.grants_for(grantee, data_id)
        stats.record_query("grants_for")
        return [GrantModel.from_grant(g) for g in grants]

    def _authorize_stats(req: Request) -> bool:
        if not config.stats_require_auth:
            return True
        # Auth required but no token configured: deny.
        if not config.stats_token:
            return False
        authz = (req.headers.get("Authorization") or "").strip()
        if authz.lower().startswith("bearer ") and authz.split(" ", 1)[1].strip() == config.stats_token:
            return True
        return (req.headers.get("X-Stats-Token") or "").strip() == config.stats_token

    @app.get("/v1/stats")
    def get_stats(http_request: Request):
        if not _authorize_stats(http_request):
            raise HTTPException(401, "STATS_UNAUTHORIZED")
        circuit = getattr(registry.kv, "circuit", None)
        remaining = circuit.remaining_seconds() if circuit is not None else 0.0
        return stats.snapshot(extra={
            "id_scheme": registry.id_scheme,
            "lockdown_active": remaining > 0.0,
            "lockdown_remaining_seconds": round(remaining, 3),
        })

    @app.get("/v1/health")
    def health_check():
        return {"status": "healthy", "version": __version__, "id_scheme": registry.id_scheme}

    return app


def main() -> int:
    """
    Entry point for fractal-registry-server.

    Usage:
        fractal-registry-server                    # 0.0.0.0:8000
        fractal-registry-server --port 9000
    """
    parser = argparse.ArgumentParser(
        description="Fractal Registry HTTP server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
    FRACTAL_DB_PATH          SQLite database path (default: fractal_registry.db)
    FRACTAL_ID_SCHEME        Grant id scheme: v1 (default) or v2
    FRACTAL_EVENT_LOG_PATH   Append EVENT_JSON lines to this file
    FRACTAL_API_KEYS_JSON    JSON map api_key -> account id
    FRACTAL_API_KEYS_FILE    File holding the same map
        """,
    )
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind (default: 8000)")
    parser.add_argument("--log-level", default=os.getenv("FRACTAL_LOG_LEVEL", "info"), help="Log level")
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    import uvicorn

    app = create_app()
    if not ApiKeyAuth.load_from_env().enabled():
        logger.warning("No API keys configured; X-Account-Id is trusted as the caller (development mode)")
    uvicorn.run(app, host=args.host, port=args.port, log_level=str(args.log_level).lower())
    return 0


if __name__ == "__main__":
    import sys
    sys.exit(main())
