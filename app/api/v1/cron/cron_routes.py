"""
Cron trigger endpoints.

An external scheduler calls ``/cron`` every minute or so with
``Authorization: Bearer <CRON_SECRET>``. Each call runs at most one
reminder batch; concurrent calls are rejected with 409.
"""
import hmac
import math
from typing import Optional

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse

from app.api.dependencies import get_cron_service
from app.config.config import settings
from app.core.utils import logger, utcnow
from app.services.cron_service import (
    CronAlreadyRunningError,
    CronRateLimitedError,
    CronService,
    generate_instance_id,
)

router = APIRouter(prefix="/cron", tags=["cron"])


def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def _authorize(request: Request) -> Optional[JSONResponse]:
    """Error response for an unauthorized trigger, None when authorized."""
    if not settings.CRON_SECRET:
        logger.log_error({"event_type": "cron_secret_missing"})
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Server configuration error"},
        )

    auth_header = request.headers.get("authorization") or ""
    token = auth_header[7:] if auth_header.startswith("Bearer ") else ""

    if not token or not hmac.compare_digest(
        token.encode("utf-8"), settings.CRON_SECRET.encode("utf-8")
    ):
        logger.log_security_event(
            {
                "event_type": "cron_auth_failed",
                "reason": "missing_token" if not token else "invalid_token",
                "ip_address": _client_ip(request),
                "path": request.url.path,
            }
        )
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content={"error": "Unauthorized"},
        )

    return None


@router.api_route("", methods=["GET", "POST"])
async def run_cron(request: Request, cron_service: CronService = Depends(get_cron_service)):
    """
    Run one reminder batch.

    Returns 200 with a summary, 401 for a bad token, 409 when another
    batch is in progress, 429 when rate limited.
    """
    denied = _authorize(request)
    if denied is not None:
        return denied

    instance_id = generate_instance_id()

    try:
        result = await cron_service.run(instance_id)

    except CronRateLimitedError as e:
        retry_after = max(0, math.ceil((e.result.reset_time - utcnow()).total_seconds()))
        return JSONResponse(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            headers={"Retry-After": str(retry_after)},
            content={
                "error": "Rate limit exceeded",
                "details": {
                    "reset_time": e.result.reset_time.isoformat(),
                    "retry_after_seconds": retry_after,
                },
            },
        )

    except CronAlreadyRunningError:
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={"error": "Cron already running"},
        )

    except Exception as e:
        logger.log_error(
            {
                "event_type": "cron_failed",
                "instance_id": instance_id,
                "error": str(e),
                "error_type": type(e).__name__,
            },
            exc_info=True,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "success": False,
                "error": "Internal server error",
                "details": {
                    "message": (
                        str(e)
                        if settings.ENVIRONMENT != "production"
                        else "An unexpected error occurred"
                    )
                },
            },
        )

    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content=result.model_dump(mode="json"),
    )


@router.get("/status")
async def cron_status(request: Request, cron_service: CronService = Depends(get_cron_service)):
    """Whether a batch is running, and how much of the rate limit is used."""
    denied = _authorize(request)
    if denied is not None:
        return denied

    result = await cron_service.status()
    return JSONResponse(content=result.model_dump(mode="json"))
