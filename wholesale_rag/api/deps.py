# =============================================================================
# API Dependencies — Components & Rate Limiting
# =============================================================================
#
# 1. get_components()    — the RAGComponents built in the app lifespan
# 2. client_identifier() — X-Forwarded-For (first hop), X-Real-IP, peer IP
# 3. enforce_rate_limit() — fixed-window limit per client, 429 when exceeded
#
# DESIGN DECISION: FastAPI dependencies rather than middleware. Each
# endpoint opts in via Depends(...), and tests swap implementations with
# app.dependency_overrides.
# =============================================================================

from __future__ import annotations

from fastapi import Depends, HTTPException, Request, Response

from wholesale_rag.bootstrap import RAGComponents


def get_components(request: Request) -> RAGComponents:
    components = getattr(request.app.state, "components", None)
    if components is None:
        raise HTTPException(status_code=503, detail="Service is starting up")
    return components


def client_identifier(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else "anonymous"


async def enforce_rate_limit(
    request: Request,
    response: Response,
    components: RAGComponents = Depends(get_components),
) -> None:
    """
    Count this request against the caller's window.

    Raises:
        HTTPException 429: Limit exceeded (with Retry-After).
    """
    if not components.settings.rate_limit_enabled:
        return

    identifier = client_identifier(request)
    result = await components.rate_limiter.check(identifier)

    headers = {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(result.reset_in_seconds),
    }
    if not result.allowed:
        raise HTTPException(
            status_code=429,
            detail="Too many requests. Please wait before asking again.",
            headers={**headers, "Retry-After": str(result.reset_in_seconds)},
        )
    response.headers.update(headers)
