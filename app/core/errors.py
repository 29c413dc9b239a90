# core/errors.py - Domain exceptions and their HTTP handlers
# ============================================================================

import logging

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised at startup when required configuration is absent."""
    pass


class WebhookSignatureError(Exception):
    """Raised when a webhook payload fails signature verification."""
    pass


class LLMUnavailableError(Exception):
    """The external model failed, timed out, or returned something unusable."""
    pass


class AlreadyOwnedError(Exception):
    """Checkout attempted for a template the caller already owns."""

    def __init__(self, template_id: int):
        self.template_id = template_id
        super().__init__(f"Template {template_id} already owned")


class OAuthError(Exception):
    """
    OAuth callback failure.

    Only ``code`` ever reaches the browser; ``detail`` is for the log.
    """

    def __init__(self, code: str, detail: str = ""):
        self.code = code
        self.detail = detail
        super().__init__(f"{code}: {detail}" if detail else code)


def already_owned_response(template_id: int) -> JSONResponse:
    return JSONResponse(
        status_code=409,
        content={
            "alreadyOwned": True,
            "templateId": template_id,
            "detail": "You already own this template",
        },
    )


async def already_owned_handler(request: Request, exc: AlreadyOwnedError):
    return already_owned_response(exc.template_id)


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(p) for p in err.get("loc", ())), "message": err.get("msg")}
        for err in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"detail": "Invalid request", "errors": errors})


def build_unhandled_exception_handler(expose_details: bool):
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception(f"❌ Unhandled error on {request.method} {request.url.path}")
        content = {"detail": "Internal server error"}
        if expose_details:
            content["error"] = f"{type(exc).__name__}: {exc}"
        return JSONResponse(status_code=500, content=content)

    return unhandled_exception_handler
