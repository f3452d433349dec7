"""Redirect legacy QR code links to the explorer.

Old QR codes link to `/?qr=<blob>` (or `/explorer?qr=<blob>`). This
middleware decodes the blob and answers with a 301 to
`/explorer?<params>`. Anything it cannot decode passes through untouched,
including the current `qr=0` / `qr=1` toggle.
"""

import logging

from starlette.middleware.base import BaseHTTPMiddleware

from ..services.legacy_qr import (
    DecodedLegacyParams,
    build_legacy_redirect,
    decode_legacy_qr,
    is_legacy_qr,
)

logger = logging.getLogger(__name__)

LEGACY_PATHS = frozenset({"/", "/explorer"})
LEGACY_METHODS = frozenset({"GET", "HEAD"})


class LegacyQrRedirectMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        if request.method not in LEGACY_METHODS or request.url.path not in LEGACY_PATHS:
            return await call_next(request)

        qr = request.query_params.get("qr")
        if not is_legacy_qr(qr):
            return await call_next(request)

        result = decode_legacy_qr(qr)
        if not isinstance(result, DecodedLegacyParams):
            logger.debug(f"[LEGACY_QR] Not redirecting {request.url.path}: {result.reason}")
            return await call_next(request)

        response = build_legacy_redirect(result)
        logger.info(f"[LEGACY_QR] Redirecting legacy link to {response.headers['location']}")
        return response
