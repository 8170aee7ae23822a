import html
import logging

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import HTMLResponse, JSONResponse, Response

from .config import Settings
from .downloads import DownloadGate
from .service import DownloadLimitReachedError, RecordNotFoundError, UnauthorizedError
from .storage import StoreError


logger = logging.getLogger(__name__)

ARTIFACT_MEDIA_TYPE = "application/x-apple-aspen-config"

LANDING_PAGE = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Download profile</title></head>
<body>
<h1>Download your profile</h1>
<p>Downloads left: {remaining}</p>
<p>Link expires: {expires_at}</p>
<form method="get" action="/dl/{record_id}/file">
  <input name="pin" inputmode="numeric" autocomplete="one-time-code" placeholder="PIN" required>
  <button type="submit">Download</button>
</form>
</body>
</html>
"""


def create_app(gate: DownloadGate, settings: Settings) -> FastAPI:
    app = FastAPI(
        title="Profile Download API",
        description="PIN and session gated, expiring, usage-capped artifact downloads",
        version="1.0.0",
    )

    @app.exception_handler(StoreError)
    async def store_error_handler(request: Request, exc: StoreError) -> JSONResponse:
        logger.error("Store failure on %s: %s", request.url.path, exc)
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": "Temporarily unavailable, please retry"},
        )

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "profile-downloads"}

    @app.get("/dl/{record_id}", response_class=HTMLResponse, tags=["Downloads"])
    async def landing_page(record_id: str, request: Request) -> HTMLResponse:
        existing = request.cookies.get(settings.session_cookie_name)
        try:
            record = await gate.describe(record_id)
            token = await gate.bind_session(record_id, existing)
        except RecordNotFoundError:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Download not found or expired")

        response = HTMLResponse(LANDING_PAGE.format(
            record_id=html.escape(record.id),
            remaining=record.remaining_downloads,
            expires_at=html.escape(record.expires_at.isoformat()),
        ))
        max_age = int((record.expires_at - gate.clock()).total_seconds())
        response.set_cookie(
            settings.session_cookie_name,
            token,
            max_age=max(max_age, 0),
            path=f"/dl/{record.id}",
            httponly=True,
            secure=settings.cookie_secure,
            samesite="lax",
        )
        return response

    @app.get("/dl/{record_id}/file", tags=["Downloads"])
    async def download_file(record_id: str, request: Request, pin: str = "") -> Response:
        token = request.cookies.get(settings.session_cookie_name)
        try:
            record = await gate.fetch(record_id, pin, token)
        except RecordNotFoundError:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Download not found or expired")
        except DownloadLimitReachedError:
            raise HTTPException(status_code=status.HTTP_410_GONE, detail="Download limit reached")
        except UnauthorizedError:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid PIN or session")

        return Response(
            content=record.payload.encode("utf-8"),
            media_type=ARTIFACT_MEDIA_TYPE,
            headers={
                "Content-Disposition": f'attachment; filename="{record.filename}"',
                "Cache-Control": "no-store",
            },
        )

    return app
