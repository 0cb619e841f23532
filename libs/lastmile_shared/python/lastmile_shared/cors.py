from __future__ import annotations

from fastapi.middleware.cors import CORSMiddleware


def configure_cors(app, allowed: str | None):
    origins = [o.strip() for o in (allowed or "").split(",") if o.strip()]
    if not origins:
        # Checkout pages are served from the shop front; keep dev origins only.
        origins = ["http://localhost:3000", "http://127.0.0.1:3000"]

    # Wildcard origins must not be combined with credentialed requests.
    allow_credentials = "*" not in origins
    if not allow_credentials:
        origins = ["*"]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=allow_credentials,
        allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
        allow_headers=["*"],
    )
