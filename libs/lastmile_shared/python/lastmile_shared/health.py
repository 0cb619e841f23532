import os
from typing import Callable, Dict, Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse


def add_standard_health(app: FastAPI, env_key: str = "ENV", checks: Optional[Dict[str, Callable[[], bool]]] = None):
    """
    Mount GET /health. Each entry in `checks` is a zero-argument probe;
    a probe that returns False or raises turns the response into a 503.
    """

    @app.get("/health")
    def _health():
        results: Dict[str, str] = {}
        ok = True
        for name, probe in (checks or {}).items():
            try:
                passed = bool(probe())
            except Exception:
                passed = False
            results[name] = "ok" if passed else "fail"
            ok = ok and passed
        body = {
            "status": "ok" if ok else "degraded",
            "env": os.getenv(env_key, "dev"),
            "service": app.title,
            "version": getattr(app, "version", None),
        }
        if results:
            body["checks"] = results
        return JSONResponse(body, status_code=200 if ok else 503)
