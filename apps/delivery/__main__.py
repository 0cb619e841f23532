"""
Run the delivery service with uvicorn.

Example:
  DELIVERY_RELOAD=true python -m apps.delivery
"""
import os

import uvicorn


def main() -> None:
    reload = os.getenv("DELIVERY_RELOAD", "false").lower() == "true"
    host = os.getenv("DELIVERY_HOST", "0.0.0.0")
    port = int(os.getenv("DELIVERY_PORT", "8000"))
    uvicorn.run(
        "apps.delivery.app.main:app",
        host=host,
        port=port,
        reload=reload,
        reload_dirs=["apps", "libs"] if reload else None,
    )


if __name__ == "__main__":
    main()
