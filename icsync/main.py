from __future__ import annotations

import os

import uvicorn

from icsync.log_config import configure_logging


def main() -> None:
    configure_logging()
    host = os.getenv("ICSYNC_HOST", "0.0.0.0")
    port = int(os.getenv("ICSYNC_PORT", "8080"))
    uvicorn.run("icsync.web_admin:create_app", factory=True, host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
